"""Caller identity for API requests."""

from dataclasses import dataclass

from fastapi import Depends
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from loguru import logger

from drill_eval.config import Settings, get_settings
from drill_eval.exceptions import EvaluationError

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class Caller:
    """Authenticated user making the request."""

    user_id: str


async def get_current_caller(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    settings: Settings = Depends(get_settings),
) -> Caller:
    """Resolve the bearer token to a caller.

    Tokens are configured as a token to user id map; issuing and rotating
    them is handled outside this service.
    """
    if credentials is None or not credentials.credentials:
        raise EvaluationError.unauthenticated()

    user_id = settings.auth_tokens.get(credentials.credentials)
    if not user_id:
        logger.warning("Rejected unknown bearer token")
        raise EvaluationError.unauthenticated("Invalid or expired token")
    return Caller(user_id=user_id)
