"""Repository layer for database operations."""

from drill_eval.repositories.result import ClaimRepository, ResultRepository
from drill_eval.repositories.state import RequestRepository, StatusRepository

__all__ = [
    "ClaimRepository",
    "RequestRepository",
    "ResultRepository",
    "StatusRepository",
]
