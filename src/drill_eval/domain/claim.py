"""Claim: which job and which caller own a request id."""

from dataclasses import dataclass


@dataclass(frozen=True)
class Claim:
    job_id: str
    user_id: str

    def is_owned_by(self, user_id: str) -> bool:
        return self.user_id == user_id
