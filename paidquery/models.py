"""Job record and its state machine.

A Job is immutable. Every transition builds a new record which the store
swaps in whole, so a reader always sees a state together with the fields
that belong to it.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, FrozenSet, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import InvalidTransition


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class JobState(str, Enum):
    PENDING = "pending"      # Waiting for a qualifying payment
    VERIFIED = "verified"    # Payment seen, report running
    COMPLETED = "completed"  # Report stored
    FAILED = "failed"        # Timed out, cancelled or report failed


TERMINAL_STATES: FrozenSet[JobState] = frozenset({JobState.COMPLETED, JobState.FAILED})

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.VERIFIED, JobState.FAILED}),
    JobState.VERIFIED: frozenset({JobState.COMPLETED, JobState.FAILED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
}


class Job(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret: str = Field(..., min_length=1)
    domain: str = Field(..., min_length=1)
    date: str  # YYYY-MM-DD, validated by ReportRequest before a Job exists
    payor_address: str = Field(..., min_length=1)
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    state: JobState = JobState.PENDING
    result: Optional[str] = None
    error_reason: Optional[str] = None

    @model_validator(mode="after")
    def check_payload_matches_state(self):
        if (self.state == JobState.COMPLETED) != bool(self.result):
            raise ValueError("result must be set exactly when the job is completed")
        if (self.state == JobState.FAILED) != bool(self.error_reason):
            raise ValueError("error_reason must be set exactly when the job has failed")
        return self

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def filename(self) -> str:
        return f"psq-{self.domain}-{self.date}.csv"

    def _transition(self, target: JobState, **changes) -> "Job":
        if target not in ALLOWED_TRANSITIONS[self.state]:
            raise InvalidTransition(self.state.value, target.value)
        data = self.model_dump()
        data.update(changes, state=target, updated_at=utc_now())
        # model_copy skips validation; rebuild so the invariants are checked
        return Job(**data)

    def mark_verified(self) -> "Job":
        return self._transition(JobState.VERIFIED)

    def mark_completed(self, result: str) -> "Job":
        return self._transition(JobState.COMPLETED, result=result)

    def mark_failed(self, reason: str) -> "Job":
        return self._transition(JobState.FAILED, error_reason=reason)
