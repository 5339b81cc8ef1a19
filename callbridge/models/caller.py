"""Pydantic models tracking what happened on a call."""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel


class CallMode(str, Enum):
    RECEPTIONIST = "receptionist"
    COACHING = "coaching"

    @classmethod
    def parse(cls, value: Optional[str]) -> "CallMode":
        """Stream parameter → mode; anything unrecognised is a receptionist call."""
        if value and value.strip().lower() in ("coach", "coaching", "spanish_coach"):
            return cls.COACHING
        return cls.RECEPTIONIST


class CallSummary(BaseModel):
    """Facts gathered during a receptionist call.

    Filled in as tool calls complete and read once at hang-up to compose
    the post-call messages.
    """

    caller_name: Optional[str] = None
    caller_number: Optional[str] = None
    reason: Optional[str] = None
    appointment_requested: bool = False
    appointment_booked: bool = False
    appointment_start_time: Optional[datetime] = None
    follow_up_note: Optional[str] = None
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None

    def duration_seconds(self) -> Optional[int]:
        if self.start_time is None or self.end_time is None:
            return None
        return max(0, int((self.end_time - self.start_time).total_seconds()))


class CoachingMetrics(BaseModel):
    """Running counters for a language-practice call."""

    simplification_count: int = 0
    repeat_count: int = 0
    target_language_answer_count: int = 0
    target_language_only_answer_count: int = 0
    opted_out: bool = False
