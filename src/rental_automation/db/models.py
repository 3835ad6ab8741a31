"""Persisted record types."""

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from rental_automation.config import ModeTag


class ModeChange(BaseModel):
    """One timed mode change in a manual visit."""

    time: datetime
    mode: ModeTag


class ManualVisit(BaseModel):
    """An operator-entered visit with an ordered list of mode changes."""

    id: Optional[str] = None
    mode_changes: list[ModeChange] = Field(min_length=1)
    phone: Optional[str] = None
    name: Optional[str] = None

    @field_validator("phone")
    @classmethod
    def _phone_digits(cls, value: Optional[str]) -> Optional[str]:
        if value is None or value == "":
            return None
        if not value.isdigit() or len(value) < 4:
            raise ValueError("Phone code must be at least 4 digits")
        return value

    @property
    def label(self) -> str:
        return self.name or f"visit {self.id}"

    def sorted_changes(self) -> list[ModeChange]:
        return sorted(self.mode_changes, key=lambda change: change.time)

    def __repr__(self) -> str:
        return f"<ManualVisit {self.id} {self.label} changes={len(self.mode_changes)}>"
