"""Visit and late-checkout stores on top of JSON files."""

import logging
import uuid
from datetime import datetime
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from rental_automation.db.database import JsonFileStore
from rental_automation.db.models import ManualVisit

logger = logging.getLogger(__name__)


class VisitStore:
    """The authoritative list of manual visits."""

    def __init__(self, path: str | Path, write_cooldown_seconds: float = 2.0):
        self.file = JsonFileStore(path, default=[], write_cooldown_seconds=write_cooldown_seconds)

    def list(self) -> list[ManualVisit]:
        visits = []
        for record in self.file.read():
            try:
                visits.append(ManualVisit.model_validate(record))
            except ValidationError as e:
                logger.error(f"Skipping unreadable visit record {record!r}: {e}")
        return visits

    def get(self, visit_id: str) -> Optional[ManualVisit]:
        return next((v for v in self.list() if v.id == visit_id), None)

    def add(self, visit: ManualVisit) -> ManualVisit:
        """Persist a new visit, assigning its ID."""
        stored = visit.model_copy(update={"id": visit.id or uuid.uuid4().hex[:12]})
        records = self.file.read()
        records.append(stored.model_dump(mode="json"))
        self.file.write(records)
        logger.info(f"Saved visit {stored.id} ({stored.label})")
        return stored

    def delete(self, visit_id: str) -> bool:
        """Remove a visit. Returns False if it was not stored."""
        records = self.file.read()
        remaining = [r for r in records if r.get("id") != visit_id]
        if len(remaining) == len(records):
            return False
        self.file.write(remaining)
        logger.info(f"Deleted visit {visit_id}")
        return True


class LateCheckoutStore:
    """Reservation identifier -> late checkout instant."""

    def __init__(self, path: str | Path, write_cooldown_seconds: float = 2.0):
        self.file = JsonFileStore(path, default={}, write_cooldown_seconds=write_cooldown_seconds)

    def all(self) -> dict[str, datetime]:
        overrides = {}
        for reservation_number, value in self.file.read().items():
            try:
                overrides[reservation_number] = datetime.fromisoformat(value)
            except (TypeError, ValueError):
                logger.error(f"Ignoring bad late checkout for {reservation_number}: {value!r}")
        return overrides

    def get(self, reservation_number: str) -> Optional[datetime]:
        return self.all().get(reservation_number)

    def set(self, reservation_number: str, when: datetime) -> None:
        data = self.file.read()
        data[reservation_number] = when.isoformat()
        self.file.write(data)
        logger.info(f"Late checkout for {reservation_number} set to {when.isoformat()}")

    def delete(self, reservation_number: str) -> bool:
        data = self.file.read()
        if reservation_number not in data:
            return False
        del data[reservation_number]
        self.file.write(data)
        return True
