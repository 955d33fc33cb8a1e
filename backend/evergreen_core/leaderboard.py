from __future__ import annotations

import logging
from typing import Any, List, Optional, Tuple

from .auth import AuthorizationGate
from .errors import NotFoundError, ValidationError
from .images import ImageStore
from .loader import DataStore
from .models import Caller, DriverEntry

logger = logging.getLogger(__name__)


class LeaderboardService:
    """Championship standings; every mutation needs an allow-listed admin."""

    def __init__(self, store: DataStore, images: ImageStore, gate: AuthorizationGate) -> None:
        self.store = store
        self.images = images
        self.gate = gate

    def list_entries(self) -> List[DriverEntry]:
        entries = [DriverEntry.from_row(row) for row in self.store.fetch_leaderboard()]
        # stable sort: ties keep the store's order
        return sorted(entries, key=lambda entry: -entry.points)

    def create(self, driver_name: Any, points: Any, caller: Optional[Caller]) -> DriverEntry:
        self.gate.require_authorized(caller)
        name, points = validate_entry(driver_name, points)
        row = self.store.create_leaderboard_entry({"driver_name": name, "points": points, "profile_picture": None})
        entry = DriverEntry.from_row(row)
        logger.info("Created leaderboard entry %s for %s", entry.id, entry.driver_name)
        return entry

    def update(self, entry_id: int, driver_name: Any, points: Any, caller: Optional[Caller]) -> DriverEntry:
        self.gate.require_authorized(caller)
        self._get(entry_id)
        name, points = validate_entry(driver_name, points)
        return self._save(entry_id, {"driver_name": name, "points": points})

    def delete(self, entry_id: int, caller: Optional[Caller]) -> None:
        self.gate.require_authorized(caller)
        entry = self._get(entry_id)
        if entry.profile_picture:
            self._release_image(entry.profile_picture)
        if not self.store.delete_leaderboard_entry(entry_id):
            raise NotFoundError("Leaderboard entry not found")
        logger.info("Deleted leaderboard entry %s", entry_id)

    def set_profile_picture(self, entry_id: int, reference: str, caller: Optional[Caller]) -> DriverEntry:
        self.gate.require_authorized(caller)
        if not reference:
            raise ValidationError("No file uploaded")
        entry = self._get(entry_id)
        if entry.profile_picture and entry.profile_picture != reference:
            self._release_image(entry.profile_picture)
        return self._save(entry_id, {"profile_picture": reference})

    def clear_profile_picture(self, entry_id: int, caller: Optional[Caller]) -> DriverEntry:
        self.gate.require_authorized(caller)
        entry = self._get(entry_id)
        if entry.profile_picture:
            self._release_image(entry.profile_picture)
        return self._save(entry_id, {"profile_picture": None})

    def _get(self, entry_id: int) -> DriverEntry:
        row = self.store.fetch_leaderboard_entry(entry_id)
        if row is None:
            raise NotFoundError("Leaderboard entry not found")
        return DriverEntry.from_row(row)

    def _save(self, entry_id: int, changes: dict) -> DriverEntry:
        row = self.store.update_leaderboard_entry(entry_id, changes)
        if row is None:
            # deleted between the lookup and the write
            raise NotFoundError("Leaderboard entry not found")
        return DriverEntry.from_row(row)

    def _release_image(self, reference: str) -> None:
        try:
            self.images.delete(reference)
        except OSError as exc:
            logger.warning("Failed to delete profile picture %s: %s", reference, exc)


def validate_entry(driver_name: Any, points: Any) -> Tuple[str, int]:
    if not isinstance(driver_name, str) or not driver_name.strip():
        raise ValidationError("Driver name is required")
    if isinstance(points, bool) or not isinstance(points, int):
        raise ValidationError("Points must be a whole number")
    if points < 0:
        raise ValidationError("Points cannot be negative")
    return driver_name.strip(), points
