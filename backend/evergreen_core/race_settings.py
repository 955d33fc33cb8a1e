"""Lifecycle of the "next race" announcement.

Reading the settings is not side-effect free: once the announced race's
Pacific day is over, ``get_settings`` clears the row (and deletes its circuit
image) before returning it, so every client sees the board empty again
without an admin having to act.
"""

from __future__ import annotations

import datetime as dt
import logging
from typing import Any, Dict, Optional, Union

from .auth import AuthorizationGate
from .clock import SystemClock
from .errors import NotFoundError, StoreError, ValidationError
from .expiry import format_instant, is_race_expired, parse_local_datetime, pacific_to_utc
from .images import ImageStore
from .loader import RACE_SETTINGS_COLUMNS, DataStore
from .models import Caller, RaceSettings

logger = logging.getLogger(__name__)


class RaceSettingsService:
    def __init__(
        self,
        store: DataStore,
        images: ImageStore,
        gate: AuthorizationGate,
        clock: Any = None,
    ) -> None:
        self.store = store
        self.images = images
        self.gate = gate
        self.clock = clock or SystemClock()

    def get_settings(self) -> RaceSettings:
        settings = self._load_or_create()
        if not is_race_expired(settings.next_race_date, self.clock.now()):
            return settings

        logger.info("Race scheduled for %s has expired; clearing next race", format_instant(settings.next_race_date))
        cleared = self._save(settings.id, {column: None for column in RACE_SETTINGS_COLUMNS})
        if settings.circuit_image:
            self._release_image(settings.circuit_image)
        return cleared

    def update_settings(
        self,
        location: Optional[str],
        race_date: Union[str, dt.datetime, None],
        description: Optional[str],
        caller: Optional[Caller],
    ) -> RaceSettings:
        """Store the next race; ``race_date`` is Pacific wall-clock time."""
        self.gate.require_authenticated(caller)

        changes = {
            "next_race_location": _clean_text(location, "nextRaceLocation"),
            "next_race_date": format_instant(_to_utc(race_date)),
            "race_description": _clean_text(description, "raceDescription"),
        }

        existing = self.store.fetch_race_settings()
        if existing is None:
            return RaceSettings.from_row(self.store.create_race_settings(changes))
        return self._save(RaceSettings.from_row(existing).id, changes)

    def clear_next_race(self, caller: Optional[Caller]) -> RaceSettings:
        self.gate.require_authenticated(caller)
        settings = self._load_or_create()
        if settings.circuit_image:
            self._release_image(settings.circuit_image)
        return self._save(settings.id, {column: None for column in RACE_SETTINGS_COLUMNS})

    def set_circuit_image(self, reference: str, caller: Optional[Caller]) -> RaceSettings:
        self.gate.require_authenticated(caller)
        if not reference:
            raise ValidationError("No file uploaded")
        settings = self._load_or_create()
        if settings.circuit_image and settings.circuit_image != reference:
            self._release_image(settings.circuit_image)
        return self._save(settings.id, {"circuit_image": reference})

    def delete_circuit_image(self, caller: Optional[Caller]) -> RaceSettings:
        self.gate.require_authenticated(caller)
        row = self.store.fetch_race_settings()
        if row is None:
            raise NotFoundError("Race settings not found")
        settings = RaceSettings.from_row(row)
        if settings.circuit_image:
            self._release_image(settings.circuit_image)
        return self._save(settings.id, {"circuit_image": None})

    def _load_or_create(self) -> RaceSettings:
        row = self.store.fetch_race_settings()
        if row is None:
            row = self.store.create_race_settings()
        return RaceSettings.from_row(row)

    def _save(self, settings_id: int, changes: Dict[str, Any]) -> RaceSettings:
        row = self.store.update_race_settings(settings_id, changes)
        if row is None:
            raise StoreError(f"Race settings row {settings_id} disappeared during update")
        return RaceSettings.from_row(row)

    def _release_image(self, reference: str) -> None:
        try:
            self.images.delete(reference)
        except OSError as exc:
            logger.warning("Failed to delete circuit image %s: %s", reference, exc)


def _clean_text(value: Any, field: str) -> Optional[str]:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValidationError(f"{field} must be text")
    value = value.strip()
    return value or None


def _to_utc(value: Union[str, dt.datetime, None]) -> Optional[dt.datetime]:
    if value is None:
        return None
    if isinstance(value, dt.datetime):
        return pacific_to_utc(value)
    if isinstance(value, str):
        if not value.strip():
            return None
        return pacific_to_utc(parse_local_datetime(value))
    raise ValidationError("nextRaceDate must be a date-time string")
