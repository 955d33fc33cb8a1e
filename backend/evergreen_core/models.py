from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .expiry import parse_instant


@dataclass
class DriverEntry:
    """A championship standing row for one driver."""

    id: int
    driver_name: str
    points: int
    profile_picture: Optional[str] = None  # public reference, e.g. /uploads/profilePicture-...png
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "DriverEntry":
        return cls(
            id=int(row["id"]),
            driver_name=str(row.get("driver_name") or ""),
            points=int(row.get("points") or 0),
            profile_picture=row.get("profile_picture") or None,
            created_at=parse_instant(row.get("created_at")),
            updated_at=parse_instant(row.get("updated_at")),
        )


@dataclass
class RaceSettings:
    """The "next race" announcement.

    One row by convention. Every field is optional and all four are nulled
    together when the race is cleared or expires.
    """

    id: int
    next_race_location: Optional[str] = None
    next_race_date: Optional[dt.datetime] = None  # UTC
    race_description: Optional[str] = None
    circuit_image: Optional[str] = None
    created_at: Optional[dt.datetime] = None
    updated_at: Optional[dt.datetime] = None

    @classmethod
    def from_row(cls, row: Dict[str, Any]) -> "RaceSettings":
        return cls(
            id=int(row["id"]),
            next_race_location=row.get("next_race_location"),
            next_race_date=parse_instant(row.get("next_race_date")),
            race_description=row.get("race_description"),
            circuit_image=row.get("circuit_image") or None,
            created_at=parse_instant(row.get("created_at")),
            updated_at=parse_instant(row.get("updated_at")),
        )

    @property
    def is_empty(self) -> bool:
        return not any((self.next_race_location, self.next_race_date, self.race_description, self.circuit_image))


@dataclass
class Caller:
    """Identity of the logged-in user as returned by the login provider."""

    id: str
    email: str = ""
    name: str = ""
    photo: Optional[str] = None

    @classmethod
    def from_profile(cls, profile: Dict[str, Any]) -> Optional["Caller"]:
        """Build a caller from a session payload or a Google userinfo response."""
        if not isinstance(profile, dict):
            return None
        caller_id = str(profile.get("id") or profile.get("sub") or "").strip()
        if not caller_id:
            return None
        return cls(
            id=caller_id,
            email=str(profile.get("email") or "").strip(),
            name=str(profile.get("name") or "").strip(),
            photo=profile.get("photo") or profile.get("picture") or None,
        )

    def as_session(self) -> Dict[str, Any]:
        return {"id": self.id, "email": self.email, "name": self.name, "photo": self.photo}
