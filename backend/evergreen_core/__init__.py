"""Championship leaderboard and next-race domain logic, independent of the web layer."""

from .auth import AuthorizationGate
from .clock import FixedClock, SystemClock
from .errors import (
    AuthenticationRequired,
    AuthorizationDenied,
    EvergreenError,
    NotFoundError,
    StoreError,
    ValidationError,
)
from .expiry import expiry_boundary, is_race_expired, pacific_to_utc
from .images import ImageStore
from .leaderboard import LeaderboardService, validate_entry
from .loader import DataStore
from .models import Caller, DriverEntry, RaceSettings
from .race_settings import RaceSettingsService

__all__ = [
    "AuthenticationRequired",
    "AuthorizationDenied",
    "AuthorizationGate",
    "Caller",
    "DataStore",
    "DriverEntry",
    "EvergreenError",
    "FixedClock",
    "ImageStore",
    "LeaderboardService",
    "NotFoundError",
    "RaceSettings",
    "RaceSettingsService",
    "StoreError",
    "SystemClock",
    "ValidationError",
    "expiry_boundary",
    "is_race_expired",
    "pacific_to_utc",
    "validate_entry",
]
