"""Error taxonomy shared by the services and the HTTP layer."""

from __future__ import annotations


class EvergreenError(Exception):
    status_code = 500


class ValidationError(EvergreenError, ValueError):
    status_code = 400


class AuthenticationRequired(EvergreenError):
    status_code = 401

    def __init__(self, message: str = "Authentication required") -> None:
        super().__init__(message)


class AuthorizationDenied(EvergreenError):
    status_code = 403

    def __init__(self, message: str = "Access denied. You are not authorized to perform this action.") -> None:
        super().__init__(message)


class NotFoundError(EvergreenError, LookupError):
    status_code = 404


class StoreError(EvergreenError, RuntimeError):
    """Persistence failed (Supabase unreachable, rejected write, unwritable file)."""

    status_code = 500
