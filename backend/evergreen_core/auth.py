"""Two-tier access check: authenticated (known identity) and authorized (admin)."""

from __future__ import annotations

import logging
import os
from typing import Iterable, List, Optional

from .errors import AuthenticationRequired, AuthorizationDenied
from .models import Caller

logger = logging.getLogger(__name__)

ALLOW_LIST_ENV = "AUTHORIZED_EMAILS"


def parse_allow_list(raw: str | None) -> List[str]:
    if not raw:
        return []
    return [email.strip() for email in raw.split(",") if email.strip()]


class AuthorizationGate:
    """Decides whether a caller may mutate championship data.

    With no explicit ``allowed_emails`` the allow-list is read from
    ``AUTHORIZED_EMAILS`` on every check, so an operator can change it
    without a restart. ``reload`` pins an explicit list instead.
    """

    def __init__(self, allowed_emails: Optional[Iterable[str]] = None) -> None:
        self._allowed: Optional[List[str]] = None
        if allowed_emails is not None:
            self.reload(allowed_emails)

    def reload(self, allowed_emails: Optional[Iterable[str]]) -> None:
        if allowed_emails is None:
            self._allowed = None
            return
        self._allowed = [email.strip() for email in allowed_emails if email and email.strip()]

    def allowed_emails(self) -> List[str]:
        if self._allowed is not None:
            return list(self._allowed)
        return parse_allow_list(os.getenv(ALLOW_LIST_ENV))

    def is_authenticated(self, caller: Optional[Caller]) -> bool:
        return caller is not None and bool(caller.id)

    def is_authorized(self, caller: Optional[Caller]) -> bool:
        if caller is None or not self.is_authenticated(caller):
            return False
        return bool(caller.email) and caller.email in self.allowed_emails()

    def require_authenticated(self, caller: Optional[Caller]) -> Caller:
        if caller is None or not self.is_authenticated(caller):
            raise AuthenticationRequired()
        return caller

    def require_authorized(self, caller: Optional[Caller]) -> Caller:
        caller = self.require_authenticated(caller)
        if not self.is_authorized(caller):
            logger.warning("Denied admin action for %s", caller.email or caller.id)
            raise AuthorizationDenied()
        return caller
