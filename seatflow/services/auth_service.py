"""Admin token authentication for operator endpoints."""

from __future__ import annotations

import secrets
from datetime import datetime, timedelta
from threading import Lock
from typing import Optional

from seatflow.utils.clock import Clock, utc_now
from seatflow.utils.config import Settings, get_settings
from seatflow.utils.logger import get_logger


logger = get_logger(__name__)


class AuthenticationError(Exception):
    """Base authentication failure."""


class AdminTokenNotConfiguredError(AuthenticationError):
    """Raised when ADMIN_TOKEN is missing."""


class InvalidAdminTokenError(AuthenticationError):
    """Raised when a login token or bearer session is invalid or expired."""


class AuthService:
    """Exchanges the operator's admin token for a short-lived bearer session.

    When no admin token is configured, operator endpoints are open; this is
    the local development mode.
    """

    def __init__(self, settings: Optional[Settings] = None, clock: Clock = utc_now) -> None:
        self._settings = settings or get_settings()
        self._clock = clock
        self._lock = Lock()
        self._session_token: Optional[str] = None
        self._session_expires_at: Optional[datetime] = None

    @property
    def auth_enabled(self) -> bool:
        return bool(self._settings.admin_token)

    def _expected_token(self) -> str:
        if not self._settings.admin_token:
            raise AdminTokenNotConfiguredError(
                "ADMIN_TOKEN is not configured. Set ADMIN_TOKEN in environment variables."
            )
        return self._settings.admin_token

    def login(self, provided_admin_token: str) -> str:
        expected = self._expected_token()
        if not secrets.compare_digest(provided_admin_token, expected):
            logger.warning("Operator login rejected")
            raise InvalidAdminTokenError("Invalid admin token")
        with self._lock:
            self._session_token = secrets.token_urlsafe(32)
            self._session_expires_at = self._clock() + timedelta(
                minutes=self._settings.admin_session_ttl_minutes
            )
            logger.info("Operator session issued | expires_at=%s", self._session_expires_at)
            return self._session_token

    def logout(self) -> None:
        with self._lock:
            self._session_token = None
            self._session_expires_at = None

    def validate_bearer_token(self, bearer_token: str) -> None:
        if not self.auth_enabled:
            return
        with self._lock:
            token = self._session_token
            expires_at = self._session_expires_at
        if token is None or expires_at is None:
            raise InvalidAdminTokenError("No active session. Login first.")
        if self._clock() >= expires_at:
            self.logout()
            raise InvalidAdminTokenError("Session expired. Login again.")
        if not secrets.compare_digest(bearer_token, token):
            raise InvalidAdminTokenError("Invalid bearer token")
