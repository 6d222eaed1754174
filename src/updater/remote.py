"""
Remote version lookup.

Queries an HTTP endpoint returning a JSON object that carries the latest
version identifier (a commit sha by default). One request, no retries.
"""

from __future__ import annotations

import logging
from typing import Optional

import requests

from common.config import Settings
from common.exceptions import RemoteVersionError

logger = logging.getLogger(__name__)


class RemoteVersionSource:
    """Fetches the latest published version identifier."""

    def __init__(
        self,
        url: str,
        field: str = "sha",
        timeout: float = 10.0,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.field = field
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings, session: Optional[requests.Session] = None) -> "RemoteVersionSource":
        return cls(
            settings.version_url,
            field=settings.version_field,
            timeout=settings.request_timeout,
            session=session,
        )

    def latest(self) -> str:
        """
        Get the latest version identifier.

        Raises:
            RemoteVersionError: On timeout, connection failure, non-2xx
                status, invalid JSON or a missing field.
        """
        logger.debug(f"Querying remote version: {self.url}")
        try:
            resp = self.session.get(
                self.url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
            )
        except requests.Timeout as e:
            raise RemoteVersionError(self.url, f"timed out after {self.timeout:g}s", cause=e) from e
        except requests.RequestException as e:
            raise RemoteVersionError(self.url, f"request failed: {e}", cause=e) from e

        if not 200 <= resp.status_code < 300:
            raise RemoteVersionError(self.url, f"HTTP {resp.status_code}")

        try:
            payload = resp.json()
        except ValueError as e:
            raise RemoteVersionError(self.url, "response is not valid JSON", cause=e) from e

        value = payload.get(self.field) if isinstance(payload, dict) else None
        if not value:
            raise RemoteVersionError(self.url, f"response has no '{self.field}' field")

        logger.debug(f"Remote version: {value}")
        return str(value)
