"""Change token cache for conditional remote polling.

Backends store the last validator they saw for a remote resource (HTTP
ETag, Drive modifiedTime) and send it back on the next poll. Keys used:

- "commits": GitHub commit list ETag
- "webdav-config": ETag of config-backup.json on WebDAV
- "gdrive-config-modtime": modifiedTime of config-backup.json on Drive
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from profilesync.core.types import PollOutcome

logger = logging.getLogger(__name__)

COMMITS_TOKEN = "commits"
WEBDAV_CONFIG_TOKEN = "webdav-config"
GDRIVE_CONFIG_TOKEN = "gdrive-config-modtime"

_STATUS_TEXT = {
    PollOutcome.UNKNOWN: "Not checked yet",
    PollOutcome.NO_CHANGE: "No remote changes",
    PollOutcome.CHANGED: "Remote changes detected",
    PollOutcome.ERROR: "Last check failed",
}


@dataclass(frozen=True)
class TokenStatus:
    """Display snapshot of one token."""

    has_token: bool
    token: str | None
    last_result: PollOutcome
    status_text: str


class ChangeTokenCache:
    """In-memory map of resource key to change token.

    Tokens are plain strings, so a value read before clear_all() stays
    valid for whoever holds it.
    """

    def __init__(self) -> None:
        self._tokens: dict[str, str] = {}
        self._last_result = PollOutcome.UNKNOWN

    def set(self, key: str, token: str | None) -> None:
        """Store a token. Empty or missing tokens are ignored."""
        if not token:
            return
        self._tokens[key] = token
        logger.debug("Stored change token for %s", key)

    def get(self, key: str) -> str | None:
        """Get the token for key, if any."""
        return self._tokens.get(key)

    def has(self, key: str) -> bool:
        """Check if a token is stored for key."""
        return key in self._tokens

    def clear(self, key: str) -> None:
        """Forget the token for key."""
        if self._tokens.pop(key, None) is not None:
            logger.debug("Cleared change token for %s", key)

    def clear_all(self) -> None:
        """Forget every token and reset the last poll result."""
        self._tokens.clear()
        self._last_result = PollOutcome.UNKNOWN

    @property
    def last_result(self) -> PollOutcome:
        """Result of the last poll."""
        return self._last_result

    def set_last_result(self, outcome: PollOutcome) -> None:
        """Record the result of a poll."""
        self._last_result = outcome

    def status(self, key: str) -> TokenStatus:
        """Get a display snapshot for key."""
        token = self._tokens.get(key)
        return TokenStatus(
            has_token=token is not None,
            token=token,
            last_result=self._last_result,
            status_text=_STATUS_TEXT[self._last_result],
        )
