"""Direct-message delivery through the directory's own Mastodon account."""
from __future__ import annotations

import httpx

from ..config import DirectoryAccountConfig
from ..models import ChallengeRecord


class MessagingError(RuntimeError):
    """Raised when a direct message could not be delivered."""


class DirectMessageSender:
    """Post statuses as the directory account via ``/api/v1/statuses``."""

    def __init__(self, http: httpx.AsyncClient, account: DirectoryAccountConfig) -> None:
        """Validate *account* up front so misconfiguration fails before any request."""
        account.require()
        self._http = http
        self._account = account

    @property
    def statuses_url(self) -> str:
        """Return the statuses endpoint for the directory account's server."""
        return f"{str(self._account.base_url).rstrip('/')}/api/v1/statuses"

    async def send(self, challenge: ChallengeRecord) -> str | None:
        """Post *challenge* and return the created status id when reported."""
        try:
            response = await self._http.post(
                self.statuses_url,
                json={"status": challenge.body, "visibility": challenge.visibility},
                headers={"Authorization": f"Bearer {self._account.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise MessagingError(f"Posting to {challenge.recipient} failed: {exc}") from exc
        if not response.is_success:
            raise MessagingError(
                f"Posting to {challenge.recipient} returned HTTP {response.status_code}"
            )
        try:
            payload = response.json()
        except ValueError:
            return None
        status_id = payload.get("id") if isinstance(payload, dict) else None
        return str(status_id) if status_id is not None else None


__all__ = ["DirectMessageSender", "MessagingError"]
