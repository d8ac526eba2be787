"""Administrator-ownership verification and challenge composition.

Mastodon-like instances name their administrator in the probe response, so
ownership is taken from the snapshot's contact handle. Misskey-like instances
do not, so the claimed handle is checked with a local user search and must
come back flagged ``isAdmin``. Either way the result is a direct message
addressed to ``@handle@address`` carrying the instance's access credential.
"""
from __future__ import annotations

import logging

from .config import DirectoryAccountConfig
from .models import (
    UNKNOWN_CONTACT,
    ChallengeRecord,
    InstanceSnapshot,
    PlatformFamily,
    ProbeFailure,
    VerificationFailure,
)
from .providers.instance_api import InstanceApiClient, first_admin_flag

LOGGER = logging.getLogger(__name__)

CHALLENGE_TEMPLATE = (
    "{mention} Hi there someone is attempting to register your instance on {directory}, "
    "if this is you. Please click this link to finish the registration: {link}"
)


class ChallengeIssuer:
    """Validate administrator ownership and compose verification messages."""

    def __init__(self, api: InstanceApiClient, account: DirectoryAccountConfig) -> None:
        """Use *api* for Misskey admin lookups and *account* for message text."""
        self._api = api
        self._account = account

    async def issue_challenge(
        self,
        snapshot: InstanceSnapshot,
        platform: PlatformFamily | str,
        address: str,
        claimed_admin: str | None,
        credential: str,
    ) -> ChallengeRecord:
        """Verify ownership then compose the challenge for *address*."""
        handle = await self.verify_admin(snapshot, platform, address, claimed_admin)
        return self.compose(handle, address, credential)

    async def verify_admin(
        self,
        snapshot: InstanceSnapshot,
        platform: PlatformFamily | str,
        address: str,
        claimed_admin: str | None,
    ) -> str:
        """Return the handle the challenge should be sent to."""
        family = PlatformFamily.parse(platform)
        if family is PlatformFamily.MASTODON:
            handle = snapshot.contact_handle.strip().lstrip("@")
            if not handle or handle == UNKNOWN_CONTACT:
                raise VerificationFailure("Instance does not publish a contact account.")
            return handle

        if family is PlatformFamily.MISSKEY:
            handle = (claimed_admin or "").strip().lstrip("@")
            if not handle:
                raise VerificationFailure("An administrator handle is required for Misskey.")
            try:
                results = await self._api.search_local_users(address, handle, limit=1)
            except ProbeFailure as exc:
                raise VerificationFailure(f"User search failed: {exc}") from exc
            if not first_admin_flag(results):
                raise VerificationFailure(f"'{handle}' is not an administrator of {address}.")
            LOGGER.info("Admin verification passed address=%s handle=%s", address, handle)
            return handle

        raise VerificationFailure(f"Platform '{platform}' is not supported.")

    def compose(self, handle: str, address: str, credential: str) -> ChallengeRecord:
        """Build the direct message for ``@handle@address``."""
        mention = f"@{handle}@{address}"
        link = f"{self._account.verify_url.rstrip('/')}/{credential}"
        body = CHALLENGE_TEMPLATE.format(
            mention=mention,
            directory=self._account.name,
            link=link,
        )
        return ChallengeRecord(recipient=mention, body=body)


__all__ = ["CHALLENGE_TEMPLATE", "ChallengeIssuer"]
