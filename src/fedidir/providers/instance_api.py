"""Platform adapter that probes remote instances for their metadata.

Mastodon-like servers expose everything through ``GET /api/v1/instance``.
Misskey-like servers split metadata across ``POST /api/meta`` and
``POST /api/stats``; both are requested concurrently with a ``{"detail": true}``
body and merged. Every response is decoded explicitly into an
:class:`~fedidir.models.InstanceSnapshot`; anything that does not match the
expected shape fails the whole probe rather than leaking partial data.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping, Sequence
from typing import Any

import httpx

from ..config import ProbeConfig
from ..models import (
    UNKNOWN_CONTACT,
    InstanceSnapshot,
    PlatformFamily,
    ProbeFailure,
    ProbeOutcome,
)

LOGGER = logging.getLogger(__name__)

JSON_HEADERS = {"Content-Type": "application/json;charset=UTF-8"}
DETAIL_BODY = {"detail": True}


def build_http_client(
    config: ProbeConfig,
    *,
    transport: httpx.AsyncBaseTransport | None = None,
) -> httpx.AsyncClient:
    """Return an ``httpx.AsyncClient`` configured for instance probes."""
    return httpx.AsyncClient(
        timeout=httpx.Timeout(config.request_timeout),
        headers={"User-Agent": config.user_agent, "Accept": "application/json"},
        follow_redirects=True,
        transport=transport,
    )


class InstanceApiClient:
    """Fetch and normalise metadata from Mastodon- and Misskey-like instances."""

    def __init__(self, http: httpx.AsyncClient, config: ProbeConfig) -> None:
        """Use *http* for all requests, bounded by ``config.request_timeout``."""
        self._http = http
        self._timeout = config.request_timeout

    async def probe(self, address: str, platform: str | PlatformFamily) -> ProbeOutcome:
        """Probe *address*, returning an outcome instead of raising."""
        platform_label = platform.value if isinstance(platform, PlatformFamily) else str(platform)
        try:
            snapshot = await self.fetch_snapshot(address, platform)
        except ProbeFailure as failure:
            LOGGER.info("Probe failed address=%s platform=%s reason=%s", address, platform_label, failure)
            return ProbeOutcome.failed(address, platform_label, failure)
        return ProbeOutcome.succeeded(address, platform_label, snapshot)

    async def fetch_snapshot(
        self,
        address: str,
        platform: str | PlatformFamily,
    ) -> InstanceSnapshot:
        """Return a snapshot for *address* or raise :class:`ProbeFailure`."""
        family = PlatformFamily.parse(platform)
        if family is PlatformFamily.MASTODON:
            payload = await self._get_json(_url(address, "/api/v1/instance"))
            return decode_mastodon_instance(payload)
        if family is PlatformFamily.MISSKEY:
            meta, stats = await asyncio.gather(
                self._post_json(_url(address, "/api/meta"), DETAIL_BODY),
                self._post_json(_url(address, "/api/stats"), DETAIL_BODY),
            )
            return decode_misskey_instance(meta, stats)
        raise ProbeFailure("unsupported-platform", f"Platform '{platform}' is not supported.")

    async def search_local_users(self, address: str, query: str, *, limit: int = 1) -> list[Any]:
        """Run a Misskey local user search and return the raw result list."""
        body = {"query": query, "limit": limit, "origin": "local", "detail": True}
        payload = await self._post_json(_url(address, "/api/users/search"), body)
        if not isinstance(payload, list):
            raise ProbeFailure("invalid-payload", "User search did not return a list.")
        return payload

    # ------------------------------------------------------------------
    async def _get_json(self, url: str) -> Any:
        return await self._request("GET", url)

    async def _post_json(self, url: str, body: Mapping[str, object]) -> Any:
        return await self._request("POST", url, body=body)

    async def _request(
        self,
        method: str,
        url: str,
        *,
        body: Mapping[str, object] | None = None,
    ) -> Any:
        try:
            response = await asyncio.wait_for(
                self._http.request(
                    method,
                    url,
                    json=dict(body) if body is not None else None,
                    headers=JSON_HEADERS,
                ),
                timeout=self._timeout,
            )
        except (TimeoutError, httpx.TimeoutException) as exc:
            raise ProbeFailure("timeout", f"{method} {url} timed out") from exc
        except httpx.HTTPError as exc:
            raise ProbeFailure("network", f"{method} {url} failed: {exc}") from exc

        if not response.is_success:
            raise ProbeFailure(
                "http-status", f"{method} {url} returned HTTP {response.status_code}"
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProbeFailure("invalid-json", f"{method} {url} returned invalid JSON") from exc


def _url(address: str, path: str) -> str:
    return f"https://{address}{path}"


# ---------------------------------------------------------------------------
# Decoders
# ---------------------------------------------------------------------------


def decode_mastodon_instance(payload: object) -> InstanceSnapshot:
    """Decode a ``/api/v1/instance`` response."""
    root = _require_mapping(payload, "instance")
    # Pleroma omits short_description; fall back to the long description.
    if "short_description" in root:
        description = _require_str(root, "short_description")
    else:
        description = _require_str(root, "description")
    stats = _require_mapping(root.get("stats"), "stats")
    contact = _require_mapping(root.get("contact_account"), "contact_account")
    return InstanceSnapshot(
        title=_require_str(root, "title"),
        description=description,
        thumbnail_url=_optional_str(root, "thumbnail"),
        user_count=_require_count(stats, "user_count"),
        status_count=_require_count(stats, "status_count"),
        contact_handle=_require_str(contact, "username"),
        registrations_open=_require_bool(root, "registrations"),
        approval_required=_require_bool(root, "approval_required"),
    )


def decode_misskey_instance(meta_payload: object, stats_payload: object) -> InstanceSnapshot:
    """Decode and merge ``/api/meta`` and ``/api/stats`` responses."""
    meta = _require_mapping(meta_payload, "meta")
    stats = _require_mapping(stats_payload, "stats")
    return InstanceSnapshot(
        title=_require_str(meta, "name"),
        description=_optional_str(meta, "description") or "",
        thumbnail_url=_optional_str(meta, "bannerUrl"),
        user_count=_require_count(stats, "originalUsersCount"),
        status_count=_require_count(stats, "notesCount"),
        contact_handle=UNKNOWN_CONTACT,
        registrations_open=not _require_bool(meta, "disableRegistration"),
        approval_required=False,
    )


def _require_mapping(value: object, label: str) -> Mapping[str, Any]:
    if not isinstance(value, Mapping):
        raise ProbeFailure("invalid-payload", f"Expected '{label}' to be an object.")
    return value


def _require_str(source: Mapping[str, Any], key: str) -> str:
    value = source.get(key)
    if not isinstance(value, str):
        raise ProbeFailure("invalid-payload", f"Field '{key}' must be a string.")
    return value


def _optional_str(source: Mapping[str, Any], key: str) -> str | None:
    value = source.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ProbeFailure("invalid-payload", f"Field '{key}' must be a string or null.")
    return value or None


def _require_count(source: Mapping[str, Any], key: str) -> int:
    value = source.get(key)
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ProbeFailure("invalid-payload", f"Field '{key}' must be a non-negative integer.")
    return value


def _require_bool(source: Mapping[str, Any], key: str) -> bool:
    value = source.get(key)
    if not isinstance(value, bool):
        raise ProbeFailure("invalid-payload", f"Field '{key}' must be a boolean.")
    return value


def first_admin_flag(results: Sequence[Any]) -> bool:
    """Return the ``isAdmin`` flag of the first user search result."""
    if not results:
        return False
    first = results[0]
    if not isinstance(first, Mapping):
        return False
    return first.get("isAdmin") is True


__all__ = [
    "InstanceApiClient",
    "build_http_client",
    "decode_mastodon_instance",
    "decode_misskey_instance",
    "first_admin_flag",
]
