"""Directory store built on the YAML state registry.

``instances.yml`` holds three related record sets::

    next_id: 3
    instances:
      - id: 1
        uri: example.social
        ...
        data: {title: ..., user_count: ...}
    api_keys:
      - instance_id: 1
        api_key: ...

Each mutation holds the directory lock while it re-reads the document,
validates the affected entries, and writes the whole document back through
:meth:`StateRegistry.write`, which is atomic. A create therefore lands the
instance, its data, and its access credential together or not at all, and a
concurrent create of the same URI sees the first one and fails as a duplicate.
"""
from __future__ import annotations

from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from copy import deepcopy
from datetime import UTC, datetime
from typing import Any

from ..locking import LockManager, LockTimeoutError
from ..models import CONTENT_POLICY_VALUES, PLATFORM_VALUES
from .registry import StateRegistry, StateRegistryError

_HEALTH_FIELDS = frozenset({"verified", "failed_checks", "banned", "ban_reason"})
_UPDATABLE_FIELDS = _HEALTH_FIELDS | {"name", "category", "content_policy"}
_DATA_FIELDS = (
    "title",
    "description",
    "thumbnail",
    "user_count",
    "status_count",
    "contact",
    "registrations",
    "approval_required",
)


class DuplicateInstanceError(StateRegistryError):
    """Raised when an instance URI is already present in the directory."""


class DirectoryValidationError(StateRegistryError):
    """Raised when an entry violates the directory's field constraints."""


def _now() -> str:
    return datetime.now(UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class DirectoryStore:
    """Create/read/update access to instances, their data, and API keys."""

    def __init__(self, registry: StateRegistry, locks: LockManager) -> None:
        """Bind the store to *registry*, serialising writes through *locks*."""
        self._registry = registry
        self._locks = locks

    @property
    def registry(self) -> StateRegistry:
        """Return the underlying state registry."""
        return self._registry

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def list_instances(self) -> list[dict[str, Any]]:
        """Return every instance entry, ordered by id."""
        document = self._load()
        return sorted(document["instances"], key=lambda entry: entry["id"])

    def get(self, instance_id: int) -> dict[str, Any] | None:
        """Return the instance with *instance_id*, if present."""
        for entry in self._load()["instances"]:
            if entry["id"] == instance_id:
                return entry
        return None

    def get_by_uri(self, uri: str) -> dict[str, Any] | None:
        """Return the instance registered for *uri*, if present."""
        normalized = uri.strip().lower()
        for entry in self._load()["instances"]:
            if entry["uri"] == normalized:
                return entry
        return None

    def find_many(self, where: Mapping[str, object] | None = None) -> list[dict[str, Any]]:
        """Return instances whose top-level fields equal every value in *where*."""
        criteria = dict(where or {})
        matches = [
            entry
            for entry in self.list_instances()
            if all(entry.get(key) == value for key, value in criteria.items())
        ]
        return matches

    def find_credential(self, instance_id: int) -> str | None:
        """Return the API key minted for *instance_id*."""
        for entry in self._load()["api_keys"]:
            if entry["instance_id"] == instance_id:
                return str(entry["api_key"])
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def create(
        self,
        instance: Mapping[str, object],
        data: Mapping[str, object],
        api_key: str,
    ) -> int:
        """Persist a new instance with its data and credential; return its id."""
        if not isinstance(api_key, str) or not api_key.strip():
            raise DirectoryValidationError("Access credential must be a non-empty string.")

        with self._mutation():
            document = self._load()
            now = _now()
            entry = _normalize_instance_entry(
                {
                    **dict(instance),
                    "id": document["next_id"],
                    "created_at": now,
                    "updated_at": now,
                    "data": {**dict(data), "fetched_at": now},
                }
            )
            if any(existing["uri"] == entry["uri"] for existing in document["instances"]):
                raise DuplicateInstanceError(f"Instance '{entry['uri']}' already exists.")

            document["instances"].append(entry)
            document["api_keys"].append(
                {"instance_id": entry["id"], "api_key": api_key, "created_at": now}
            )
            document["next_id"] = entry["id"] + 1
            self._save(document)
        return int(entry["id"])

    def update(
        self,
        instance_id: int,
        fields: Mapping[str, object],
        *,
        data: Mapping[str, object] | None = None,
    ) -> dict[str, Any]:
        """Apply *fields* (and replace ``data`` when given) in a single write."""
        unknown = set(fields) - _UPDATABLE_FIELDS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise DirectoryValidationError(f"Fields cannot be updated: {joined}.")

        with self._mutation():
            document = self._load()
            instances: list[dict[str, Any]] = document["instances"]
            for index, existing in enumerate(instances):
                if existing["id"] != instance_id:
                    continue
                merged = deepcopy(existing)
                merged.update(dict(fields))
                now = _now()
                merged["updated_at"] = now
                if data is not None:
                    merged["data"] = {**dict(data), "fetched_at": now}
                normalized = _normalize_instance_entry(merged)
                instances[index] = normalized
                self._save(document)
                return deepcopy(normalized)
        raise StateRegistryError(f"Instance id {instance_id} not found in directory")

    # ------------------------------------------------------------------
    @contextmanager
    def _mutation(self) -> Iterator[None]:
        try:
            with self._locks.mutate_directory():
                yield
        except LockTimeoutError as exc:
            raise StateRegistryError(f"Directory is busy: {exc}") from exc

    def _load(self) -> dict[str, Any]:
        raw = self._registry.read_directory()
        raw_instances = raw.get("instances", [])
        raw_keys = raw.get("api_keys", [])
        instances = [
            _normalize_instance_entry(item)
            for item in (raw_instances if isinstance(raw_instances, list) else [])
            if isinstance(item, Mapping)
        ]
        api_keys = [
            {
                "instance_id": int(item["instance_id"]),
                "api_key": str(item["api_key"]),
                "created_at": item.get("created_at"),
            }
            for item in (raw_keys if isinstance(raw_keys, list) else [])
            if isinstance(item, Mapping) and "instance_id" in item and "api_key" in item
        ]
        highest = max((entry["id"] for entry in instances), default=0)
        next_id_raw = raw.get("next_id", 1)
        next_id = next_id_raw if isinstance(next_id_raw, int) else 1
        return {
            "next_id": max(next_id, highest + 1),
            "instances": instances,
            "api_keys": api_keys,
        }

    def _save(self, document: Mapping[str, object]) -> None:
        self._registry.write_directory(document)


def _normalize_instance_entry(entry: Mapping[str, object]) -> dict[str, Any]:
    """Validate and normalise an instance entry (including nested data)."""
    if not isinstance(entry, Mapping):
        raise DirectoryValidationError("Instance entry must be a mapping.")

    instance_id = entry.get("id")
    if isinstance(instance_id, bool) or not isinstance(instance_id, int) or instance_id < 1:
        raise DirectoryValidationError("Instance entry requires a positive integer 'id'.")

    uri = str(entry.get("uri") or "").strip().lower()
    if not uri:
        raise DirectoryValidationError("Instance entry missing 'uri'.")

    platform = str(entry.get("platform") or "").strip().lower()
    if platform not in PLATFORM_VALUES:
        allowed = ", ".join(PLATFORM_VALUES)
        raise DirectoryValidationError(
            f"Unsupported platform '{platform}' for {uri}. Allowed: {allowed}."
        )

    content_policy = str(entry.get("content_policy") or "").strip().lower()
    if content_policy not in CONTENT_POLICY_VALUES:
        allowed = ", ".join(CONTENT_POLICY_VALUES)
        raise DirectoryValidationError(
            f"Unsupported content policy '{content_policy}' for {uri}. Allowed: {allowed}."
        )

    failed_checks = entry.get("failed_checks", 0)
    if isinstance(failed_checks, bool) or not isinstance(failed_checks, int) or failed_checks < 0:
        raise DirectoryValidationError(f"'failed_checks' for {uri} must be a non-negative integer.")

    verified = entry.get("verified", False)
    banned = entry.get("banned", False)
    for label, flag in (("verified", verified), ("banned", banned)):
        if not isinstance(flag, bool):
            raise DirectoryValidationError(f"'{label}' for {uri} must be a boolean.")

    ban_reason_raw = entry.get("ban_reason")
    ban_reason = str(ban_reason_raw).strip() if ban_reason_raw else None
    if banned and not ban_reason:
        raise DirectoryValidationError(f"Banned instance {uri} requires a 'ban_reason'.")
    if not banned and ban_reason:
        raise DirectoryValidationError(f"Instance {uri} has a 'ban_reason' but is not banned.")

    name = str(entry.get("name") or "").strip() or uri
    category = str(entry.get("category") or "").strip() or platform

    normalized: dict[str, Any] = {
        "id": instance_id,
        "uri": uri,
        "name": name,
        "platform": platform,
        "category": category,
        "content_policy": content_policy,
        "verified": verified,
        "failed_checks": failed_checks,
        "banned": banned,
        "ban_reason": ban_reason,
    }
    for key in ("created_at", "updated_at"):
        if entry.get(key) is not None:
            normalized[key] = str(entry[key])

    normalized["data"] = _normalize_data(entry.get("data"), uri)
    return normalized


def _normalize_data(raw: object, uri: str) -> dict[str, Any]:
    if not isinstance(raw, Mapping):
        raise DirectoryValidationError(f"Instance {uri} requires a 'data' mapping.")
    missing = [field for field in _DATA_FIELDS if field not in raw]
    if missing:
        joined = ", ".join(missing)
        raise DirectoryValidationError(f"Instance data for {uri} missing: {joined}.")

    for field in ("user_count", "status_count"):
        value = raw[field]
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise DirectoryValidationError(
                f"Instance data '{field}' for {uri} must be a non-negative integer."
            )
    for field in ("registrations", "approval_required"):
        if not isinstance(raw[field], bool):
            raise DirectoryValidationError(f"Instance data '{field}' for {uri} must be a boolean.")

    thumbnail = raw["thumbnail"]
    normalized: dict[str, Any] = {
        "title": str(raw["title"]),
        "description": str(raw["description"]),
        "thumbnail": str(thumbnail) if thumbnail is not None else None,
        "user_count": raw["user_count"],
        "status_count": raw["status_count"],
        "contact": str(raw["contact"]),
        "registrations": raw["registrations"],
        "approval_required": raw["approval_required"],
    }
    if raw.get("fetched_at") is not None:
        normalized["fetched_at"] = str(raw["fetched_at"])
    return normalized


__all__ = ["DirectoryStore", "DirectoryValidationError", "DuplicateInstanceError"]
