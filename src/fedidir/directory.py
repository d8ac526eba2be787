"""Directory writer: the only component that creates or mutates instances."""
from __future__ import annotations

import logging
import secrets
from dataclasses import dataclass

from .health.models import HealthFields, HealthTransition, next_health
from .models import Candidate, CreateFailure, InstanceSnapshot, ProbeOutcome, UpdateFailure
from .state import (
    DirectoryStore,
    DirectoryValidationError,
    DuplicateInstanceError,
    StateRegistryError,
)

LOGGER = logging.getLogger(__name__)


def mint_credential() -> str:
    """Return a fresh opaque access credential."""
    return secrets.token_urlsafe(32)


@dataclass(slots=True, frozen=True)
class CreatedInstance:
    """Identity and credential of a newly persisted instance."""

    instance_id: int
    uri: str
    credential: str


class DirectoryWriter:
    """Create instances and apply health/snapshot updates."""

    def __init__(self, store: DirectoryStore) -> None:
        """Bind the writer to *store*."""
        self._store = store

    @property
    def store(self) -> DirectoryStore:
        """Return the backing store."""
        return self._store

    def create_instance(
        self,
        candidate: Candidate,
        snapshot: InstanceSnapshot,
        credential: str | None = None,
    ) -> CreatedInstance:
        """Persist *candidate* with *snapshot* and a credential."""
        api_key = credential or mint_credential()
        instance = {
            "uri": candidate.uri,
            "name": snapshot.title,
            "platform": candidate.platform.value,
            "category": candidate.category,
            "content_policy": candidate.content_policy,
            "verified": False,
            "failed_checks": 0,
            "banned": False,
            "ban_reason": None,
        }
        try:
            instance_id = self._store.create(instance, snapshot.to_data(), api_key)
        except DuplicateInstanceError as exc:
            raise CreateFailure(CreateFailure.DUPLICATE, str(exc)) from exc
        except StateRegistryError as exc:
            raise CreateFailure(CreateFailure.INVALID, str(exc)) from exc

        # verified is re-asserted independently of the creation default. The
        # create has already committed, so a failure here must not fail it.
        try:
            self._store.update(instance_id, {"verified": False})
        except (StateRegistryError, OSError) as exc:
            LOGGER.warning(
                "Could not re-assert verified=false for id=%s uri=%s: %s",
                instance_id,
                candidate.uri,
                exc,
            )

        LOGGER.info("Created instance id=%s uri=%s", instance_id, candidate.uri)
        return CreatedInstance(instance_id=instance_id, uri=candidate.uri, credential=api_key)

    def update_health_and_snapshot(
        self,
        instance_id: int,
        outcome: ProbeOutcome,
    ) -> HealthTransition:
        """Apply *outcome* to the instance in one write."""
        try:
            entry = self._store.get(instance_id)
        except StateRegistryError as exc:
            raise UpdateFailure(f"Unable to read instance {instance_id}: {exc}") from exc
        if entry is None:
            raise UpdateFailure(f"Instance id {instance_id} not found in directory")

        before = HealthFields.from_entry(entry)
        after = next_health(before, outcome.ok)
        data = outcome.snapshot.to_data() if outcome.snapshot is not None else None
        try:
            self._store.update(instance_id, after.to_dict(), data=data)
        except DirectoryValidationError as exc:
            raise UpdateFailure(f"Rejected update for {entry['uri']}: {exc}") from exc
        except (StateRegistryError, OSError) as exc:
            raise UpdateFailure(f"Unable to update {entry['uri']}: {exc}") from exc

        return HealthTransition(
            instance_id=instance_id,
            uri=str(entry["uri"]),
            before=before,
            after=after,
            snapshot_updated=data is not None,
        )


__all__ = ["CreatedInstance", "DirectoryWriter", "mint_credential"]
