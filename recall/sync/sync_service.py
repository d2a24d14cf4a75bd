"""
Sync Service - pushes local progress to a remote progress store.

Core responsibilities:
- Read graded memory states of a deck from the local store
- Update records that already exist remotely, bulk-insert the rest
- Report successes and failures without rolling anything back
- Record the deck's last sync time only after a clean bulk insert

Local progress is never modified or discarded by a sync.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from loguru import logger

from recall.delivery.models import CardMemoryState, utc_now
from recall.errors import OfflineError, RecallError
from recall.retry import DEFAULT_ATTEMPTS, DEFAULT_BACKOFF, retry_async
from recall.storage.interface import StorageInterface

from .remote import RemoteStore


@dataclass
class SyncReport:
    """Statistics for one deck sync."""

    deck_id: str
    inserted: int = 0
    updated: int = 0
    unchanged: int = 0
    failed: int = 0
    errors: dict[str, str] = field(default_factory=dict)  # card_id -> error
    offline: bool = False
    synced_at: datetime | None = None  # set only when last_sync was recorded

    @property
    def ok(self) -> bool:
        return not self.offline and self.failed == 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/CLI output."""
        return {
            "deck_id": self.deck_id,
            "inserted": self.inserted,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "offline": self.offline,
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "errors": dict(list(self.errors.items())[:10]),  # Limit to 10 errors
        }


class SyncService:
    """
    Reconciles local memory states with a RemoteStore.

    Safe to call repeatedly: cards already present remotely are updated by
    their remote id, so a second sync without new grades inserts nothing.
    Failures are reported, not retried.
    """

    def __init__(
        self,
        store: StorageInterface,
        remote: RemoteStore,
        user_id: str,
        retry_attempts: int = DEFAULT_ATTEMPTS,
        retry_backoff: float = DEFAULT_BACKOFF,
    ) -> None:
        """
        Initialize sync service.

        Args:
            store: Local store holding the progress to push
            remote: Remote progress backend
            user_id: Learner whose progress is pushed
            retry_attempts: Attempts for local store reads hitting contention
            retry_backoff: Initial backoff between local retries (seconds)
        """
        self.store = store
        self.remote = remote
        self.user_id = user_id
        self.retry_attempts = retry_attempts
        self.retry_backoff = retry_backoff

    async def sync(self, deck_id: str, now: datetime | None = None) -> SyncReport:
        """
        Push a deck's progress to the remote store.

        Args:
            deck_id: Deck to sync
            now: Timestamp recorded as synced_at / last_sync

        Returns:
            SyncReport with counts; offline=True if the remote was unreachable
        """
        now = now or utc_now()
        report = SyncReport(deck_id=deck_id)

        states = await retry_async(
            lambda: self.store.get_memory_states(self.user_id, deck_id),
            attempts=self.retry_attempts,
            backoff=self.retry_backoff,
            description=f"get_memory_states({deck_id})",
        )
        # Seeded but never graded states carry no progress
        graded = [s for s in states.values() if s.reps > 0]

        try:
            existing = await self.remote.list_existing(self.user_id, deck_id)

            to_insert: list[dict[str, Any]] = []
            for state in graded:
                record = self._to_record(state, now)
                remote_record = existing.get(state.card_id)
                if remote_record is None:
                    to_insert.append(record)
                elif _unchanged(remote_record, record):
                    report.unchanged += 1
                else:
                    await self._update(remote_record, record, report)

            insert_failed = False
            if to_insert:
                try:
                    result = await self.remote.insert_many(to_insert)
                except OfflineError:
                    raise
                except RecallError as e:
                    # The whole batch was rejected
                    logger.warning("Bulk insert of {} records failed: {}", len(to_insert), e)
                    report.failed += len(to_insert)
                    report.errors.update({record["card_id"]: str(e) for record in to_insert})
                    insert_failed = True
                else:
                    report.inserted = len(result.succeeded)
                    report.failed += len(result.failed)
                    report.errors.update(result.failed)
                    insert_failed = result.has_failures
        except OfflineError as e:
            logger.warning("Sync of {} skipped, remote offline: {}", deck_id, e)
            report.offline = True
            return report

        if not insert_failed:
            await retry_async(
                lambda: self.store.set_last_sync(deck_id, now),
                attempts=self.retry_attempts,
                backoff=self.retry_backoff,
                description=f"set_last_sync({deck_id})",
            )
            report.synced_at = now

        if report.failed:
            logger.warning(
                "Sync of {} finished with {} failures: {}",
                deck_id,
                report.failed,
                report.to_dict()["errors"],
            )
        else:
            logger.info("Sync of {} complete: {}", deck_id, report.to_dict())
        return report

    async def _update(
        self, remote_record: dict[str, Any], record: dict[str, Any], report: SyncReport
    ) -> None:
        card_id = record["card_id"]
        try:
            await self.remote.update(str(remote_record["id"]), record)
            report.updated += 1
        except OfflineError:
            raise
        except RecallError as e:
            logger.warning("Update failed for card {}: {}", card_id, e)
            report.failed += 1
            report.errors[card_id] = str(e)

    def _to_record(self, state: CardMemoryState, now: datetime) -> dict[str, Any]:
        record = state.to_record()
        record["synced_at"] = now.isoformat()
        return record


def _unchanged(remote_record: dict[str, Any], record: dict[str, Any]) -> bool:
    return (
        remote_record.get("reps") == record["reps"]
        and remote_record.get("review_date") == record["review_date"]
    )
