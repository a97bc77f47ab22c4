"""Change feed consumption over the change_events outbox table."""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from uuid import UUID

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deferred_completion.core.record_store import StoreUnavailableError
from deferred_completion.models.change_event import ChangeEvent, ChangeEventKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class FeedEvent:
    """A single change-feed entry handed to consumers."""

    sequence: int
    event_kind: ChangeEventKind
    key: UUID
    new_image: Optional[Dict[str, Any]] = None
    delivery_count: int = 1

    @classmethod
    def from_row(cls, row: ChangeEvent) -> "FeedEvent":
        return cls(
            sequence=row.sequence,
            event_kind=ChangeEventKind(row.event_kind),
            key=row.record_key,
            new_image=row.new_image,
            delivery_count=row.delivery_count,
        )


@dataclass
class BatchResult:
    """Per-batch report returned by a consumer.

    Events whose sequence appears in ``batch_item_failures`` are redelivered.
    """

    batch_item_failures: List[int] = field(default_factory=list)


class ChangeFeed:
    """Ordered, at-least-once reader over the change_events table.

    Events stay unacknowledged until ``acknowledge`` is called for them, so a
    consumer that crashes mid-batch sees the same events again.
    """

    def __init__(self, db: Session) -> None:
        self.db = db

    def read_batch(self, limit: int = 10) -> List[FeedEvent]:
        """Return the oldest unacknowledged events in feed order.

        Raises:
            StoreUnavailableError: If the feed cannot be read
        """
        try:
            rows = list(
                self.db.execute(
                    select(ChangeEvent)
                    .where(ChangeEvent.acknowledged_at.is_(None))
                    .order_by(ChangeEvent.sequence)
                    .limit(limit)
                    .execution_options(populate_existing=True)
                ).scalars()
            )
            for row in rows:
                row.delivery_count = (row.delivery_count or 0) + 1
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to read change feed: {e}")
            raise StoreUnavailableError(f"Change feed unavailable: {e}") from e

        return [FeedEvent.from_row(row) for row in rows]

    def acknowledge(self, events: Iterable[FeedEvent], failed_sequences: Iterable[int] = ()) -> int:
        """Acknowledge every event that is not reported as failed.

        Args:
            events: Events of the batch that was handed to the consumer
            failed_sequences: Sequences the consumer reported as failed

        Returns:
            int: Number of events acknowledged
        """
        failed = set(failed_sequences)
        sequences = [event.sequence for event in events if event.sequence not in failed]
        if failed:
            logger.warning(f"Change events {sorted(failed)} left unacknowledged for redelivery")
        if not sequences:
            return 0

        try:
            self.db.execute(
                update(ChangeEvent)
                .where(ChangeEvent.sequence.in_(sequences))
                .values(acknowledged_at=datetime.now(timezone.utc))
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to acknowledge change events: {e}")
            raise StoreUnavailableError(f"Change feed unavailable: {e}") from e

        return len(sequences)
