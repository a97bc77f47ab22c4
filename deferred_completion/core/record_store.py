"""Durable request record storage with a transactional change feed."""

import logging
import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional
from uuid import UUID

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from deferred_completion.models.change_event import ChangeEvent, ChangeEventKind
from deferred_completion.models.request_record import RequestRecord

logger = logging.getLogger(__name__)

# Fields a caller may set through update(); id and timestamps are store-managed
UPDATABLE_FIELDS = frozenset(
    {
        "system_prompt",
        "user_prompt",
        "max_tokens",
        "response_format",
        "model_id",
        "content",
        "usage",
        "finish_reason",
        "expires_at",
    }
)


class StoreError(Exception):
    """Base exception for record store operations."""

    pass


class StoreUnavailableError(StoreError):
    """Raised when a read or write cannot be completed by the database."""

    pass


class RecordNotFoundError(StoreError):
    """Raised when a record does not exist."""

    pass


def _as_uuid(record_id: UUID | str) -> UUID:
    if isinstance(record_id, UUID):
        return record_id
    try:
        return UUID(str(record_id))
    except ValueError as e:
        raise RecordNotFoundError(f"Invalid record id: {record_id}") from e


class RecordStore:
    """Keyed storage for request records.

    Every mutation appends a ChangeEvent row in the same transaction, so the
    change feed never misses or invents a mutation.

    Args:
        db: SQLAlchemy session owned by the caller
        ttl_seconds: Lifetime stamped into ``expires_at`` on creation (None or 0 disables)
    """

    def __init__(self, db: Session, ttl_seconds: Optional[int] = None) -> None:
        self.db = db
        self.ttl_seconds = ttl_seconds

    def _emit(self, kind: ChangeEventKind, record_key: UUID, image: Optional[Dict[str, Any]]) -> None:
        self.db.add(
            ChangeEvent(
                event_kind=kind.value,
                record_key=record_key,
                new_image=image,
            )
        )

    def _rollback(self, action: str, error: SQLAlchemyError) -> StoreUnavailableError:
        logger.error(f"Record store {action} failed: {error}")
        try:
            self.db.rollback()
        except SQLAlchemyError as rollback_error:
            logger.error(f"Rollback after failed {action} also failed: {rollback_error}")
        return StoreUnavailableError(f"Record store unavailable during {action}: {error}")

    def create(self, **fields: Any) -> UUID:
        """Create a new pending record.

        Args:
            **fields: Initial request fields (system_prompt, user_prompt, max_tokens,
                response_format, model_id)

        Returns:
            UUID: Identifier of the new record

        Raises:
            StoreUnavailableError: If the record cannot be committed
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")

        record = RequestRecord(**fields)
        if self.ttl_seconds:
            record.expires_at = int(time.time()) + self.ttl_seconds

        try:
            self.db.add(record)
            self.db.flush()
            self._emit(ChangeEventKind.CREATED, record.id, record.to_image())
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._rollback("create", e) from e

        logger.info(f"Created request record {record.id}")
        return record.id

    def get(self, record_id: UUID | str) -> Optional[RequestRecord]:
        """Read a record by identifier.

        Returns:
            RequestRecord | None: The record, or None if it does not exist

        Raises:
            StoreUnavailableError: If the read fails
        """
        try:
            key = _as_uuid(record_id)
        except RecordNotFoundError:
            return None

        try:
            return self.db.execute(
                select(RequestRecord).where(RequestRecord.id == key).execution_options(populate_existing=True)
            ).scalar_one_or_none()
        except SQLAlchemyError as e:
            raise self._rollback("get", e) from e

    def update(self, record_id: UUID | str, fields: Dict[str, Any]) -> RequestRecord:
        """Overwrite a set of fields on an existing record.

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreUnavailableError: If the write fails
        """
        unknown = set(fields) - UPDATABLE_FIELDS
        if unknown:
            raise ValueError(f"Unknown record fields: {sorted(unknown)}")

        record = self.get(record_id)
        if record is None:
            raise RecordNotFoundError(f"Request record {record_id} not found")

        try:
            for name, value in fields.items():
                setattr(record, name, value)
            record.updated_at = datetime.now(timezone.utc)
            self.db.flush()
            self._emit(ChangeEventKind.UPDATED, record.id, record.to_image())
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._rollback("update", e) from e

        return record

    def complete(
        self,
        record_id: UUID | str,
        content: str,
        finish_reason: str,
        usage: Dict[str, int],
    ) -> bool:
        """Write the terminal fields of a record if it is still pending.

        The update is conditional on ``finish_reason`` being absent, so repeated
        deliveries of the same work cannot overwrite the first result.

        Returns:
            bool: True if the record transitioned to done, False if it was already done

        Raises:
            RecordNotFoundError: If the record does not exist
            StoreUnavailableError: If the write fails
        """
        key = _as_uuid(record_id)
        try:
            result = self.db.execute(
                update(RequestRecord)
                .where(RequestRecord.id == key, RequestRecord.finish_reason.is_(None))
                .values(
                    content=content,
                    finish_reason=finish_reason,
                    usage=usage,
                    updated_at=datetime.now(timezone.utc),
                )
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                self.db.rollback()
                exists = self.db.execute(select(RequestRecord.id).where(RequestRecord.id == key)).first()
                if exists is None:
                    raise RecordNotFoundError(f"Request record {key} not found")
                return False

            record = self.db.execute(
                select(RequestRecord).where(RequestRecord.id == key).execution_options(populate_existing=True)
            ).scalar_one()
            self._emit(ChangeEventKind.UPDATED, key, record.to_image())
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._rollback("complete", e) from e

        return True

    def purge_expired(self, now: Optional[int] = None) -> int:
        """Delete records whose ``expires_at`` has passed.

        Args:
            now: Current epoch seconds (defaults to the wall clock)

        Returns:
            int: Number of records removed
        """
        now = int(time.time()) if now is None else now
        try:
            expired_ids = list(
                self.db.execute(
                    select(RequestRecord.id).where(
                        RequestRecord.expires_at.is_not(None),
                        RequestRecord.expires_at <= now,
                    )
                ).scalars()
            )
            if not expired_ids:
                return 0

            self.db.execute(
                delete(RequestRecord)
                .where(RequestRecord.id.in_(expired_ids))
                .execution_options(synchronize_session=False)
            )
            for key in expired_ids:
                self._emit(ChangeEventKind.REMOVED, key, None)
            self.db.commit()
        except SQLAlchemyError as e:
            raise self._rollback("purge", e) from e

        logger.info(f"Purged {len(expired_ids)} expired request records")
        return len(expired_ids)
