"""Client-side completion poller with bounded linear backoff."""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterator, List, Optional, Protocol
from uuid import UUID

import httpx
from sqlalchemy.orm import Session

from deferred_completion.config import settings
from deferred_completion.core.record_store import RecordStore, StoreUnavailableError
from deferred_completion.schemas.completion import CompletionRecordResponse

logger = logging.getLogger(__name__)

INITIAL_INTERVAL_SECONDS = 2.0
INTERVAL_INCREMENT_SECONDS = 1.0
MAX_INTERVAL_SECONDS = 10.0
DEFAULT_MAX_WAIT_SECONDS = 300.0


class PollState(str, enum.Enum):
    """States of a single polling run."""

    WAITING = "waiting"
    DONE = "done"
    TIMED_OUT = "timed_out"


@dataclass
class PollResult:
    """Outcome of a polling run.

    A TIMED_OUT result is not an error: the record is still pending and may
    complete later, so the caller may poll again.
    """

    state: PollState
    record_id: UUID
    record: Optional[CompletionRecordResponse] = None
    waited: float = 0.0
    attempts: int = 0


class RecordReader(Protocol):
    async def read(self, record_id: UUID) -> Optional[CompletionRecordResponse]: ...


def backoff_intervals(
    initial: float = INITIAL_INTERVAL_SECONDS,
    increment: float = INTERVAL_INCREMENT_SECONDS,
    cap: float = MAX_INTERVAL_SECONDS,
) -> Iterator[float]:
    """Yield wait intervals: ``initial``, growing by ``increment``, capped at ``cap``."""
    interval = min(initial, cap)
    while True:
        yield interval
        interval = min(interval + increment, cap)


def backoff_schedule(
    max_wait: float = DEFAULT_MAX_WAIT_SECONDS,
    initial: float = INITIAL_INTERVAL_SECONDS,
    increment: float = INTERVAL_INCREMENT_SECONDS,
    cap: float = MAX_INTERVAL_SECONDS,
) -> List[float]:
    """Return every wait a poller performs before timing out.

    The last entry is the step on which the cumulative wait reaches ``max_wait``.
    """
    schedule: List[float] = []
    waited = 0.0
    for interval in backoff_intervals(initial, increment, cap):
        schedule.append(interval)
        waited += interval
        if waited >= max_wait:
            return schedule
    return schedule


class StoreRecordReader:
    """Reads records straight from the record store, one session per read."""

    def __init__(self, session_factory: Callable[[], Session]) -> None:
        self.session_factory = session_factory

    async def read(self, record_id: UUID) -> Optional[CompletionRecordResponse]:
        db = self.session_factory()
        try:
            record = RecordStore(db).get(record_id)
            return CompletionRecordResponse.from_record(record) if record is not None else None
        finally:
            db.close()


class HttpRecordReader:
    """Reads records through ``GET /api/completions/{id}``.

    Args:
        base_url: Base URL of the deferred completion API
        timeout: Request timeout in seconds
    """

    def __init__(self, base_url: str, timeout: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def client(self) -> httpx.AsyncClient:
        """Lazy-load async HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def read(self, record_id: UUID) -> Optional[CompletionRecordResponse]:
        try:
            response = await self.client.get(f"/api/completions/{record_id}")
            if response.status_code == 404:
                return None
            response.raise_for_status()
        except httpx.HTTPError as e:
            logger.error(f"Failed to read record {record_id}: {e}")
            raise StoreUnavailableError(f"Failed to read record {record_id}: {e}") from e
        return CompletionRecordResponse.model_validate(response.json())

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None:
            await self._client.aclose()
            self._client = None


class CompletionPoller:
    """Re-reads a record until its ``finish_reason`` appears or the wait budget runs out.

    Args:
        reader: Source of record reads
        initial_interval: First wait in seconds
        increment: Growth of the wait after each unfinished read
        max_interval: Upper bound of a single wait
        max_wait: Default total wait budget in seconds (defaults to settings)
        sleep: Awaitable sleep function
    """

    def __init__(
        self,
        reader: RecordReader,
        initial_interval: float = INITIAL_INTERVAL_SECONDS,
        increment: float = INTERVAL_INCREMENT_SECONDS,
        max_interval: float = MAX_INTERVAL_SECONDS,
        max_wait: Optional[float] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.reader = reader
        self.initial_interval = initial_interval
        self.increment = increment
        self.max_interval = max_interval
        self.max_wait = max_wait if max_wait is not None else settings.poll_max_wait_seconds
        self.sleep = sleep

    async def poll(self, record_id: UUID, max_wait: Optional[float] = None) -> PollResult:
        """Wait for a record to finish.

        Args:
            record_id: Record to observe
            max_wait: Total wait budget in seconds, overriding the poller default

        Returns:
            PollResult: DONE with the finished record, or TIMED_OUT with the last read

        Raises:
            StoreUnavailableError: If a read fails
        """
        if max_wait is None:
            max_wait = self.max_wait
        waited = 0.0
        attempts = 0
        record: Optional[CompletionRecordResponse] = None

        for interval in backoff_intervals(self.initial_interval, self.increment, self.max_interval):
            await self.sleep(interval)
            attempts += 1
            record = await self.reader.read(record_id)
            if record is not None and record.is_done:
                logger.info(f"Record {record_id} done after {attempts} reads ({waited + interval:.0f}s)")
                return PollResult(
                    state=PollState.DONE,
                    record_id=record_id,
                    record=record,
                    waited=waited + interval,
                    attempts=attempts,
                )

            waited += interval
            if waited >= max_wait:
                break

        logger.warning(f"Gave up waiting for record {record_id} after {waited:.0f}s")
        return PollResult(
            state=PollState.TIMED_OUT,
            record_id=record_id,
            record=record,
            waited=waited,
            attempts=attempts,
        )
