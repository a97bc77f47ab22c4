"""Trigger processor: turns record creation events into completion calls."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Tuple

from sqlalchemy.orm import Session

from deferred_completion.config import FALLBACK_MAX_TOKENS, CompletionDefaults
from deferred_completion.core.change_feed import BatchResult, FeedEvent
from deferred_completion.core.completion_client import (
    ChatMessage,
    CompletionClient,
    ExternalServiceError,
)
from deferred_completion.core.record_store import RecordNotFoundError, RecordStore
from deferred_completion.models.change_event import ChangeEventKind
from deferred_completion.models.request_record import ResponseFormat

logger = logging.getLogger(__name__)

STRUCTURED_FORMAT_HINT: Dict[str, Any] = {"type": "json_object"}
TIMEOUT_FINISH_REASON = "timeout"
INTERNAL_ERROR_FINISH_REASON = "internal_error"


@dataclass(frozen=True)
class CompletionRequest:
    """Everything needed for one call to the completion service."""

    messages: Tuple[ChatMessage, ...]
    model_id: str
    max_tokens: int
    temperature: float
    format_hint: Optional[Dict[str, Any]] = None


@dataclass(frozen=True)
class ProcessingOutcome:
    """Terminal fields written back to a record."""

    content: str
    finish_reason: str
    usage: Dict[str, int]


def build_completion_request(image: Dict[str, Any], defaults: CompletionDefaults) -> CompletionRequest:
    """Derive a completion request from a record image.

    System prompt precedes user prompt; either is omitted when absent.
    ``max_tokens`` falls back from the record to the process default to a
    hardcoded floor, ``model_id`` from the record to the process default.
    """
    messages = []
    if image.get("system_prompt") is not None:
        messages.append(ChatMessage(role="system", content=image["system_prompt"]))
    if image.get("user_prompt") is not None:
        messages.append(ChatMessage(role="user", content=image["user_prompt"]))

    max_tokens = image.get("max_tokens") or defaults.max_tokens or FALLBACK_MAX_TOKENS
    model_id = image.get("model_id") or defaults.model_id

    response_format = image.get("response_format") or ResponseFormat.STRUCTURED.value
    format_hint = dict(STRUCTURED_FORMAT_HINT) if response_format == ResponseFormat.STRUCTURED.value else None

    return CompletionRequest(
        messages=tuple(messages),
        model_id=model_id,
        max_tokens=int(max_tokens),
        temperature=defaults.temperature,
        format_hint=format_hint,
    )


def _internal_error(error: Exception) -> ProcessingOutcome:
    return ProcessingOutcome(
        content=f"Unexpected error: {error}",
        finish_reason=INTERNAL_ERROR_FINISH_REASON,
        usage={},
    )


class TriggerProcessor:
    """Consumes change-feed events and writes completion results back.

    Only creation events are processed. Each one produces exactly one call to
    the completion service and one conditional write-back to the record named
    by the event key. Failures of the external call are stored on the record as
    an error result; they are never retried here and never reported to the feed.

    Args:
        session_factory: Callable returning a new database session per event
        client: Completion service client
        defaults: Process-wide completion defaults
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        client: CompletionClient,
        defaults: CompletionDefaults,
    ) -> None:
        self.session_factory = session_factory
        self.client = client
        self.defaults = defaults

    async def _invoke(self, request: CompletionRequest) -> ProcessingOutcome:
        try:
            result = await asyncio.wait_for(
                self.client.complete(
                    messages=request.messages,
                    model_id=request.model_id,
                    max_tokens=request.max_tokens,
                    temperature=request.temperature,
                    format_hint=request.format_hint,
                ),
                timeout=self.defaults.timeout_seconds,
            )
        except ExternalServiceError as e:
            logger.warning(f"Completion service error ({e.code}): {e.message}")
            return ProcessingOutcome(content=e.message, finish_reason=e.code, usage={})
        except asyncio.TimeoutError:
            logger.warning(f"Completion call exceeded {self.defaults.timeout_seconds}s")
            return ProcessingOutcome(
                content=f"Completion did not finish within {self.defaults.timeout_seconds} seconds",
                finish_reason=TIMEOUT_FINISH_REASON,
                usage={},
            )
        except Exception as e:
            logger.exception(f"Unexpected error during completion call: {e}")
            return _internal_error(e)

        return ProcessingOutcome(content=result.content, finish_reason=result.finish_reason, usage=result.usage)

    def _load_image(self, event: FeedEvent) -> Optional[Dict[str, Any]]:
        if event.new_image is not None:
            return event.new_image
        db = self.session_factory()
        try:
            record = RecordStore(db).get(event.key)
            return record.to_image() if record is not None else None
        finally:
            db.close()

    def _write_back(self, event: FeedEvent, outcome: ProcessingOutcome) -> bool:
        db = self.session_factory()
        try:
            return RecordStore(db).complete(
                event.key,
                content=outcome.content,
                finish_reason=outcome.finish_reason,
                usage=outcome.usage,
            )
        finally:
            db.close()

    async def process_event(self, event: FeedEvent) -> bool:
        """Process a single change-feed event.

        Returns:
            bool: True if the event completed its record, False otherwise

        Raises:
            StoreUnavailableError: If the record cannot be read or written
        """
        if event.event_kind != ChangeEventKind.CREATED:
            logger.debug(f"Ignoring {event.event_kind.value} event {event.sequence} for record {event.key}")
            return False

        image = self._load_image(event)
        if image is None:
            logger.warning(f"Record {event.key} from event {event.sequence} no longer exists")
            return False

        try:
            request = build_completion_request(image, self.defaults)
        except (TypeError, ValueError) as e:
            logger.error(f"Record {event.key} cannot be turned into a completion request: {e}")
            outcome = _internal_error(e)
        else:
            outcome = await self._invoke(request)

        try:
            written = self._write_back(event, outcome)
        except RecordNotFoundError:
            logger.warning(f"Record {event.key} disappeared before write-back")
            return False

        if written:
            logger.info(f"Completed record {event.key} with finish_reason={outcome.finish_reason}")
        else:
            logger.warning(
                f"Record {event.key} was already complete; duplicate delivery of event {event.sequence} ignored"
            )
        return written

    async def _process_absorbing_errors(self, event: FeedEvent) -> None:
        try:
            await self.process_event(event)
        except Exception as e:
            logger.exception(f"Unexpected error processing event {event.sequence} for record {event.key}: {e}")

    async def handle_batch(self, events: Iterable[FeedEvent]) -> BatchResult:
        """Process a batch of events concurrently.

        Events touch disjoint records, so they run side by side. The result never
        lists failed items: processing failures must not trigger redelivery.
        """
        events = list(events)
        await asyncio.gather(*(self._process_absorbing_errors(event) for event in events))
        return BatchResult(batch_item_failures=[])
