"""
Parley - Message stream pipeline stages.

Created by orpheus497

Messages from the transport stream pass through four stages:

    DedupStage -> FilterStage -> OrderingStage -> DispatchStage

Each stage is a small object that can be exercised on its own. The router
wires them together; it never skips messages inline.
"""

import asyncio
import contextlib
import logging
from collections import Counter, OrderedDict
from enum import Enum
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Set

from .constants import STREAM_DEDUP_WINDOW, STREAM_WORKER_QUEUE_SIZE
from .models import ConsentState, ConversationId, InboxId, Message, MessageId, same_inbox

logger = logging.getLogger(__name__)


class StageOutcome(Enum):
    """What a stage decided about one message."""

    PASSED = "passed"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    SELF_AUTHORED = "self_authored"
    UNSUPPORTED_CONTENT_TYPE = "unsupported_content_type"
    CONSENT_DENIED = "consent_denied"
    STALE = "stale"


class DedupStage:
    """
    Suppresses redelivered messages.

    Remembers the most recent ``window`` message IDs; a repeated ID inside
    the window is reported as DUPLICATE_SUPPRESSED. Reconnect replays that
    fall outside the window are still caught by OrderingStage.
    """

    def __init__(self, window: int = STREAM_DEDUP_WINDOW):
        self.window = window
        self._seen: "OrderedDict[MessageId, None]" = OrderedDict()

    def check(self, message: Message) -> StageOutcome:
        if message.message_id in self._seen:
            self._seen.move_to_end(message.message_id)
            return StageOutcome.DUPLICATE_SUPPRESSED

        self._seen[message.message_id] = None
        if len(self._seen) > self.window:
            self._seen.popitem(last=False)
        return StageOutcome.PASSED

    def __len__(self) -> int:
        return len(self._seen)


class FilterStage:
    """Drops self-authored messages, undeclared content types and denied conversations."""

    def __init__(
        self,
        self_inbox_id: Optional[InboxId],
        content_types: Iterable[str],
        consent_of: Callable[[ConversationId], Optional[ConsentState]],
    ):
        self.self_inbox_id = self_inbox_id
        self.content_types = frozenset(content_types)
        self.consent_of = consent_of

    def check(self, message: Message) -> StageOutcome:
        if same_inbox(message.sender_inbox_id, self.self_inbox_id):
            return StageOutcome.SELF_AUTHORED
        if message.content_type not in self.content_types:
            return StageOutcome.UNSUPPORTED_CONTENT_TYPE
        if self.consent_of(message.conversation_id) is ConsentState.DENIED:
            return StageOutcome.CONSENT_DENIED
        return StageOutcome.PASSED


class OrderingStage:
    """
    Per-conversation ordering.

    Within a batch, messages of one conversation are emitted in
    ``sent_at_sequence`` order. A message whose sequence is lower than the
    last one emitted for its conversation is dropped as STALE. Distinct
    messages may share a sequence (two events in the same millisecond), so
    at the last sequence only the message IDs already emitted are stale.
    """

    def __init__(self) -> None:
        self._last: Dict[ConversationId, int] = {}
        self._at_last: Dict[ConversationId, Set[MessageId]] = {}

    def seed(
        self, conversation_id: ConversationId, sequence: int, message_ids: Iterable[MessageId] = ()
    ) -> None:
        """Record a sequence as already dispatched (e.g. from the local replica)."""
        last = self._last.get(conversation_id)
        if last is None or sequence > last:
            self._last[conversation_id] = sequence
            self._at_last[conversation_id] = set(message_ids)
        elif sequence == last:
            self._at_last[conversation_id].update(message_ids)

    def last_dispatched(self, conversation_id: ConversationId) -> Optional[int]:
        return self._last.get(conversation_id)

    def resume_from(self) -> Dict[ConversationId, int]:
        """Last dispatched sequence per conversation, for stream resumption."""
        return dict(self._last)

    def is_stale(self, message: Message) -> bool:
        last = self._last.get(message.conversation_id)
        if last is None or message.sent_at_sequence > last:
            return False
        if message.sent_at_sequence < last:
            return True
        return message.message_id in self._at_last[message.conversation_id]

    def order(self, batch: List[Message]) -> List[Message]:
        """Sort a batch per conversation and drop stale messages.

        Conversations keep the order in which they first appear in the batch.
        """
        by_conversation: Dict[ConversationId, List[Message]] = {}
        for message in batch:
            by_conversation.setdefault(message.conversation_id, []).append(message)

        ordered: List[Message] = []
        for cid, messages in by_conversation.items():
            # sorted() is stable: equal sequences keep arrival order
            for message in sorted(messages, key=lambda m: m.sent_at_sequence):
                if self.is_stale(message):
                    logger.debug(
                        f"Dropping stale message {message.message_id} in {cid} "
                        f"(seq {message.sent_at_sequence}, last {self._last[cid]})"
                    )
                    continue
                self.seed(cid, message.sent_at_sequence, [message.message_id])
                ordered.append(message)
        return ordered


class DispatchStage:
    """
    Per-conversation dispatch queues.

    Each conversation gets its own queue and worker task, so a slow handler
    only delays its own conversation. Messages of one conversation are
    handled one at a time, in submission order. Worker failures are logged
    and counted; they never stop the worker.
    """

    def __init__(
        self,
        handle: Callable[[Message], Awaitable[None]],
        queue_size: int = STREAM_WORKER_QUEUE_SIZE,
    ):
        self.handle = handle
        self.queue_size = queue_size
        self.errors = 0
        self._queues: Dict[ConversationId, asyncio.Queue] = {}
        self._workers: Dict[ConversationId, asyncio.Task] = {}
        self._closed = False

    async def submit(self, message: Message) -> None:
        """Queue a message for its conversation's worker (waits when that queue is full)."""
        if self._closed:
            raise RuntimeError("Dispatch stage is closed")
        cid = message.conversation_id
        queue = self._queues.get(cid)
        if queue is None:
            queue = asyncio.Queue(maxsize=self.queue_size)
            self._queues[cid] = queue
            self._workers[cid] = asyncio.create_task(self._worker(cid, queue), name=f"dispatch:{cid}")
        await queue.put(message)

    async def _worker(self, conversation_id: ConversationId, queue: asyncio.Queue) -> None:
        while True:
            message = await queue.get()
            try:
                await self.handle(message)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.errors += 1
                logger.error(
                    f"Dispatch of {message.message_id} in {conversation_id} failed: {e}",
                    exc_info=True,
                )
            finally:
                queue.task_done()

    async def drain(self) -> None:
        """Wait until every queued message has been handled."""
        for queue in list(self._queues.values()):
            await queue.join()

    def pending(self) -> Dict[ConversationId, int]:
        return {cid: q.qsize() for cid, q in self._queues.items() if q.qsize()}

    async def close(self) -> None:
        """Cancel all workers and wait for them to exit."""
        self._closed = True
        workers = list(self._workers.values())
        for worker in workers:
            worker.cancel()
        for worker in workers:
            with contextlib.suppress(asyncio.CancelledError):
                await worker
        self._workers.clear()
        self._queues.clear()


class PipelineStats:
    """Counters per stage outcome plus dispatch totals."""

    def __init__(self) -> None:
        self.outcomes: Counter = Counter()
        self.received = 0
        self.dispatched = 0
        self.handler_errors = 0
        self.reconnects = 0

    def record(self, outcome: StageOutcome) -> None:
        self.outcomes[outcome] += 1

    def to_dict(self) -> Dict[str, int]:
        data = {
            "received": self.received,
            "dispatched": self.dispatched,
            "handler_errors": self.handler_errors,
            "reconnects": self.reconnects,
        }
        for outcome in StageOutcome:
            if outcome is not StageOutcome.PASSED:
                data[outcome.value] = self.outcomes[outcome]
        return data
