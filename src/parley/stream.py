"""
Parley - Message stream router.

Created by orpheus497

Holds a single logical subscription over every conversation, pushes each
received message through the pipeline stages and dispatches the survivors
to the application handler. Dropped subscriptions are reopened with
exponential backoff, resuming after the last dispatched sequence of every
conversation.
"""

import asyncio
import contextlib
import inspect
import logging
import time
from dataclasses import dataclass
from typing import Any, AsyncIterator, Awaitable, Callable, List, Optional, Union

from .config import AgentConfig
from .constants import CONTENT_TYPE_TEXT, STREAM_WORKER_QUEUE_SIZE
from .errors import (
    ErrorCode,
    PersistenceFailure,
    StreamUnavailable,
    TransportUnavailable,
)
from .gate import SessionGate
from .group import GroupStateMachine
from .models import ConsentState, Conversation, ConversationId, InboxId, Message, MessageId
from .pipeline import (
    DedupStage,
    DispatchStage,
    FilterStage,
    OrderingStage,
    PipelineStats,
    StageOutcome,
)
from .store import ReplicaStore
from .sync import ConversationSynchronizer
from .transport import TransportClient
from .utils import backoff_delay, retry_transient

logger = logging.getLogger(__name__)

_END = object()


class _RotationPause(Exception):
    """The stream gave way to a credential rotation and must be reopened."""


async def _next(iterator: AsyncIterator[Message]) -> Any:
    try:
        return await iterator.__anext__()
    except StopAsyncIteration:
        return _END


@dataclass(frozen=True)
class Reply:
    """Send ``content`` back to the conversation the message came from."""

    content: Any
    content_type: str = CONTENT_TYPE_TEXT


@dataclass(frozen=True)
class NoAction:
    """Handled; nothing to send."""


Action = Union[Reply, NoAction]


class ConversationContext:
    """What a handler can see and do for the conversation of one message."""

    def __init__(
        self,
        router: "MessageStreamRouter",
        conversation_id: ConversationId,
        conversation: Optional[Conversation],
        groups: Optional[GroupStateMachine],
    ):
        self._router = router
        self.conversation_id = conversation_id
        self.conversation = conversation
        self.groups = groups

    @property
    def self_inbox_id(self) -> Optional[InboxId]:
        return self._router.self_inbox_id

    async def send(self, content: Any, content_type: str = CONTENT_TYPE_TEXT) -> MessageId:
        return await self._router.send(self.conversation_id, content, content_type)

    def history(self) -> List[Message]:
        return self._router.store.messages(self.conversation_id)


Handler = Callable[[Message, ConversationContext], Union[Optional[Action], Awaitable[Optional[Action]]]]


class MessageStreamRouter:
    """Routes the real-time message stream to an application handler."""

    def __init__(
        self,
        store: ReplicaStore,
        transport: TransportClient,
        synchronizer: ConversationSynchronizer,
        config: AgentConfig,
        self_inbox_id: Optional[InboxId] = None,
        groups: Optional[GroupStateMachine] = None,
        gate: Optional[SessionGate] = None,
    ):
        self.store = store
        self.transport = transport
        self.synchronizer = synchronizer
        self.config = config
        self.self_inbox_id = self_inbox_id
        self.groups = groups
        self.gate = gate or SessionGate()

        self.dedup = DedupStage(config.stream.dedup_window)
        self.filter = FilterStage(self_inbox_id, config.content_types, self._consent_of)
        self.ordering = OrderingStage()
        self.stats = PipelineStats()

        self.connected = False
        self.last_message_at: Optional[float] = None
        self.failures = 0
        self._dispatch: Optional[DispatchStage] = None

    def set_self_inbox(self, inbox_id: InboxId) -> None:
        self.self_inbox_id = inbox_id
        self.filter.self_inbox_id = inbox_id

    def seed_from_store(self) -> None:
        """Treat everything already in the replica as dispatched."""
        for cid in self.store.histories():
            messages = self.store.messages(cid)
            last = messages[-1].sent_at_sequence
            self.ordering.seed(cid, last, [m.message_id for m in messages if m.sent_at_sequence == last])

    def _consent_of(self, conversation_id: ConversationId) -> Optional[ConsentState]:
        conversation = self.store.get(conversation_id)
        return conversation.consent_state if conversation is not None else None

    # Subscription

    async def stream_all(self) -> AsyncIterator[Message]:
        """
        Yield every message that passes dedup, filtering and ordering.

        Reconnects transparently on TransportUnavailable or when the
        transport ends the stream.

        Raises:
            StreamUnavailable: After max_reconnect_attempts consecutive failed connections
            AuthenticationRejected: If the network rejected the session
        """
        settings = self.config.stream
        self.failures = 0
        while True:
            cause: Optional[BaseException] = None
            try:
                async with self.gate.shared():
                    stream = self.transport.open_stream(self.ordering.resume_from())
                self.connected = True
                logger.info("Message stream connected")
                async with contextlib.aclosing(self._batches(stream)) as batches:
                    async for batch in batches:
                        await self.gate.wait_open()
                        self.failures = 0
                        for message in await self._admit(batch):
                            yield message
                logger.warning("Message stream ended by transport")
            except _RotationPause:
                logger.info("Message stream paused for credential rotation")
                continue
            except TransportUnavailable as e:
                cause = e
                logger.warning(f"Message stream dropped: {e}")
            finally:
                self.connected = False

            self.failures += 1
            if self.failures > settings.max_reconnect_attempts:
                raise StreamUnavailable(
                    ErrorCode.E210_STREAM_UNAVAILABLE,
                    f"Stream failed {self.failures} consecutive times",
                    {"operation": "stream_all", "cause": str(cause) if cause else "stream ended"},
                ) from cause

            delay = backoff_delay(self.failures, settings.backoff_base, settings.max_backoff)
            self.stats.reconnects += 1
            logger.info(
                f"Reconnecting message stream in {delay:.1f}s "
                f"(attempt {self.failures}/{settings.max_reconnect_attempts})"
            )
            await asyncio.sleep(delay)

    async def _batches(self, stream: AsyncIterator[Message]) -> AsyncIterator[List[Message]]:
        """Group stream messages into reorder windows."""
        settings = self.config.stream
        queue: asyncio.Queue = asyncio.Queue(maxsize=settings.batch_size * 4)
        reader = asyncio.create_task(self._pump(stream, queue))
        loop = asyncio.get_running_loop()
        try:
            while True:
                item = await queue.get()
                if item is _END:
                    return
                if isinstance(item, BaseException):
                    raise item

                batch = [item]
                ended = None
                deadline = loop.time() + settings.reorder_window
                while len(batch) < settings.batch_size:
                    remaining = deadline - loop.time()
                    try:
                        if remaining > 0:
                            item = await asyncio.wait_for(queue.get(), remaining)
                        else:
                            item = queue.get_nowait()
                    except (asyncio.TimeoutError, asyncio.QueueEmpty):
                        break
                    if item is _END or isinstance(item, BaseException):
                        ended = item
                        break
                    batch.append(item)

                yield batch
                if ended is _END:
                    return
                if ended is not None:
                    raise ended
        finally:
            reader.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await reader
            aclose = getattr(stream, "aclose", None)
            if aclose is not None:
                await aclose()

    async def _pump(self, stream: AsyncIterator[Message], queue: asyncio.Queue) -> None:
        iterator = stream.__aiter__()
        while True:
            try:
                item = await self._read(iterator)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                await queue.put(e)
                return
            await queue.put(item)
            if item is _END:
                return

    async def _read(self, iterator: AsyncIterator[Message]) -> Any:
        """
        Read the next message under a shared slot of the session gate.

        Raises:
            _RotationPause: If a credential rotation interrupted the read
        """
        async with self.gate.shared():
            read = asyncio.create_task(_next(iterator))
            rotation = asyncio.create_task(self.gate.wait_rotation())
            try:
                await asyncio.wait({read, rotation}, return_when=asyncio.FIRST_COMPLETED)
            finally:
                for task in (read, rotation):
                    if not task.done():
                        task.cancel()
                        with contextlib.suppress(asyncio.CancelledError):
                            await task
            if read.cancelled():
                raise _RotationPause()
            return read.result()

    async def _admit(self, batch: List[Message]) -> List[Message]:
        """Run a batch through dedup and filtering, then order it."""
        self.last_message_at = time.time()
        passed: List[Message] = []
        for message in batch:
            self.stats.received += 1
            outcome = self.dedup.check(message)
            if outcome is StageOutcome.PASSED:
                if message.conversation_id not in self.store:
                    await self._discover(message.conversation_id)
                outcome = self.filter.check(message)

            if outcome is StageOutcome.PASSED:
                passed.append(message)
            else:
                self.stats.record(outcome)
                logger.debug(f"Message {message.message_id} not dispatched: {outcome.value}")

        ordered = self.ordering.order(passed)
        for _ in range(len(passed) - len(ordered)):
            self.stats.record(StageOutcome.STALE)
        return ordered

    async def _discover(self, conversation_id: ConversationId) -> None:
        try:
            await self.synchronizer.discover(conversation_id)
        except (TransportUnavailable, PersistenceFailure) as e:
            # Still dispatched; consent is treated as unknown
            logger.warning(f"Could not discover conversation {conversation_id}: {e}")

    # Dispatch

    async def run(self, handler: Handler) -> None:
        """
        Dispatch every streamed message to ``handler`` until cancelled.

        Raises:
            StreamUnavailable: If the stream could not be kept alive
        """
        self._dispatch = DispatchStage(
            lambda message: self._handle(message, handler), STREAM_WORKER_QUEUE_SIZE
        )
        try:
            async for message in self.stream_all():
                await self._dispatch.submit(message)
        finally:
            await self._dispatch.close()
            self._dispatch = None

    async def _handle(self, message: Message, handler: Handler) -> None:
        cid = message.conversation_id
        try:
            await self.store.append_messages(cid, [message])
        except PersistenceFailure as e:
            logger.error(f"Could not store message {message.message_id} in {cid}: {e}")

        context = ConversationContext(self, cid, self.store.get(cid), self.groups)
        self.stats.dispatched += 1
        try:
            action = handler(message, context)
            if inspect.isawaitable(action):
                action = await action
            if isinstance(action, Reply):
                await context.send(action.content, action.content_type)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.stats.handler_errors += 1
            logger.error(f"Handler failed for message {message.message_id} in {cid}: {e}", exc_info=True)

    async def send(
        self, conversation_id: ConversationId, content: Any, content_type: str = CONTENT_TYPE_TEXT
    ) -> MessageId:
        """
        Publish a message to a conversation.

        Raises:
            TransportUnavailable: If every attempt failed
            AuthenticationRejected: If the network rejected the session
        """
        async with self.gate.shared():
            message_id = await retry_transient(
                "push",
                lambda: self.transport.push(conversation_id, content, content_type),
                attempts=self.config.retry_attempts,
                timeout=self.config.network_timeout,
                conversation_id=conversation_id,
            )
        logger.debug(f"Sent {content_type} message {message_id} to {conversation_id}")
        return message_id

    def pending(self) -> dict:
        return self._dispatch.pending() if self._dispatch is not None else {}

