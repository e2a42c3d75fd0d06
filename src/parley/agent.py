"""
Parley - Agent runtime.

Created by orpheus497

Wires the replica store, synchronizer, group state machine and stream
router around one transport session, and runs the two long-lived tasks of
an agent: the message stream and the periodic sync loop.
"""

import asyncio
import contextlib
import json
import logging
import os
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import aiofiles

from .config import AgentConfig
from .constants import CONTENT_TYPE_TEXT, PENDING_DB_FILENAME, STATUS_FILENAME
from .errors import (
    AuthenticationRejected,
    ParleyError,
    TransportUnavailable,
)
from .gate import SessionGate
from .group import GroupStateMachine
from .models import (
    ConsentState,
    Conversation,
    ConversationId,
    DirectConversation,
    GroupConversation,
    InboxId,
    InboxState,
    InstallationId,
    MessageId,
    PermissionPolicySet,
    normalize_inbox_id,
)
from .pending import PendingMutationQueue
from .store import ReplicaStore
from .stream import Handler, MessageStreamRouter
from .sync import ConversationSynchronizer
from .transport import IdentityProvider, TransportClient
from .utils import backoff_delay, call_transport, retry_transient

logger = logging.getLogger(__name__)


@dataclass
class HealthStatus:
    """Snapshot of agent health, also written to status.json."""

    running: bool
    streaming: bool
    inbox_id: Optional[InboxId] = None
    conversations: int = 0
    pending_mutations: int = 0
    stream_failures: int = 0
    last_sync_at: Optional[float] = None
    last_message_at: Optional[float] = None
    sync_generation: int = 0
    error: Optional[str] = None
    stats: Dict[str, int] = field(default_factory=dict)
    cursors: Dict[ConversationId, Optional[str]] = field(default_factory=dict)

    @property
    def healthy(self) -> bool:
        return self.running and self.streaming and self.error is None

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["healthy"] = self.healthy
        return data


def read_status(data_dir: Path) -> Optional[Dict[str, Any]]:
    """Load the status file written by a running agent, or None."""
    status_file = Path(data_dir) / STATUS_FILENAME
    if not status_file.exists():
        return None
    try:
        with open(status_file, encoding="utf-8") as f:
            return json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Unreadable status file {status_file}: {e}")
        return None


class Agent:
    """One inbox on the network, served by one transport session."""

    def __init__(
        self,
        config: AgentConfig,
        transport: TransportClient,
        identity: IdentityProvider,
        handler: Optional[Handler] = None,
        store: Optional[ReplicaStore] = None,
        pending: Optional[PendingMutationQueue] = None,
    ):
        """
        Initialize the agent.

        Args:
            config: Validated agent configuration
            transport: Transport client (not yet registered)
            identity: Identity the transport registers with
            handler: Application message handler; None runs sync only
            store: Replica store (defaults to one under config.data_dir)
            pending: Pending mutation queue (defaults to one under config.data_dir)
        """
        self.config = config
        self.transport = transport
        self.identity = identity
        self.handler = handler
        self.data_dir = Path(config.data_dir) if config.data_dir else None

        self.gate = SessionGate()
        self.store = store or ReplicaStore(self.data_dir)
        self._owns_pending = pending is None
        if pending is None:
            pending = PendingMutationQueue(
                self.data_dir / PENDING_DB_FILENAME if self.data_dir else None
            )
        self.pending = pending

        self.synchronizer = ConversationSynchronizer(
            self.store, transport, config, pending=self.pending, gate=self.gate
        )
        self.groups = GroupStateMachine(
            self.store,
            transport,
            pending=self.pending,
            timeout=config.network_timeout,
            retry_attempts=config.retry_attempts,
            gate=self.gate,
        )
        self.router = MessageStreamRouter(
            self.store, transport, self.synchronizer, config, groups=self.groups, gate=self.gate
        )

        self.inbox_id: Optional[InboxId] = None
        self.running = False
        self.last_sync_at: Optional[float] = None
        self.error: Optional[ParleyError] = None
        self._stream_task: Optional[asyncio.Task] = None
        self._sync_task: Optional[asyncio.Task] = None
        self._stopped = asyncio.Event()

    # Lifecycle

    async def start(self) -> InboxId:
        """
        Register, run an initial sync and launch the stream and sync tasks.

        Raises:
            AuthenticationRejected: If the network rejected the identity
        """
        if self.running:
            return self.inbox_id

        inbox_id = await call_transport(
            "register", lambda: self.transport.register(self.identity), self.config.network_timeout
        )
        self._bind_inbox(inbox_id)
        logger.info(f"Registered as inbox {inbox_id}")
        self.pending.open()

        try:
            await self.synchronizer.sync()
            self.last_sync_at = time.time()
        except TransportUnavailable as e:
            logger.warning(f"Initial sync failed, will retry in the background: {e}")

        self.router.seed_from_store()
        self.running = True
        self.error = None
        self._stopped.clear()
        if self.handler is not None:
            self._stream_task = asyncio.create_task(self.router.run(self.handler), name="parley-stream")
        self._sync_task = asyncio.create_task(self._sync_loop(), name="parley-sync")
        await self.write_status()
        return inbox_id

    def _bind_inbox(self, inbox_id: InboxId) -> None:
        self.inbox_id = inbox_id
        self.synchronizer.self_inbox_id = inbox_id
        self.groups.self_inbox_id = normalize_inbox_id(inbox_id)
        self.router.set_self_inbox(inbox_id)

    async def stop(self) -> None:
        """Cancel the stream and sync tasks, wait for them and release the transport."""
        if not self.running:
            return
        logger.info("Stopping agent...")
        self.running = False

        tasks = [t for t in (self._stream_task, self._sync_task) if t is not None]
        for task in tasks:
            task.cancel()
        for task in tasks:
            with contextlib.suppress(asyncio.CancelledError):
                try:
                    await task
                except Exception as e:
                    logger.debug(f"Task {task.get_name()} ended with {e!r}")
        self._stream_task = None
        self._sync_task = None

        try:
            await self.transport.close()
        except (TransportUnavailable, OSError) as e:
            logger.debug(f"Error closing transport: {e}")
        if self._owns_pending:
            self.pending.close()
        await self.write_status()
        self._stopped.set()
        logger.info("Agent stopped")

    async def run_forever(self) -> None:
        """
        Start if needed and block until stopped.

        Raises:
            AuthenticationRejected: If the session was rejected
            StreamUnavailable: If the stream could not be kept alive
        """
        if not self.running:
            await self.start()

        waiters = [t for t in (self._stream_task, self._sync_task) if t is not None]
        stopped = asyncio.create_task(self._stopped.wait())
        try:
            done, _ = await asyncio.wait(waiters + [stopped], return_when=asyncio.FIRST_COMPLETED)
        finally:
            stopped.cancel()

        for task in done:
            if task is stopped or task.cancelled():
                continue
            error = task.exception()
            if error is not None:
                self.error = error if isinstance(error, ParleyError) else None
                logger.error(f"Agent task {task.get_name()} failed: {error}")
                await self.stop()
                raise error
        await self.stop()

    async def _sync_loop(self) -> None:
        passes = 0
        failures = 0
        while True:
            await asyncio.sleep(
                self.config.sync_interval
                if failures == 0
                else backoff_delay(failures, self.config.stream.backoff_base, self.config.sync_interval)
            )
            passes += 1
            try:
                if passes % self.config.full_sync_every == 0:
                    await self.synchronizer.sync_all()
                else:
                    await self.synchronizer.sync()
            except TransportUnavailable as e:
                failures += 1
                logger.warning(f"Sync failed ({failures} in a row): {e}")
                continue
            except AuthenticationRejected:
                logger.error("Sync rejected by the network; stopping sync loop")
                raise
            failures = 0
            self.last_sync_at = time.time()
            try:
                await self.write_status()
            except OSError as e:
                logger.warning(f"Could not write status file: {e}")

    # Messaging and conversations

    async def send(
        self, conversation_id: ConversationId, content: Any, content_type: str = CONTENT_TYPE_TEXT
    ) -> MessageId:
        return await self.router.send(conversation_id, content, content_type)

    async def new_dm(self, inbox_id: InboxId) -> DirectConversation:
        """Open (or reuse) the direct conversation with ``inbox_id``."""
        async with self.gate.shared():
            conversation_id = await retry_transient(
                "create_dm",
                lambda: self.transport.create_dm(inbox_id),
                attempts=self.config.retry_attempts,
                timeout=self.config.network_timeout,
            )

        def change(current):
            if current is not None:
                return None
            return DirectConversation(
                conversation_id=conversation_id,
                self_inbox_id=self.inbox_id or "",
                peer_inbox_id=inbox_id,
                consent_state=ConsentState.ALLOWED,
            )

        conversation = await self.store.update(conversation_id, change)
        logger.info(f"Direct conversation with {inbox_id}: {conversation_id}")
        return conversation

    async def new_group(
        self,
        members: Iterable[InboxId] = (),
        name: str = "",
        description: str = "",
        image_url: str = "",
        policy: Optional[PermissionPolicySet] = None,
    ) -> GroupConversation:
        return await self.groups.create_group(name, members, description, image_url, policy)

    async def set_consent(self, conversation_id: ConversationId, state: ConsentState) -> Conversation:
        """Record the local consent decision on the network and in the replica."""
        async with self.gate.shared():
            await retry_transient(
                "set_consent",
                lambda: self.transport.set_consent(conversation_id, state),
                attempts=self.config.retry_attempts,
                timeout=self.config.network_timeout,
                conversation_id=conversation_id,
            )

        def change(current):
            if current is None:
                return None
            current.consent_state = state
            return current

        conversation = await self.store.update(conversation_id, change)
        logger.info(f"Consent for {conversation_id} set to {state.value}")
        return conversation

    def conversations(self) -> List[Conversation]:
        return self.store.list_conversations()

    # Installations and credentials

    async def inbox_state(self) -> InboxState:
        async with self.gate.shared():
            return await call_transport(
                "inbox_state", self.transport.inbox_state, self.config.network_timeout
            )

    async def revoke_installations(self, installation_ids: List[InstallationId]) -> None:
        async with self.gate.shared():
            await call_transport(
                "revoke_installations",
                lambda: self.transport.revoke_installations(list(installation_ids)),
                self.config.network_timeout,
            )
        logger.info(f"Revoked {len(installation_ids)} installations")

    async def rotate_credentials(self) -> None:
        """Rotate session credentials while sync, stream and mutations are paused."""
        async with self.gate.exclusive():
            await call_transport(
                "rotate_credentials",
                lambda: self.transport.rotate_credentials(self.identity),
                self.config.network_timeout,
            )
        logger.info("Credentials rotated")

    # Status

    def cursors(self) -> Dict[ConversationId, Optional[str]]:
        return self.store.cursors()

    def health(self) -> HealthStatus:
        error = self.error
        return HealthStatus(
            running=self.running,
            streaming=self.router.connected,
            inbox_id=self.inbox_id,
            conversations=len(self.store.list_conversations()),
            pending_mutations=self.pending.count() if self.pending.conn is not None else 0,
            stream_failures=self.router.failures,
            last_sync_at=self.last_sync_at,
            last_message_at=self.router.last_message_at,
            sync_generation=self.synchronizer.generation,
            error=str(error) if error is not None else None,
            stats=self.router.stats.to_dict(),
            cursors=self.cursors(),
        )

    async def write_status(self) -> None:
        """Write health and cursors to status.json for the CLI."""
        if self.data_dir is None:
            return
        status_file = self.data_dir / STATUS_FILENAME
        temp_file = f"{status_file}.tmp"
        data = self.health().to_dict()
        data["updated_at"] = time.time()
        data["pid"] = os.getpid()
        async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
            await f.write(json.dumps(data, indent=2))
        os.replace(temp_file, status_file)

