"""
Parley - Conversation synchronizer.

Created by orpheus497

Pulls conversation deltas from the transport and applies them to the local
replica store. Delivery is at-least-once: every per-conversation write is
idempotent, cursors only move after the data they cover is on disk, and the
global pull cursor only moves once the whole batch has been persisted.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional

from .config import AgentConfig
from .errors import ParleyError, PersistenceFailure
from .gate import SessionGate
from .group import apply_mutation
from .models import (
    ConsentState,
    Conversation,
    ConversationId,
    ConversationKind,
    DirectConversation,
    GroupConversation,
    GroupState,
    InboxId,
    MembershipRecord,
    SyncCursor,
    normalize_inbox_id,
)
from .pending import PendingMutationQueue
from .store import ReplicaStore
from .transport import ConversationDelta, TransportClient
from .utils import call_transport

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """Outcome of one synchronization pass."""

    synced: List[ConversationId] = field(default_factory=list)
    failed: Dict[ConversationId, ParleyError] = field(default_factory=dict)
    discovered: List[ConversationId] = field(default_factory=list)
    cursor: Optional[SyncCursor] = None
    reconciled: int = 0

    @property
    def ok(self) -> bool:
        return not self.failed


def merge_delta(
    current: Optional[Conversation],
    delta: ConversationDelta,
    self_inbox_id: InboxId,
    force: bool = False,
) -> Conversation:
    """
    Fold a delta into the stored conversation.

    Membership, metadata and consent only change when the delta is newer than
    the stored version, or when ``force`` is set for full reconciliation.
    The cursor always follows the delta.
    """
    if current is None:
        current = _new_conversation(delta, self_inbox_id)
        force = True

    if force or delta.version > current.version:
        if delta.consent_state is not None:
            current.consent_state = delta.consent_state
        if isinstance(current, GroupConversation):
            _merge_group(current, delta)
        elif delta.peer_inbox_id:
            current.peer_inbox_id = normalize_inbox_id(delta.peer_inbox_id)
        current.version = delta.version

    if delta.cursor is not None:
        current.cursor = delta.cursor
    return current


def _new_conversation(delta: ConversationDelta, self_inbox_id: InboxId) -> Conversation:
    if delta.kind is ConversationKind.DIRECT:
        return DirectConversation(
            conversation_id=delta.conversation_id,
            self_inbox_id=self_inbox_id,
            peer_inbox_id=delta.peer_inbox_id or "",
        )
    return GroupConversation(
        conversation_id=delta.conversation_id,
        state=GroupState.ACTIVE,
    )


def _merge_group(group: GroupConversation, delta: ConversationDelta) -> None:
    for attr in ("name", "description", "image_url", "policy", "state"):
        value = getattr(delta, attr)
        if value is not None:
            setattr(group, attr, value)
    if group.state is GroupState.ARCHIVED:
        group.active = False

    if delta.members is not None:
        members = {}
        for inbox_id, role in delta.members.items():
            inbox_id = normalize_inbox_id(inbox_id)
            previous = group.members_by_inbox.get(inbox_id)
            consent = previous.consent_state if previous else ConsentState.UNKNOWN
            members[inbox_id] = MembershipRecord(inbox_id, role, consent)
        group.members_by_inbox = members


class ConversationSynchronizer:
    """Reconciles the local replica with the network."""

    def __init__(
        self,
        store: ReplicaStore,
        transport: TransportClient,
        config: AgentConfig,
        self_inbox_id: Optional[InboxId] = None,
        pending: Optional[PendingMutationQueue] = None,
        gate: Optional[SessionGate] = None,
    ):
        self.store = store
        self.transport = transport
        self.config = config
        self.self_inbox_id = self_inbox_id
        self.pending = pending or PendingMutationQueue()
        self.gate = gate or SessionGate()

        self.generation = 0
        self.last_report: Optional[SyncReport] = None
        self._lock = asyncio.Lock()

    async def sync(self) -> SyncReport:
        """
        Incremental pass: reconcile queued mutations, pull deltas since the
        global cursor and apply them.

        Raises:
            TransportUnavailable: If the pull failed; nothing was applied
            AuthenticationRejected: If the network rejected the session
        """
        async with self.gate.shared():
            async with self._lock:
                reconciled = await self.reconcile_pending()
                since = self.store.sync_cursor
                result = await call_transport(
                    "pull", lambda: self.transport.pull(since), self.config.sync_timeout
                )
                report = await self._apply_batch(result.deltas, force=False)
                report.reconciled = reconciled
                await self._advance(report, result.cursor)

        if report.failed:
            logger.warning(
                f"Sync applied {len(report.synced)} conversations, "
                f"{len(report.failed)} failed: {', '.join(report.failed)}"
            )
        else:
            logger.debug(f"Sync applied {len(report.synced)} conversations, cursor {report.cursor}")
        self.last_report = report
        return report

    async def sync_all(self, consent_states: Optional[Iterable[ConsentState]] = None) -> int:
        """
        Full reconciliation across the given consent states (default: all).

        Stored versions are ignored, so the replica converges on what the
        network reports even when it was ahead. Returns a generation counter
        that increases with every completed full pass.
        """
        states = list(consent_states) if consent_states is not None else list(ConsentState)
        async with self.gate.shared():
            async with self._lock:
                reconciled = await self.reconcile_pending()
                result = await call_transport(
                    "sync_all",
                    lambda: self.transport.pull(None, consent_states=states),
                    self.config.sync_timeout,
                )
                report = await self._apply_batch(result.deltas, force=True)
                report.reconciled = reconciled
                await self._advance(report, result.cursor)
                self.generation += 1
                generation = self.generation

        logger.info(
            f"Full sync #{generation} over {[s.value for s in states]}: "
            f"{len(report.synced)} synced, {len(report.discovered)} new, {len(report.failed)} failed"
        )
        self.last_report = report
        return generation

    async def discover(self, conversation_id: ConversationId) -> Optional[Conversation]:
        """Fetch and store a conversation the replica does not know yet."""
        if conversation_id in self.store:
            return self.store.get(conversation_id)

        async with self.gate.shared():
            delta = await call_transport(
                "fetch_conversation",
                lambda: self.transport.fetch_conversation(conversation_id),
                self.config.network_timeout,
                conversation_id,
            )
        if delta is None:
            logger.warning(f"Conversation {conversation_id} is not visible to this inbox")
            return None

        await self.apply_delta(delta)
        logger.info(f"Discovered conversation {conversation_id}")
        return self.store.get(conversation_id)

    async def apply_delta(self, delta: ConversationDelta, force: bool = False) -> Conversation:
        """
        Persist one delta: messages first, then state with the new cursor.

        Raises:
            PersistenceFailure: If either write failed; the stored cursor is unchanged
        """
        cid = delta.conversation_id
        if delta.messages:
            await self.store.append_messages(cid, delta.messages)
        return await self.store.update(
            cid, lambda current: merge_delta(current, delta, self.self_inbox_id or "", force)
        )

    async def reconcile_pending(self) -> int:
        """Re-apply mutations that were accepted remotely but never stored."""
        self.pending.cleanup_expired()
        applied = 0
        for mutation in self.pending.pending():
            cid = mutation.conversation_id
            if not isinstance(self.store.get(cid), GroupConversation):
                self.pending.mark_applied(mutation.mutation_id)
                continue

            def change(current, mutation=mutation):
                if not isinstance(current, GroupConversation):
                    return None
                return apply_mutation(current, mutation.operation, mutation.args)

            try:
                await self.store.update(cid, change)
            except PersistenceFailure as e:
                logger.warning(f"Still cannot store {mutation.operation} on {cid}: {e}")
                self.pending.mark_failed(mutation.mutation_id)
                continue
            self.pending.mark_applied(mutation.mutation_id)
            applied += 1

        if applied:
            logger.info(f"Reconciled {applied} pending group mutations")
        return applied

    async def _apply_batch(self, deltas: List[ConversationDelta], force: bool) -> SyncReport:
        report = SyncReport()
        for delta in deltas:
            cid = delta.conversation_id
            is_new = cid not in self.store
            try:
                await self.apply_delta(delta, force)
            except PersistenceFailure as e:
                report.failed[cid] = e
                continue
            report.synced.append(cid)
            if is_new:
                report.discovered.append(cid)
        return report

    async def _advance(self, report: SyncReport, cursor: Optional[SyncCursor]) -> None:
        if report.ok and cursor is not None:
            try:
                await self.store.set_sync_cursor(cursor)
            except PersistenceFailure as e:
                report.failed["<sync cursor>"] = e
        report.cursor = self.store.sync_cursor
