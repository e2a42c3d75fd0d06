"""
Parley - Local replica store.

Created by orpheus497

Durable mapping from conversation ID to its known state and message history.
Each conversation is stored as two files under ``<data_dir>/conversations``:

- ``<key>.json``: conversation state, rewritten atomically (temp file + rename)
- ``<key>.jsonl``: message history, append-only, one message per line

Writers to the same conversation serialize on a per-conversation
asyncio.Lock; different conversations proceed in parallel. In-memory state
is only replaced after the write reached disk, so readers never observe a
partial write. Without a data directory the store is memory-only.
"""

import asyncio
import hashlib
import json
import logging
import os
from collections import defaultdict
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Optional, Set

import aiofiles

from .constants import CONVERSATIONS_DIR, SYNC_STATE_FILENAME
from .errors import ErrorCode, PersistenceFailure
from .models import (
    ConsentState,
    Conversation,
    ConversationId,
    ConversationKind,
    Message,
    SyncCursor,
    conversation_from_dict,
    copy_conversation,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ConversationFilter:
    """Selection criteria for list_conversations(). None means any."""

    kind: Optional[ConversationKind] = None
    consent_states: Optional[frozenset] = None
    active: Optional[bool] = None

    @classmethod
    def consent(cls, *states: ConsentState) -> "ConversationFilter":
        return cls(consent_states=frozenset(states))

    def matches(self, conversation: Conversation) -> bool:
        if self.kind is not None and conversation.kind is not self.kind:
            return False
        if self.consent_states is not None and conversation.consent_state not in self.consent_states:
            return False
        if self.active is not None and conversation.active != self.active:
            return False
        return True


class ReplicaStore:
    """Local replica of conversations and their message history."""

    def __init__(self, data_dir: Optional[Path] = None):
        """
        Initialize the replica store.

        Args:
            data_dir: Agent data directory; None keeps everything in memory
        """
        self.root: Optional[Path] = None
        self.sync_state_file: Optional[Path] = None
        if data_dir is not None:
            self.root = Path(data_dir) / CONVERSATIONS_DIR
            self.root.mkdir(parents=True, exist_ok=True)
            self.sync_state_file = Path(data_dir) / SYNC_STATE_FILENAME

        self._sync_cursor: Optional[SyncCursor] = None
        self._sync_lock = asyncio.Lock()

        self._conversations: Dict[ConversationId, Conversation] = {}
        self._messages: Dict[ConversationId, List[Message]] = defaultdict(list)
        self._message_ids: Dict[ConversationId, Set[str]] = defaultdict(set)
        self._locks: Dict[ConversationId, asyncio.Lock] = {}
        # Histories whose last append may have stopped mid-line
        self._torn: Set[ConversationId] = set()

        if self.root is not None:
            self._load()

    # Loading

    def _load(self) -> None:
        """Load every stored conversation and its history."""
        for state_file in sorted(self.root.glob("*.json")):
            try:
                with open(state_file, encoding="utf-8") as f:
                    conversation = conversation_from_dict(json.load(f))
            except OSError as e:
                logger.error(f"Failed to read conversation file {state_file}: {e}")
                raise PersistenceFailure(
                    ErrorCode.E402_STORE_READ_FAILED,
                    f"Cannot load conversation: {e}",
                    {"path": str(state_file), "cause": str(e)},
                ) from e
            except (json.JSONDecodeError, KeyError, ValueError) as e:
                # Skip the conversation; the next full sync rediscovers it
                logger.warning(f"Corrupted conversation file {state_file}, skipping: {e}")
                continue
            self._conversations[conversation.conversation_id] = conversation

        # Histories without a state file (messages of undiscovered conversations) load too
        for history_file in sorted(self.root.glob("*.jsonl")):
            self._load_messages(history_file)

        if self.sync_state_file.exists():
            try:
                with open(self.sync_state_file, encoding="utf-8") as f:
                    self._sync_cursor = json.load(f).get("cursor")
            except (OSError, json.JSONDecodeError, AttributeError) as e:
                # Without a cursor the next pull starts from the beginning
                logger.warning(f"Unreadable sync state {self.sync_state_file}, ignoring: {e}")

        logger.info(f"Loaded {len(self._conversations)} conversations from {self.root}")

    def _load_messages(self, history_file: Path) -> None:
        self._repair_history(history_file)
        with open(history_file, encoding="utf-8") as f:
            for line_no, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    message = Message.from_dict(json.loads(line))
                except (json.JSONDecodeError, KeyError, ValueError) as e:
                    logger.warning(f"Ignoring unreadable line {line_no} in {history_file}: {e}")
                    continue
                cid = message.conversation_id
                if message.message_id in self._message_ids[cid]:
                    continue
                self._messages[cid].append(message)
                self._message_ids[cid].add(message.message_id)

    def _repair_history(self, history_file: Path) -> None:
        """Cut a torn final line left by an interrupted append."""
        with open(history_file, "rb+") as f:
            data = f.read()
            if not data or data.endswith(b"\n"):
                return
            keep = data.rfind(b"\n") + 1
            f.truncate(keep)
        logger.warning(f"Dropped torn final line of {history_file} ({len(data) - keep} bytes)")

    # Locking

    def lock(self, conversation_id: ConversationId) -> asyncio.Lock:
        """Per-conversation lock serializing writers."""
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        return lock

    # Reads

    def get(self, conversation_id: ConversationId) -> Optional[Conversation]:
        """Return a copy of the stored conversation, or None."""
        conversation = self._conversations.get(conversation_id)
        return copy_conversation(conversation) if conversation is not None else None

    def __contains__(self, conversation_id: ConversationId) -> bool:
        return conversation_id in self._conversations

    def list_conversations(self, filter: Optional[ConversationFilter] = None) -> List[Conversation]:
        """Return copies of all conversations matching the filter."""
        selected = [
            copy_conversation(c)
            for c in self._conversations.values()
            if filter is None or filter.matches(c)
        ]
        return sorted(selected, key=lambda c: c.conversation_id)

    def messages(self, conversation_id: ConversationId) -> List[Message]:
        """Message history ordered by sent_at_sequence; ties keep arrival order."""
        return sorted(self._messages.get(conversation_id, []), key=lambda m: m.sent_at_sequence)

    def has_message(self, conversation_id: ConversationId, message_id: str) -> bool:
        return message_id in self._message_ids.get(conversation_id, ())

    def histories(self) -> List[ConversationId]:
        """Conversations with stored messages, including ones with no known state."""
        return sorted(cid for cid, messages in self._messages.items() if messages)

    def cursors(self) -> Dict[ConversationId, Optional[SyncCursor]]:
        """Current sync cursor per conversation."""
        return {cid: c.cursor for cid, c in sorted(self._conversations.items())}

    @property
    def sync_cursor(self) -> Optional[SyncCursor]:
        """Global cursor the next incremental pull resumes from."""
        return self._sync_cursor

    async def set_sync_cursor(self, cursor: Optional[SyncCursor]) -> None:
        async with self._sync_lock:
            if self.sync_state_file is not None:
                temp_file = f"{self.sync_state_file}.tmp"
                try:
                    async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                        await f.write(json.dumps({"cursor": cursor}))
                    os.replace(temp_file, self.sync_state_file)
                except OSError as e:
                    logger.error(f"Failed to save sync cursor: {e}")
                    raise PersistenceFailure(
                        ErrorCode.E401_STORE_WRITE_FAILED,
                        f"Cannot save sync cursor: {e}",
                        {"operation": "set_sync_cursor", "cause": str(e)},
                    ) from e
            self._sync_cursor = cursor

    # Writes

    async def upsert(self, conversation: Conversation) -> None:
        """Insert or replace a conversation."""
        async with self.lock(conversation.conversation_id):
            await self._write_state(conversation)

    async def update(
        self,
        conversation_id: ConversationId,
        change: Callable[[Optional[Conversation]], Optional[Conversation]],
    ) -> Optional[Conversation]:
        """
        Read-modify-write one conversation under its lock.

        Args:
            conversation_id: Conversation to update
            change: Receives a copy of the current state (or None) and returns
                the new state, or None to leave it untouched

        Returns:
            The stored conversation after the update
        """
        async with self.lock(conversation_id):
            updated = change(self.get(conversation_id))
            if updated is not None:
                await self._write_state(updated)
            return self.get(conversation_id)

    async def append_messages(
        self, conversation_id: ConversationId, messages: Iterable[Message]
    ) -> List[Message]:
        """
        Append messages to a conversation's history, idempotent on message ID.

        Previously stored messages are never reordered or dropped.

        Returns:
            The messages that were not already stored
        """
        async with self.lock(conversation_id):
            known = self._message_ids[conversation_id]
            fresh: List[Message] = []
            seen: Set[str] = set()
            for message in messages:
                if message.message_id in known or message.message_id in seen:
                    continue
                seen.add(message.message_id)
                fresh.append(message)

            if not fresh:
                return []

            await self._write_messages(conversation_id, fresh)
            self._messages[conversation_id].extend(fresh)
            known.update(seen)
            return fresh

    # Persistence

    def _key(self, conversation_id: ConversationId) -> str:
        return hashlib.sha256(conversation_id.encode("utf-8")).hexdigest()[:32]

    async def _write_state(self, conversation: Conversation) -> None:
        cid = conversation.conversation_id
        if self.root is not None:
            state_file = self.root / f"{self._key(cid)}.json"
            temp_file = f"{state_file}.tmp"
            try:
                json_data = json.dumps(conversation.to_dict(), indent=2, ensure_ascii=False)
                async with aiofiles.open(temp_file, "w", encoding="utf-8") as f:
                    await f.write(json_data)
                os.replace(temp_file, state_file)
            except OSError as e:
                logger.error(f"Failed to save conversation {cid}: {e}")
                raise PersistenceFailure(
                    ErrorCode.E401_STORE_WRITE_FAILED,
                    f"Cannot save conversation: {e}",
                    {"conversation_id": cid, "operation": "upsert", "cause": str(e)},
                ) from e
        self._conversations[cid] = copy_conversation(conversation)
        logger.debug(f"Stored conversation {cid} (version {conversation.version})")

    async def _write_messages(self, conversation_id: ConversationId, messages: List[Message]) -> None:
        if self.root is None:
            return
        history_file = self.root / f"{self._key(conversation_id)}.jsonl"
        try:
            lines = "".join(json.dumps(m.to_dict(), ensure_ascii=False) + "\n" for m in messages)
            if conversation_id in self._torn:
                lines = "\n" + lines
            self._torn.add(conversation_id)
            async with aiofiles.open(history_file, "a", encoding="utf-8") as f:
                await f.write(lines)
            self._torn.discard(conversation_id)
        except (OSError, TypeError) as e:
            logger.error(f"Failed to append messages to {conversation_id}: {e}")
            raise PersistenceFailure(
                ErrorCode.E401_STORE_WRITE_FAILED,
                f"Cannot append messages: {e}",
                {"conversation_id": conversation_id, "operation": "append_messages", "cause": str(e)},
            ) from e
