"""
Pytest configuration and fixtures for Parley tests.

Created by orpheus497

Provides common fixtures and test utilities for unit and integration tests,
including an in-memory transport that records every call it receives.
"""

import asyncio
import shutil
import tempfile
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest

from parley.config import AgentConfig, StreamSettings
from parley.errors import ErrorCode, TransportUnavailable
from parley.models import (
    ConsentState,
    DirectConversation,
    GroupConversation,
    GroupState,
    InboxState,
    MembershipRecord,
    Message,
    PermissionPolicySet,
    Role,
)
from parley.pending import PendingMutationQueue
from parley.store import ReplicaStore
from parley.transport import ConversationDelta, PullResult

AGENT_INBOX = "agent-inbox"

# Calls that change remote state, as opposed to reads and the stream
MUTATING_CALLS = {
    "create_group",
    "create_dm",
    "add_members",
    "remove_members",
    "set_role",
    "update_metadata",
    "set_consent",
    "revoke_installations",
}


class FakeIdentity:
    """IdentityProvider returning a fixed account."""

    def __init__(self, account: str = "agent@example.org"):
        self.account = account

    async def get_identifier(self) -> str:
        return self.account

    async def sign(self, payload: bytes) -> bytes:
        return b"signed:" + payload


class FakeTransport:
    """
    In-memory TransportClient.

    - ``pull_results`` is consumed one entry per pull (a PullResult or an exception)
    - ``sessions`` is consumed one entry per open_stream; each session is a
      list of messages and exceptions, delivered in order. When the list is
      exhausted the stream ends, which the router treats as a drop. With no
      sessions left the stream stays open and idle.
    - ``fail`` maps a call name to an exception raised on every such call
    """

    def __init__(self, inbox_id: str = AGENT_INBOX):
        self.inbox_id = inbox_id
        self.calls: List[tuple] = []
        self.pull_results: List = []
        self.conversations: Dict[str, ConversationDelta] = {}
        self.sessions: List[List] = []
        self.resume_requests: List[Dict[str, int]] = []
        self.sent: List[tuple] = []
        self.fail: Dict[str, BaseException] = {}
        self.installations = ["install-1", "install-2"]
        self.closed = False
        self._ids = 0

    def _record(self, name: str, *args) -> None:
        self.calls.append((name, args))
        error = self.fail.get(name)
        if error is not None:
            raise error

    def _next_id(self, prefix: str) -> str:
        self._ids += 1
        return f"{prefix}-{self._ids}"

    def mutating_calls(self) -> List[str]:
        return [name for name, _ in self.calls if name in MUTATING_CALLS]

    async def register(self, identity) -> str:
        self._record("register", await identity.get_identifier())
        return self.inbox_id

    async def pull(self, cursor, consent_states=None) -> PullResult:
        self._record("pull", cursor, consent_states)
        if not self.pull_results:
            return PullResult(deltas=[], cursor=cursor)
        result = self.pull_results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result

    async def fetch_conversation(self, conversation_id: str) -> Optional[ConversationDelta]:
        self._record("fetch_conversation", conversation_id)
        return self.conversations.get(conversation_id)

    async def push(self, conversation_id: str, payload, content_type: str) -> str:
        self._record("push", conversation_id, payload, content_type)
        self.sent.append((conversation_id, payload, content_type))
        return self._next_id("msg")

    async def open_stream(self, resume_from=None):
        self._record("open_stream", resume_from)
        self.resume_requests.append(dict(resume_from or {}))
        if not self.sessions:
            await asyncio.Event().wait()
        for item in self.sessions.pop(0):
            if isinstance(item, BaseException):
                raise item
            yield item

    async def create_group(self, name, members, description, image_url, policy) -> str:
        self._record("create_group", name, list(members), description, image_url, policy)
        return self._next_id("group")

    async def create_dm(self, inbox_id: str) -> str:
        self._record("create_dm", inbox_id)
        return f"dm-{inbox_id}"

    async def add_members(self, conversation_id, inbox_ids) -> None:
        self._record("add_members", conversation_id, list(inbox_ids))

    async def remove_members(self, conversation_id, inbox_ids) -> None:
        self._record("remove_members", conversation_id, list(inbox_ids))

    async def set_role(self, conversation_id, inbox_id, role) -> None:
        self._record("set_role", conversation_id, inbox_id, role)

    async def update_metadata(self, conversation_id, field, value) -> None:
        self._record("update_metadata", conversation_id, field, value)

    async def set_consent(self, conversation_id, state) -> None:
        self._record("set_consent", conversation_id, state)

    async def inbox_state(self) -> InboxState:
        self._record("inbox_state")
        return InboxState(self.inbox_id, list(self.installations), ["agent@example.org"])

    async def revoke_installations(self, installation_ids) -> None:
        self._record("revoke_installations", list(installation_ids))
        self.installations = [i for i in self.installations if i not in installation_ids]

    async def rotate_credentials(self, identity) -> None:
        self._record("rotate_credentials")

    async def close(self) -> None:
        self.closed = True


def make_message(
    conversation_id: str,
    sequence: int,
    sender: str = "peer-inbox",
    content="hello",
    content_type: str = "text",
    message_id: Optional[str] = None,
) -> Message:
    """Build a message with a predictable ID."""
    return Message(
        message_id=message_id or f"{conversation_id}:{sequence}",
        conversation_id=conversation_id,
        sender_inbox_id=sender,
        content_type=content_type,
        payload=content,
        sent_at_sequence=sequence,
    )


def make_group(conversation_id: str, roles: Dict[str, Role], **kwargs) -> GroupConversation:
    """Build an active group with the given member roles."""
    group = GroupConversation(
        conversation_id=conversation_id,
        state=kwargs.pop("state", GroupState.ACTIVE),
        consent_state=kwargs.pop("consent_state", ConsentState.ALLOWED),
        policy=kwargs.pop("policy", PermissionPolicySet.default()),
        **kwargs,
    )
    for inbox_id, role in roles.items():
        group.members_by_inbox[inbox_id] = MembershipRecord(inbox_id, role)
    return group


def make_dm(conversation_id: str, peer: str = "peer-inbox", **kwargs) -> DirectConversation:
    return DirectConversation(
        conversation_id=conversation_id,
        self_inbox_id=AGENT_INBOX,
        peer_inbox_id=peer,
        consent_state=kwargs.pop("consent_state", ConsentState.ALLOWED),
        **kwargs,
    )


async def wait_until(predicate, timeout: float = 2.0) -> None:
    """Poll ``predicate`` until it holds or fail the test."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            pytest.fail("condition not met in time")
        await asyncio.sleep(0.01)


async def collect(stream, count: int, timeout: float = 2.0) -> List[Message]:
    """Take ``count`` items from an async iterator, then close it."""
    items: List[Message] = []

    async def take():
        async for item in stream:
            items.append(item)
            if len(items) >= count:
                break

    try:
        await asyncio.wait_for(take(), timeout)
    finally:
        await stream.aclose()
    return items


def drop(message: str = "connection reset") -> TransportUnavailable:
    return TransportUnavailable(ErrorCode.E201_CONNECTION_FAILED, message)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """
    Create a temporary directory for test data.

    Yields:
        Path: Temporary directory path

    Cleanup:
        Automatically removes directory after test
    """
    tmp = Path(tempfile.mkdtemp(prefix="parley_test_"))
    try:
        yield tmp
    finally:
        shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def agent_config() -> AgentConfig:
    """Agent configuration with short windows and backoff for fast tests."""
    return AgentConfig(
        content_types=("text", "reply"),
        sync_interval=60,
        sync_timeout=1,
        network_timeout=1,
        retry_attempts=1,
        stream=StreamSettings(
            dedup_window=100,
            reorder_window=0.05,
            batch_size=50,
            backoff_base=0.01,
            max_backoff=0.05,
            max_reconnect_attempts=3,
        ),
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def store() -> ReplicaStore:
    """Memory-only replica store."""
    return ReplicaStore()


@pytest.fixture
def pending() -> Generator[PendingMutationQueue, None, None]:
    queue = PendingMutationQueue()
    yield queue
    queue.close()


# Pytest marks
def pytest_configure(config):
    """
    Configure pytest markers.

    Args:
        config: Pytest configuration object
    """
    config.addinivalue_line("markers", "unit: mark test as a unit test")
    config.addinivalue_line("markers", "integration: mark test as an integration test")
    config.addinivalue_line("markers", "slow: mark test as slow running")


# Test collection hooks
def pytest_collection_modifyitems(config, items):
    """
    Modify test collection to add markers based on test location.

    Args:
        config: Pytest configuration
        items: List of collected test items
    """
    for item in items:
        # Add unit marker to tests in unit/ directory
        if "unit" in str(item.fspath):
            item.add_marker(pytest.mark.unit)

        # Add integration marker to tests in integration/ directory
        if "integration" in str(item.fspath):
            item.add_marker(pytest.mark.integration)
