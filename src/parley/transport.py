"""
Parley - Boundary contracts for external collaborators.

Created by orpheus497

The core never talks to a network or a key store directly. It consumes:

- an IdentityProvider, which supplies the account identifier and signs
  payloads;
- a TransportClient, which registers the account, replicates conversation
  deltas, pushes messages, opens the real-time stream and performs group
  mutation RPCs.

Implementations must normalize their faults into TransportUnavailable,
AuthenticationRejected or InvalidMutation (see parley.errors).
"""

from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from .models import (
    AccountIdentity,
    ConsentState,
    ConversationId,
    ConversationKind,
    GroupState,
    InboxId,
    InboxState,
    InstallationId,
    Message,
    MessageId,
    PermissionPolicySet,
    Role,
    SyncCursor,
)


@dataclass
class ConversationDelta:
    """Changes to one conversation reported by a pull.

    ``members`` is None when the delta carries no membership information;
    otherwise it is the full membership of the group at ``version``.
    """

    conversation_id: ConversationId
    kind: ConversationKind
    version: int
    cursor: Optional[SyncCursor] = None
    consent_state: Optional[ConsentState] = None
    peer_inbox_id: Optional[InboxId] = None
    name: Optional[str] = None
    description: Optional[str] = None
    image_url: Optional[str] = None
    members: Optional[Dict[InboxId, Role]] = None
    policy: Optional[PermissionPolicySet] = None
    state: Optional[GroupState] = None
    messages: List[Message] = field(default_factory=list)


@dataclass
class PullResult:
    """Result of one pull: the deltas and the cursor to resume from."""

    deltas: List[ConversationDelta]
    cursor: Optional[SyncCursor]


@runtime_checkable
class IdentityProvider(Protocol):
    """Supplies the account identifier and signs payloads."""

    async def get_identifier(self) -> AccountIdentity:
        ...

    async def sign(self, payload: bytes) -> bytes:
        ...


@runtime_checkable
class TransportClient(Protocol):
    """Network-facing client consumed by the synchronizer, router and group state machine."""

    async def register(self, identity: IdentityProvider) -> InboxId:
        ...

    async def pull(
        self,
        cursor: Optional[SyncCursor],
        consent_states: Optional[Iterable[ConsentState]] = None,
    ) -> PullResult:
        ...

    async def fetch_conversation(
        self, conversation_id: ConversationId
    ) -> Optional[ConversationDelta]:
        ...

    async def push(
        self, conversation_id: ConversationId, payload: object, content_type: str
    ) -> MessageId:
        ...

    def open_stream(
        self, resume_from: Optional[Dict[ConversationId, int]] = None
    ) -> AsyncIterator[Message]:
        ...

    async def create_group(
        self,
        name: str,
        members: List[InboxId],
        description: str,
        image_url: str,
        policy: PermissionPolicySet,
    ) -> ConversationId:
        ...

    async def create_dm(self, inbox_id: InboxId) -> ConversationId:
        ...

    async def add_members(self, conversation_id: ConversationId, inbox_ids: List[InboxId]) -> None:
        ...

    async def remove_members(
        self, conversation_id: ConversationId, inbox_ids: List[InboxId]
    ) -> None:
        ...

    async def set_role(self, conversation_id: ConversationId, inbox_id: InboxId, role: Role) -> None:
        ...

    async def update_metadata(self, conversation_id: ConversationId, field: str, value: str) -> None:
        ...

    async def set_consent(self, conversation_id: ConversationId, state: ConsentState) -> None:
        ...

    async def inbox_state(self) -> InboxState:
        ...

    async def revoke_installations(self, installation_ids: List[InstallationId]) -> None:
        ...

    async def rotate_credentials(self, identity: IdentityProvider) -> None:
        ...

    async def close(self) -> None:
        ...
