"""
Parley - Conversation, membership and message data model.

Created by orpheus497

Conversations are a tagged union of DirectConversation and GroupConversation
sharing the accessors ``id``, ``members()``, ``consent_state``, ``cursor`` and
``version``. Group-only state (roles, metadata, policy) lives on the group
variant; the rules for changing it live in ``parley.group``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from .constants import CONTENT_TYPE_TEXT

AccountIdentity = str
InboxId = str
InstallationId = str
ConversationId = str
MessageId = str
SyncCursor = str


def normalize_inbox_id(inbox_id: str) -> InboxId:
    """Canonical form of an inbox ID; comparisons are case-insensitive."""
    return inbox_id.strip().lower()


def same_inbox(a: Optional[str], b: Optional[str]) -> bool:
    """Compare two inbox IDs case-insensitively."""
    if a is None or b is None:
        return False
    return normalize_inbox_id(a) == normalize_inbox_id(b)


class Role(Enum):
    """Group roles. Each role holds every privilege of the roles below it."""

    MEMBER = "member"
    ADMIN = "admin"
    SUPER_ADMIN = "super_admin"

    @property
    def rank(self) -> int:
        return _ROLE_RANK[self]

    def at_least(self, other: "Role") -> bool:
        return self.rank >= other.rank

    def privileges(self) -> frozenset:
        """Roles whose privileges this role holds."""
        return frozenset(role for role in Role if self.at_least(role))


_ROLE_RANK = {Role.MEMBER: 0, Role.ADMIN: 1, Role.SUPER_ADMIN: 2}


class ConsentState(Enum):
    """Whether the local participant allowed, denied or has not classified a conversation."""

    ALLOWED = "allowed"
    DENIED = "denied"
    UNKNOWN = "unknown"


class ConversationKind(Enum):
    DIRECT = "direct"
    GROUP = "group"


class GroupState(Enum):
    """Lifecycle of a group conversation."""

    FORMING = "forming"
    ACTIVE = "active"
    ARCHIVED = "archived"


class DeliveryStatus(Enum):
    UNPUBLISHED = "unpublished"
    PUBLISHED = "published"
    FAILED = "failed"


class PermissionPolicy(Enum):
    """Minimum role required for a group operation."""

    ALLOW = "allow"
    ADMIN_ONLY = "admin"
    SUPER_ADMIN_ONLY = "super_admin"
    DENY = "deny"

    def required_role(self) -> Optional[Role]:
        """Role needed to perform the operation, or None if nobody may."""
        if self is PermissionPolicy.DENY:
            return None
        if self is PermissionPolicy.ALLOW:
            return Role.MEMBER
        if self is PermissionPolicy.ADMIN_ONLY:
            return Role.ADMIN
        return Role.SUPER_ADMIN


@dataclass(frozen=True)
class PermissionPolicySet:
    """Which roles may perform which group mutations."""

    add_member: PermissionPolicy = PermissionPolicy.ADMIN_ONLY
    remove_member: PermissionPolicy = PermissionPolicy.ADMIN_ONLY
    add_admin: PermissionPolicy = PermissionPolicy.SUPER_ADMIN_ONLY
    remove_admin: PermissionPolicy = PermissionPolicy.SUPER_ADMIN_ONLY
    update_name: PermissionPolicy = PermissionPolicy.ADMIN_ONLY
    update_description: PermissionPolicy = PermissionPolicy.ADMIN_ONLY
    update_image_url: PermissionPolicy = PermissionPolicy.ADMIN_ONLY

    @classmethod
    def default(cls) -> "PermissionPolicySet":
        return cls()

    @classmethod
    def admin_only(cls) -> "PermissionPolicySet":
        return cls()

    @classmethod
    def all_members(cls) -> "PermissionPolicySet":
        """Members may add members and edit metadata; role changes stay super-admin only."""
        return cls(
            add_member=PermissionPolicy.ALLOW,
            update_name=PermissionPolicy.ALLOW,
            update_description=PermissionPolicy.ALLOW,
            update_image_url=PermissionPolicy.ALLOW,
        )

    def to_dict(self) -> Dict[str, str]:
        return {name: getattr(self, name).value for name in self.__dataclass_fields__}

    @classmethod
    def from_dict(cls, data: Dict[str, str]) -> "PermissionPolicySet":
        values = {
            name: PermissionPolicy(value)
            for name, value in data.items()
            if name in cls.__dataclass_fields__
        }
        return cls(**values)


@dataclass
class MembershipRecord:
    """Membership of one inbox in a group."""

    inbox_id: InboxId
    role: Role = Role.MEMBER
    consent_state: ConsentState = ConsentState.UNKNOWN

    def __post_init__(self) -> None:
        self.inbox_id = normalize_inbox_id(self.inbox_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "inbox_id": self.inbox_id,
            "role": self.role.value,
            "consent_state": self.consent_state.value,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "MembershipRecord":
        return MembershipRecord(
            inbox_id=data["inbox_id"],
            role=Role(data.get("role", Role.MEMBER.value)),
            consent_state=ConsentState(data.get("consent_state", ConsentState.UNKNOWN.value)),
        )


@dataclass(frozen=True)
class Message:
    """A message as observed by the agent. Immutable once persisted."""

    message_id: MessageId
    conversation_id: ConversationId
    sender_inbox_id: InboxId
    content_type: str
    payload: Any
    sent_at_sequence: int
    delivery_status: DeliveryStatus = DeliveryStatus.PUBLISHED

    @property
    def content(self) -> Any:
        return self.payload

    def to_dict(self) -> Dict[str, Any]:
        return {
            "message_id": self.message_id,
            "conversation_id": self.conversation_id,
            "sender_inbox_id": self.sender_inbox_id,
            "content_type": self.content_type,
            "payload": self.payload,
            "sent_at_sequence": self.sent_at_sequence,
            "delivery_status": self.delivery_status.value,
        }

    @staticmethod
    def from_dict(data: Dict[str, Any]) -> "Message":
        return Message(
            message_id=data["message_id"],
            conversation_id=data["conversation_id"],
            sender_inbox_id=data["sender_inbox_id"],
            content_type=data.get("content_type", CONTENT_TYPE_TEXT),
            payload=data.get("payload"),
            sent_at_sequence=int(data["sent_at_sequence"]),
            delivery_status=DeliveryStatus(
                data.get("delivery_status", DeliveryStatus.PUBLISHED.value)
            ),
        )


@dataclass
class DirectConversation:
    """Two-party conversation."""

    conversation_id: ConversationId
    self_inbox_id: InboxId
    peer_inbox_id: InboxId
    consent_state: ConsentState = ConsentState.UNKNOWN
    cursor: Optional[SyncCursor] = None
    version: int = 0
    active: bool = True
    kind: ConversationKind = field(default=ConversationKind.DIRECT, init=False)

    def __post_init__(self) -> None:
        self.self_inbox_id = normalize_inbox_id(self.self_inbox_id)
        self.peer_inbox_id = normalize_inbox_id(self.peer_inbox_id)

    @property
    def id(self) -> ConversationId:
        return self.conversation_id

    def members(self) -> List[InboxId]:
        return [self.self_inbox_id, self.peer_inbox_id]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "conversation_id": self.conversation_id,
            "self_inbox_id": self.self_inbox_id,
            "peer_inbox_id": self.peer_inbox_id,
            "consent_state": self.consent_state.value,
            "cursor": self.cursor,
            "version": self.version,
            "active": self.active,
        }


@dataclass
class GroupConversation:
    """Named multi-party conversation with roles and a permission policy."""

    conversation_id: ConversationId
    name: str = ""
    description: str = ""
    image_url: str = ""
    members_by_inbox: Dict[InboxId, MembershipRecord] = field(default_factory=dict)
    policy: PermissionPolicySet = field(default_factory=PermissionPolicySet.default)
    state: GroupState = GroupState.FORMING
    consent_state: ConsentState = ConsentState.UNKNOWN
    cursor: Optional[SyncCursor] = None
    version: int = 0
    active: bool = True
    kind: ConversationKind = field(default=ConversationKind.GROUP, init=False)

    @property
    def id(self) -> ConversationId:
        return self.conversation_id

    def members(self) -> List[InboxId]:
        return sorted(self.members_by_inbox)

    def member(self, inbox_id: str) -> Optional[MembershipRecord]:
        return self.members_by_inbox.get(normalize_inbox_id(inbox_id))

    def is_member(self, inbox_id: str) -> bool:
        return normalize_inbox_id(inbox_id) in self.members_by_inbox

    def role_of(self, inbox_id: str) -> Optional[Role]:
        record = self.member(inbox_id)
        return record.role if record else None

    def count_at_least(self, role: Role) -> int:
        return sum(1 for record in self.members_by_inbox.values() if record.role.at_least(role))

    def admins(self) -> List[InboxId]:
        return sorted(i for i, r in self.members_by_inbox.items() if r.role is Role.ADMIN)

    def super_admins(self) -> List[InboxId]:
        return sorted(i for i, r in self.members_by_inbox.items() if r.role is Role.SUPER_ADMIN)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind.value,
            "conversation_id": self.conversation_id,
            "name": self.name,
            "description": self.description,
            "image_url": self.image_url,
            "members": {i: record.to_dict() for i, record in self.members_by_inbox.items()},
            "policy": self.policy.to_dict(),
            "state": self.state.value,
            "consent_state": self.consent_state.value,
            "cursor": self.cursor,
            "version": self.version,
            "active": self.active,
        }


Conversation = Union[DirectConversation, GroupConversation]


def conversation_from_dict(data: Dict[str, Any]) -> Conversation:
    """Rebuild either conversation variant from its stored form."""
    kind = ConversationKind(data.get("kind", ConversationKind.GROUP.value))
    consent = ConsentState(data.get("consent_state", ConsentState.UNKNOWN.value))
    if kind is ConversationKind.DIRECT:
        return DirectConversation(
            conversation_id=data["conversation_id"],
            self_inbox_id=data["self_inbox_id"],
            peer_inbox_id=data["peer_inbox_id"],
            consent_state=consent,
            cursor=data.get("cursor"),
            version=int(data.get("version", 0)),
            active=data.get("active", True),
        )

    members = {}
    for member_data in data.get("members", {}).values():
        record = MembershipRecord.from_dict(member_data)
        members[record.inbox_id] = record
    return GroupConversation(
        conversation_id=data["conversation_id"],
        name=data.get("name", ""),
        description=data.get("description", ""),
        image_url=data.get("image_url", ""),
        members_by_inbox=members,
        policy=PermissionPolicySet.from_dict(data.get("policy", {})),
        state=GroupState(data.get("state", GroupState.ACTIVE.value)),
        consent_state=consent,
        cursor=data.get("cursor"),
        version=int(data.get("version", 0)),
        active=data.get("active", True),
    )


def copy_conversation(conversation: Conversation) -> Conversation:
    """Deep enough copy to mutate membership without touching the original."""
    if isinstance(conversation, GroupConversation):
        return replace(
            conversation,
            members_by_inbox={
                i: replace(record) for i, record in conversation.members_by_inbox.items()
            },
        )
    return replace(conversation)


@dataclass
class InboxState:
    """Installations and account identities bound to one inbox."""

    inbox_id: InboxId
    installations: List[InstallationId] = field(default_factory=list)
    account_identities: List[AccountIdentity] = field(default_factory=list)
