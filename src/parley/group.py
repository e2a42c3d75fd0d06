"""
Parley - Group state machine.

Created by orpheus497

Validates and applies membership, role and metadata mutations on group
conversations. Every mutation follows the same path:

1. Serialize on the group's mutation lock.
2. Validate against the stored group; reject locally detectable violations
   with InvalidMutation before any network call, and return early for
   no-op requests (e.g. promoting an existing admin).
3. Dispatch the RPC through the transport.
4. Apply the change to the local replica. If that write fails the mutation
   is queued for reconciliation and the call still succeeds, since the
   network already accepted it.
"""

import asyncio
import logging
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Dict, Iterable, List, Optional

from .constants import (
    MAX_GROUP_DESCRIPTION_LENGTH,
    MAX_GROUP_MEMBERS,
    MAX_GROUP_NAME_LENGTH,
    MAX_IMAGE_URL_LENGTH,
    NETWORK_RETRY_ATTEMPTS,
    NETWORK_TIMEOUT,
)
from .errors import ErrorCode, InvalidMutation, PersistenceFailure
from .gate import SessionGate
from .models import (
    ConsentState,
    ConversationId,
    GroupConversation,
    GroupState,
    InboxId,
    MembershipRecord,
    PermissionPolicy,
    PermissionPolicySet,
    Role,
    copy_conversation,
    normalize_inbox_id,
)
from .pending import PendingMutationQueue
from .store import ReplicaStore
from .transport import TransportClient
from .utils import retry_transient, validate_image_url

logger = logging.getLogger(__name__)

# Violated-rule identifiers carried by InvalidMutation.rule
RULE_NOT_FOUND = "group_not_found"
RULE_NOT_ACTIVE = "group_not_active"
RULE_INVALID_TRANSITION = "invalid_transition"
RULE_INSUFFICIENT_ROLE = "insufficient_role"
RULE_OPERATION_DENIED = "operation_denied"
RULE_UNKNOWN_MEMBER = "unknown_member"
RULE_LAST_SUPER_ADMIN = "last_super_admin"
RULE_NO_PRIVILEGED_MEMBER = "no_privileged_member"
RULE_GROUP_FULL = "group_full"
RULE_INVALID_METADATA = "invalid_metadata"

METADATA_FIELDS = ("name", "description", "image_url")


class GroupEvent(Enum):
    """Events that drive group lifecycle transitions."""

    CREATION_ACKNOWLEDGED = auto()
    ARCHIVE_REQUESTED = auto()


# Valid lifecycle transitions
TRANSITIONS: Dict[GroupState, Dict[GroupEvent, GroupState]] = {
    GroupState.FORMING: {
        GroupEvent.CREATION_ACKNOWLEDGED: GroupState.ACTIVE,
    },
    GroupState.ACTIVE: {
        GroupEvent.ARCHIVE_REQUESTED: GroupState.ARCHIVED,
    },
    GroupState.ARCHIVED: {},
}


def transition(group: GroupConversation, event: GroupEvent) -> GroupConversation:
    """
    Move a group to the state ``event`` leads to.

    Raises:
        InvalidMutation: If the event is not valid in the group's current state
    """
    target = TRANSITIONS.get(group.state, {}).get(event)
    if target is None:
        raise InvalidMutation(
            ErrorCode.E508_INVALID_TRANSITION,
            f"Cannot apply {event.name} to a group in state {group.state.value}",
            {"conversation_id": group.conversation_id, "operation": event.name.lower()},
            rule=RULE_INVALID_TRANSITION,
        )
    logger.info(f"Group {group.conversation_id}: {group.state.value} -> {target.value}")
    group.state = target
    if target is GroupState.ARCHIVED:
        group.active = False
    return group


def apply_mutation(group: GroupConversation, operation: str, args: Dict[str, Any]) -> GroupConversation:
    """
    Apply an accepted mutation to a copy-owned group.

    Pure with respect to I/O; used both after a successful RPC and when the
    synchronizer reconciles queued mutations. Applying the same mutation
    twice leaves the group unchanged the second time.
    """
    if operation == "add_members":
        for inbox_id in args["inbox_ids"]:
            inbox_id = normalize_inbox_id(inbox_id)
            if inbox_id not in group.members_by_inbox:
                group.members_by_inbox[inbox_id] = MembershipRecord(inbox_id, Role.MEMBER)
    elif operation == "remove_members":
        for inbox_id in args["inbox_ids"]:
            group.members_by_inbox.pop(normalize_inbox_id(inbox_id), None)
    elif operation == "set_role":
        record = group.member(args["inbox_id"])
        if record is not None:
            # One assignment: no observable state with a mismatched role
            record.role = Role(args["role"])
    elif operation == "update_metadata":
        setattr(group, args["field"], args["value"])
    else:
        raise ValueError(f"Unknown group mutation: {operation}")
    return group


class GroupStateMachine:
    """
    Validates and applies mutations on group conversations.

    Mutations against one group are serialized; different groups proceed
    independently.
    """

    def __init__(
        self,
        store: ReplicaStore,
        transport: TransportClient,
        self_inbox_id: Optional[InboxId] = None,
        pending: Optional[PendingMutationQueue] = None,
        timeout: float = NETWORK_TIMEOUT,
        retry_attempts: int = NETWORK_RETRY_ATTEMPTS,
        gate: Optional[SessionGate] = None,
    ):
        """
        Initialize the group state machine.

        Args:
            store: Local replica store
            transport: Transport client performing the RPCs
            self_inbox_id: Inbox of the agent, the requester of every mutation
            pending: Queue for mutations that could not be persisted locally
            timeout: Timeout per RPC attempt (seconds)
            retry_attempts: Attempts for retryable RPC failures
            gate: Session gate shared with sync and stream
        """
        self.store = store
        self.transport = transport
        self.self_inbox_id = normalize_inbox_id(self_inbox_id) if self_inbox_id else None
        self.pending = pending or PendingMutationQueue()
        self.timeout = timeout
        self.retry_attempts = retry_attempts
        self.gate = gate or SessionGate()
        self._locks: Dict[ConversationId, asyncio.Lock] = {}

    # Creation and lifecycle

    async def create_group(
        self,
        name: str = "",
        members: Iterable[InboxId] = (),
        description: str = "",
        image_url: str = "",
        policy: Optional[PermissionPolicySet] = None,
    ) -> GroupConversation:
        """
        Create a group with the agent as super-admin.

        The group is FORMING until the transport acknowledges creation, then
        ACTIVE. Nothing is stored if creation fails.
        """
        policy = policy or PermissionPolicySet.default()
        requester = self._requester()
        invitees = [m for m in _unique(members) if m != requester]
        self._check_metadata("name", name, None)
        self._check_metadata("description", description, None)
        self._check_metadata("image_url", image_url, None)
        if len(invitees) + 1 > MAX_GROUP_MEMBERS:
            raise InvalidMutation(
                ErrorCode.E507_GROUP_FULL,
                f"A group holds at most {MAX_GROUP_MEMBERS} members",
                {"operation": "create_group"},
                rule=RULE_GROUP_FULL,
            )

        conversation_id = await self._remote(
            "create_group",
            None,
            lambda: self.transport.create_group(name, invitees, description, image_url, policy),
        )

        group = GroupConversation(
            conversation_id=conversation_id,
            name=name,
            description=description,
            image_url=image_url,
            policy=policy,
            consent_state=ConsentState.ALLOWED,
        )
        group.members_by_inbox[requester] = MembershipRecord(
            requester, Role.SUPER_ADMIN, ConsentState.ALLOWED
        )
        for inbox_id in invitees:
            group.members_by_inbox[inbox_id] = MembershipRecord(inbox_id, Role.MEMBER)
        transition(group, GroupEvent.CREATION_ACKNOWLEDGED)

        try:
            await self.store.upsert(group)
        except PersistenceFailure as e:
            # The next sync discovers the group from the network
            logger.warning(f"Created group {conversation_id} but could not store it: {e}")
        logger.info(f"Created group '{name}' ({conversation_id}) with {len(invitees)} invitees")
        return group

    async def archive(self, group_id: ConversationId) -> GroupConversation:
        """Mark an active group archived locally. Archived groups accept no mutations."""
        async with self._lock(group_id):
            self._require_group(group_id)

            def change(current):
                if current is None:
                    return None
                return transition(current, GroupEvent.ARCHIVE_REQUESTED)

            updated = await self.store.update(group_id, change)
            return updated

    # Membership

    async def add_members(self, group_id: ConversationId, inbox_ids: Iterable[InboxId]) -> GroupConversation:
        """Add members to an active group. Existing members are skipped."""
        async with self._lock(group_id):
            group = self._require_active(group_id, "add_members")
            self._require_role(group, group.policy.add_member, "add_members")

            new = [i for i in _unique(inbox_ids) if not group.is_member(i)]
            if not new:
                logger.debug(f"add_members on {group_id}: all already members")
                return group
            if len(group.members_by_inbox) + len(new) > MAX_GROUP_MEMBERS:
                raise InvalidMutation(
                    ErrorCode.E507_GROUP_FULL,
                    f"A group holds at most {MAX_GROUP_MEMBERS} members",
                    {"conversation_id": group_id, "operation": "add_members"},
                    rule=RULE_GROUP_FULL,
                )

            await self._remote("add_members", group_id, lambda: self.transport.add_members(group_id, new))
            return await self._apply(group, "add_members", {"inbox_ids": new})

    async def remove_members(
        self, group_id: ConversationId, inbox_ids: Iterable[InboxId]
    ) -> GroupConversation:
        """
        Remove members from an active group.

        Raises:
            InvalidMutation: For unknown members, insufficient role, or a
                removal that would leave the group without a super-admin or
                without any admin-or-above member
        """
        async with self._lock(group_id):
            group = self._require_active(group_id, "remove_members")
            self._require_role(group, group.policy.remove_member, "remove_members")

            targets = _unique(inbox_ids)
            if not targets:
                return group
            unknown = [i for i in targets if not group.is_member(i)]
            if unknown:
                raise InvalidMutation(
                    ErrorCode.E503_MEMBER_NOT_FOUND,
                    f"Not members of the group: {', '.join(unknown)}",
                    {"conversation_id": group_id, "operation": "remove_members", "inbox_ids": unknown},
                    rule=RULE_UNKNOWN_MEMBER,
                )
            if any(group.role_of(i) is Role.SUPER_ADMIN for i in targets):
                self._require_role(group, PermissionPolicy.SUPER_ADMIN_ONLY, "remove_members")

            remaining = {i: r.role for i, r in group.members_by_inbox.items() if i not in targets}
            self._check_privileged_remain(group, remaining, "remove_members")

            await self._remote(
                "remove_members", group_id, lambda: self.transport.remove_members(group_id, targets)
            )
            return await self._apply(group, "remove_members", {"inbox_ids": targets})

    # Roles

    async def add_admin(self, group_id: ConversationId, inbox_id: InboxId) -> GroupConversation:
        """Promote a member to admin. No-op if already admin or super-admin."""
        return await self._change_role(
            group_id, inbox_id, "add_admin", lambda g: g.policy.add_admin,
            lambda current: None if current.at_least(Role.ADMIN) else Role.ADMIN,
        )

    async def remove_admin(self, group_id: ConversationId, inbox_id: InboxId) -> GroupConversation:
        """Demote an admin or super-admin to member. No-op for plain members."""
        return await self._change_role(
            group_id, inbox_id, "remove_admin", lambda g: g.policy.remove_admin,
            lambda current: None if current is Role.MEMBER else Role.MEMBER,
        )

    async def add_super_admin(self, group_id: ConversationId, inbox_id: InboxId) -> GroupConversation:
        """Promote a member or admin to super-admin. No-op if already super-admin."""
        return await self._change_role(
            group_id, inbox_id, "add_super_admin", lambda g: PermissionPolicy.SUPER_ADMIN_ONLY,
            lambda current: None if current is Role.SUPER_ADMIN else Role.SUPER_ADMIN,
        )

    async def remove_super_admin(self, group_id: ConversationId, inbox_id: InboxId) -> GroupConversation:
        """Demote a super-admin to admin. No-op if not a super-admin."""
        return await self._change_role(
            group_id, inbox_id, "remove_super_admin", lambda g: PermissionPolicy.SUPER_ADMIN_ONLY,
            lambda current: Role.ADMIN if current is Role.SUPER_ADMIN else None,
        )

    async def _change_role(
        self,
        group_id: ConversationId,
        inbox_id: InboxId,
        operation: str,
        policy_of: Callable[[GroupConversation], PermissionPolicy],
        target_role: Callable[[Role], Optional[Role]],
    ) -> GroupConversation:
        async with self._lock(group_id):
            group = self._require_active(group_id, operation)
            target = normalize_inbox_id(inbox_id)
            current = group.role_of(target)
            if current is None:
                raise InvalidMutation(
                    ErrorCode.E503_MEMBER_NOT_FOUND,
                    f"{inbox_id} is not a member of the group",
                    {"conversation_id": group_id, "operation": operation, "inbox_id": target},
                    rule=RULE_UNKNOWN_MEMBER,
                )

            new_role = target_role(current)
            if new_role is None:
                logger.debug(f"{operation} on {group_id}: {target} already {current.value}")
                return group

            self._require_role(group, policy_of(group), operation)
            if current is Role.SUPER_ADMIN:
                # Taking super-admin privileges away always needs a super-admin
                self._require_role(group, PermissionPolicy.SUPER_ADMIN_ONLY, operation)

            remaining = {i: r.role for i, r in group.members_by_inbox.items()}
            remaining[target] = new_role
            self._check_privileged_remain(group, remaining, operation)

            await self._remote(
                operation, group_id, lambda: self.transport.set_role(group_id, target, new_role)
            )
            return await self._apply(group, "set_role", {"inbox_id": target, "role": new_role.value})

    # Metadata

    async def update_name(self, group_id: ConversationId, name: str) -> GroupConversation:
        return await self._update_metadata(group_id, "name", name)

    async def update_description(self, group_id: ConversationId, description: str) -> GroupConversation:
        return await self._update_metadata(group_id, "description", description)

    async def update_image_url(self, group_id: ConversationId, image_url: str) -> GroupConversation:
        return await self._update_metadata(group_id, "image_url", image_url)

    async def _update_metadata(self, group_id: ConversationId, field: str, value: str) -> GroupConversation:
        operation = f"update_{field}"
        async with self._lock(group_id):
            group = self._require_active(group_id, operation)
            self._require_role(group, getattr(group.policy, operation), operation)
            self._check_metadata(field, value, group_id)
            if getattr(group, field) == value:
                return group

            await self._remote(
                operation, group_id, lambda: self.transport.update_metadata(group_id, field, value)
            )
            return await self._apply(group, "update_metadata", {"field": field, "value": value})

    # Queries

    def get(self, group_id: ConversationId) -> Optional[GroupConversation]:
        group = self.store.get(group_id)
        return group if isinstance(group, GroupConversation) else None

    def can(self, group_id: ConversationId, inbox_id: InboxId, operation: str) -> bool:
        """Whether ``inbox_id`` holds the role the group's policy requires for ``operation``."""
        group = self.get(group_id)
        if group is None:
            return False
        role = group.role_of(inbox_id)
        required = getattr(group.policy, operation).required_role()
        return role is not None and required is not None and role.at_least(required)

    # Internals

    def _lock(self, group_id: ConversationId) -> asyncio.Lock:
        lock = self._locks.get(group_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[group_id] = lock
        return lock

    def _requester(self) -> InboxId:
        if not self.self_inbox_id:
            raise RuntimeError("Group state machine used before the agent registered its inbox")
        return self.self_inbox_id

    def _require_group(self, group_id: ConversationId) -> GroupConversation:
        group = self.get(group_id)
        if group is None:
            raise InvalidMutation(
                ErrorCode.E501_GROUP_NOT_FOUND,
                f"Unknown group: {group_id}",
                {"conversation_id": group_id},
                rule=RULE_NOT_FOUND,
            )
        return group

    def _require_active(self, group_id: ConversationId, operation: str) -> GroupConversation:
        group = self._require_group(group_id)
        if group.state is not GroupState.ACTIVE:
            raise InvalidMutation(
                ErrorCode.E502_GROUP_NOT_ACTIVE,
                f"{operation} requires an active group (state: {group.state.value})",
                {"conversation_id": group_id, "operation": operation},
                rule=RULE_NOT_ACTIVE,
            )
        return group

    def _require_role(self, group: GroupConversation, policy: PermissionPolicy, operation: str) -> None:
        required = policy.required_role()
        if required is None:
            raise InvalidMutation(
                ErrorCode.E504_INSUFFICIENT_ROLE,
                f"{operation} is not permitted in this group",
                {"conversation_id": group.conversation_id, "operation": operation},
                rule=RULE_OPERATION_DENIED,
            )
        role = group.role_of(self._requester())
        if role is None or not role.at_least(required):
            raise InvalidMutation(
                ErrorCode.E504_INSUFFICIENT_ROLE,
                f"{operation} requires {required.value} (have {role.value if role else 'none'})",
                {
                    "conversation_id": group.conversation_id,
                    "operation": operation,
                    "required_role": required.value,
                },
                rule=RULE_INSUFFICIENT_ROLE,
            )

    def _check_privileged_remain(
        self, group: GroupConversation, remaining: Dict[InboxId, Role], operation: str
    ) -> None:
        """Reject changes that leave zero super-admins or zero admin-or-above members."""
        details = {"conversation_id": group.conversation_id, "operation": operation}
        had_super = group.count_at_least(Role.SUPER_ADMIN) > 0
        if had_super and not any(r is Role.SUPER_ADMIN for r in remaining.values()):
            raise InvalidMutation(
                ErrorCode.E505_LAST_SUPER_ADMIN,
                "The group must keep at least one super-admin",
                details,
                rule=RULE_LAST_SUPER_ADMIN,
            )
        had_privileged = group.count_at_least(Role.ADMIN) > 0
        if had_privileged and not any(r.at_least(Role.ADMIN) for r in remaining.values()):
            raise InvalidMutation(
                ErrorCode.E506_NO_PRIVILEGED_MEMBER,
                "The group must keep at least one admin",
                details,
                rule=RULE_NO_PRIVILEGED_MEMBER,
            )

    def _check_metadata(self, field: str, value: str, group_id: Optional[ConversationId]) -> None:
        limits = {
            "name": MAX_GROUP_NAME_LENGTH,
            "description": MAX_GROUP_DESCRIPTION_LENGTH,
            "image_url": MAX_IMAGE_URL_LENGTH,
        }
        problem = None
        if not isinstance(value, str):
            problem = f"{field} must be a string"
        elif len(value) > limits[field]:
            problem = f"{field} exceeds {limits[field]} characters"
        elif field == "image_url" and not validate_image_url(value):
            problem = f"invalid image URL: {value!r}"
        if problem:
            raise InvalidMutation(
                ErrorCode.E510_INVALID_METADATA,
                problem,
                {"conversation_id": group_id, "operation": f"update_{field}"},
                rule=RULE_INVALID_METADATA,
            )

    async def _remote(
        self,
        operation: str,
        group_id: Optional[ConversationId],
        call: Callable[[], Awaitable[Any]],
    ) -> Any:
        async with self.gate.shared():
            return await retry_transient(
                operation,
                call,
                attempts=self.retry_attempts,
                timeout=self.timeout,
                conversation_id=group_id,
            )

    async def _apply(
        self, group: GroupConversation, operation: str, args: Dict[str, Any]
    ) -> GroupConversation:
        group_id = group.conversation_id

        def change(current):
            if not isinstance(current, GroupConversation):
                return None
            return apply_mutation(current, operation, args)

        try:
            updated = await self.store.update(group_id, change)
        except PersistenceFailure as e:
            logger.warning(f"{operation} on {group_id} accepted remotely but not stored: {e}")
            if not self.pending.enqueue(group_id, operation, args):
                raise PersistenceFailure(
                    ErrorCode.E400_PERSISTENCE_FAILURE,
                    f"{operation} was applied on the network but could neither be stored nor queued",
                    {"conversation_id": group_id, "operation": operation, "remote_applied": True},
                ) from e
            return apply_mutation(copy_conversation(group), operation, args)

        logger.info(f"Applied {operation} to group {group_id}")
        return updated


def _unique(inbox_ids: Iterable[InboxId]) -> List[InboxId]:
    """Normalized inbox IDs without duplicates, in first-seen order."""
    seen: Dict[InboxId, None] = {}
    for inbox_id in inbox_ids:
        seen.setdefault(normalize_inbox_id(inbox_id), None)
    return list(seen)
