"""
Unit tests for parley.group.

Created by orpheus497

Covers lifecycle transitions, permission checks, role lattice changes and
the invariant that a group never loses its last privileged member.
"""

from unittest.mock import AsyncMock, patch

import pytest

from conftest import AGENT_INBOX, make_group
from parley.errors import ErrorCode, InvalidMutation, PersistenceFailure, TransportUnavailable
from parley.group import (
    GroupEvent,
    GroupStateMachine,
    RULE_GROUP_FULL,
    RULE_INSUFFICIENT_ROLE,
    RULE_INVALID_METADATA,
    RULE_LAST_SUPER_ADMIN,
    RULE_NO_PRIVILEGED_MEMBER,
    RULE_NOT_ACTIVE,
    RULE_OPERATION_DENIED,
    RULE_UNKNOWN_MEMBER,
    apply_mutation,
    transition,
)
from parley.models import (
    GroupConversation,
    GroupState,
    PermissionPolicy,
    PermissionPolicySet,
    Role,
)

A = AGENT_INBOX


@pytest.fixture
def machine(store, transport, pending):
    return GroupStateMachine(store, transport, A, pending=pending, timeout=1, retry_attempts=1)


class TestTransitions:
    """Tests for the group lifecycle table."""

    def test_forming_to_active(self):
        group = GroupConversation("g1")
        transition(group, GroupEvent.CREATION_ACKNOWLEDGED)
        assert group.state is GroupState.ACTIVE

    def test_archive_deactivates(self):
        group = make_group("g1", {A: Role.SUPER_ADMIN})
        transition(group, GroupEvent.ARCHIVE_REQUESTED)
        assert group.state is GroupState.ARCHIVED
        assert group.active is False

    def test_invalid_transition(self):
        group = GroupConversation("g1")
        with pytest.raises(InvalidMutation) as exc_info:
            transition(group, GroupEvent.ARCHIVE_REQUESTED)
        assert exc_info.value.code is ErrorCode.E508_INVALID_TRANSITION


class TestApplyMutation:
    """Tests for the pure mutation applier."""

    def test_add_and_remove_members(self):
        group = make_group("g1", {A: Role.SUPER_ADMIN})
        apply_mutation(group, "add_members", {"inbox_ids": ["B", "c"]})
        assert group.role_of("b") is Role.MEMBER
        apply_mutation(group, "remove_members", {"inbox_ids": ["b"]})
        assert group.members() == sorted([A, "c"])

    def test_set_role_is_idempotent(self):
        group = make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER})
        apply_mutation(group, "set_role", {"inbox_id": "b", "role": "admin"})
        apply_mutation(group, "set_role", {"inbox_id": "b", "role": "admin"})
        assert group.role_of("b") is Role.ADMIN

    def test_unknown_operation(self):
        with pytest.raises(ValueError):
            apply_mutation(make_group("g1", {}), "explode", {})


@pytest.mark.asyncio
class TestCreateAndArchive:
    """Tests for group creation and archival."""

    async def test_create_group(self, machine, transport, store):
        group = await machine.create_group("Team", ["B", "c", A], description="desc")

        assert group.state is GroupState.ACTIVE
        assert group.role_of(A) is Role.SUPER_ADMIN
        assert group.role_of("b") is Role.MEMBER
        assert store.get(group.conversation_id).name == "Team"
        name, members, *_ = transport.calls[-1][1]
        assert name == "Team"
        assert members == ["b", "c"]

    async def test_create_group_failure_stores_nothing(self, machine, transport, store):
        transport.fail["create_group"] = TransportUnavailable()
        with pytest.raises(TransportUnavailable):
            await machine.create_group("Team", ["b"])
        assert store.list_conversations() == []

    async def test_create_group_rejects_bad_image_url(self, machine, transport):
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.create_group("Team", ["b"], image_url="not a url")
        assert exc_info.value.rule == RULE_INVALID_METADATA
        assert transport.calls == []

    async def test_archive_blocks_mutations(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))
        archived = await machine.archive("g1")
        assert archived.state is GroupState.ARCHIVED

        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_members("g1", ["b"])
        assert exc_info.value.rule == RULE_NOT_ACTIVE
        assert transport.mutating_calls() == []


@pytest.mark.asyncio
class TestMembership:
    """Tests for add_members and remove_members."""

    async def test_add_members(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.ADMIN, "b": Role.SUPER_ADMIN}))

        group = await machine.add_members("g1", ["C", "b"])

        assert group.role_of("c") is Role.MEMBER
        assert transport.calls == [("add_members", ("g1", ["c"]))]
        assert store.get("g1").is_member("c")

    async def test_add_existing_members_is_noop(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        await machine.add_members("g1", ["b"])
        assert transport.mutating_calls() == []

    async def test_member_cannot_add_under_default_policy(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.MEMBER, "b": Role.SUPER_ADMIN}))

        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_members("g1", ["c"])

        assert exc_info.value.rule == RULE_INSUFFICIENT_ROLE
        assert transport.mutating_calls() == []

    async def test_all_members_policy_allows_member(self, machine, store):
        group = make_group(
            "g1", {A: Role.MEMBER, "b": Role.SUPER_ADMIN}, policy=PermissionPolicySet.all_members()
        )
        await store.upsert(group)
        updated = await machine.add_members("g1", ["c"])
        assert updated.is_member("c")

    async def test_deny_policy(self, machine, store):
        policy = PermissionPolicySet(add_member=PermissionPolicy.DENY)
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}, policy=policy))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_members("g1", ["c"])
        assert exc_info.value.rule == RULE_OPERATION_DENIED

    async def test_group_full(self, machine, store, transport):
        roles = {f"m{i}": Role.MEMBER for i in range(249)}
        roles[A] = Role.SUPER_ADMIN
        await store.upsert(make_group("g1", roles))

        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_members("g1", ["x", "y"])

        assert exc_info.value.rule == RULE_GROUP_FULL
        assert transport.mutating_calls() == []

    async def test_remove_unknown_member(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.remove_members("g1", ["ghost"])
        assert exc_info.value.rule == RULE_UNKNOWN_MEMBER
        assert transport.mutating_calls() == []

    async def test_admin_cannot_remove_super_admin(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.ADMIN, "b": Role.SUPER_ADMIN, "c": Role.SUPER_ADMIN}))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.remove_members("g1", ["b"])
        assert exc_info.value.rule == RULE_INSUFFICIENT_ROLE
        assert transport.mutating_calls() == []

    async def test_removal_leaving_no_admin_rejected(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))

        with pytest.raises(InvalidMutation) as exc_info:
            await machine.remove_members("g1", [A])

        assert exc_info.value.rule in (RULE_LAST_SUPER_ADMIN, RULE_NO_PRIVILEGED_MEMBER)
        assert transport.mutating_calls() == []
        assert store.get("g1").role_of(A) is Role.SUPER_ADMIN

    async def test_remove_member(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        group = await machine.remove_members("g1", ["B"])
        assert not group.is_member("b")
        assert transport.calls == [("remove_members", ("g1", ["b"]))]


@pytest.mark.asyncio
class TestRoles:
    """Tests for the admin / super-admin lattice."""

    async def test_add_admin(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        group = await machine.add_admin("g1", "b")
        assert group.role_of("b") is Role.ADMIN
        assert transport.calls == [("set_role", ("g1", "b", Role.ADMIN))]

    async def test_add_admin_idempotent_without_rpc(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.ADMIN}))
        await machine.add_admin("g1", "b")
        # A super-admin already holds admin privileges
        await machine.add_admin("g1", A)
        assert transport.mutating_calls() == []

    async def test_remove_admin_idempotent_for_member(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        group = await machine.remove_admin("g1", "b")
        assert group.role_of("b") is Role.MEMBER
        assert transport.mutating_calls() == []

    async def test_remove_admin_demotes_super_admin_to_member(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.SUPER_ADMIN}))

        group = await machine.remove_admin("g1", "b")

        assert group.role_of("b") is Role.MEMBER
        assert store.get("g1").role_of("b") is Role.MEMBER
        assert transport.calls == [("set_role", ("g1", "b", Role.MEMBER))]

    async def test_remove_super_admin_demotes_to_admin(self, machine, store):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.SUPER_ADMIN}))
        group = await machine.remove_super_admin("g1", "b")
        assert group.role_of("b") is Role.ADMIN

    async def test_add_super_admin_requires_super_admin(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.ADMIN, "b": Role.SUPER_ADMIN, "c": Role.MEMBER}))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_super_admin("g1", "c")
        assert exc_info.value.rule == RULE_INSUFFICIENT_ROLE
        assert transport.mutating_calls() == []

    async def test_sole_super_admin_cannot_remove_own_admin(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.ADMIN}))

        with pytest.raises(InvalidMutation) as exc_info:
            await machine.remove_admin("g1", A)

        assert exc_info.value.rule == RULE_LAST_SUPER_ADMIN
        assert exc_info.value.code is ErrorCode.E505_LAST_SUPER_ADMIN
        assert transport.mutating_calls() == []

    async def test_unknown_member_role_change(self, machine, store):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.add_admin("g1", "ghost")
        assert exc_info.value.rule == RULE_UNKNOWN_MEMBER

    async def test_lattice_is_monotone(self, machine, store):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        observed = []
        for step in (machine.add_admin, machine.add_super_admin, machine.remove_super_admin, machine.remove_admin):
            group = await step("g1", "b")
            observed.append(group.role_of("b"))
        assert observed == [Role.ADMIN, Role.SUPER_ADMIN, Role.ADMIN, Role.MEMBER]

    async def test_remote_rejection_leaves_store_unchanged(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN, "b": Role.MEMBER}))
        transport.fail["set_role"] = InvalidMutation(ErrorCode.E509_REMOTE_REJECTED, "forbidden")

        with pytest.raises(InvalidMutation):
            await machine.add_admin("g1", "b")

        assert store.get("g1").role_of("b") is Role.MEMBER


@pytest.mark.asyncio
class TestMetadata:
    """Tests for name, description and image updates."""

    async def test_update_name(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.ADMIN, "b": Role.SUPER_ADMIN}))
        group = await machine.update_name("g1", "New name")
        assert group.name == "New name"
        assert transport.calls == [("update_metadata", ("g1", "name", "New name"))]

    async def test_unchanged_value_is_noop(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}, description="same"))
        await machine.update_description("g1", "same")
        assert transport.mutating_calls() == []

    async def test_member_cannot_update_by_default(self, machine, store):
        await store.upsert(make_group("g1", {A: Role.MEMBER, "b": Role.SUPER_ADMIN}))
        with pytest.raises(InvalidMutation):
            await machine.update_image_url("g1", "https://example.org/a.png")

    async def test_name_too_long(self, machine, store, transport):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))
        with pytest.raises(InvalidMutation) as exc_info:
            await machine.update_name("g1", "x" * 101)
        assert exc_info.value.rule == RULE_INVALID_METADATA
        assert transport.mutating_calls() == []


@pytest.mark.asyncio
class TestPersistenceFallback:
    """Remote success with a failed local write is queued, not reported as failure."""

    async def test_failed_store_write_is_queued(self, machine, store, pending):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))

        with patch.object(store, "update", AsyncMock(side_effect=PersistenceFailure())):
            group = await machine.add_members("g1", ["b"])

        assert group.is_member("b")
        assert not store.get("g1").is_member("b")
        assert pending.count("g1") == 1
        queued = pending.pending()[0]
        assert queued.operation == "add_members"
        assert queued.args == {"inbox_ids": ["b"]}

    async def test_failed_queue_is_reported(self, machine, store, pending):
        await store.upsert(make_group("g1", {A: Role.SUPER_ADMIN}))

        with patch.object(store, "update", AsyncMock(side_effect=PersistenceFailure())):
            with patch.object(pending, "enqueue", return_value=False):
                with pytest.raises(PersistenceFailure) as exc_info:
                    await machine.update_name("g1", "Renamed")

        assert exc_info.value.details["remote_applied"] is True
        assert exc_info.value.details["operation"] == "update_metadata"
        assert pending.count() == 0
