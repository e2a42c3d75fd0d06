"""
Unit tests for parley.pipeline stages.

Created by orpheus497
"""

import asyncio

import pytest

from conftest import make_message
from parley.models import ConsentState
from parley.pipeline import (
    DedupStage,
    DispatchStage,
    FilterStage,
    OrderingStage,
    PipelineStats,
    StageOutcome,
)


class TestDedupStage:
    """Tests for the bounded duplicate window."""

    def test_first_delivery_passes(self):
        stage = DedupStage(window=10)
        assert stage.check(make_message("c1", 1)) is StageOutcome.PASSED

    def test_redelivery_suppressed(self):
        stage = DedupStage(window=10)
        message = make_message("c1", 1)
        stage.check(message)
        assert stage.check(message) is StageOutcome.DUPLICATE_SUPPRESSED

    def test_window_is_bounded(self):
        stage = DedupStage(window=2)
        first = make_message("c1", 1)
        stage.check(first)
        stage.check(make_message("c1", 2))
        stage.check(make_message("c1", 3))

        assert len(stage) == 2
        # Evicted from the window, so no longer recognized
        assert stage.check(first) is StageOutcome.PASSED

    def test_recent_duplicate_refreshes_position(self):
        stage = DedupStage(window=2)
        first = make_message("c1", 1)
        stage.check(first)
        stage.check(make_message("c1", 2))
        stage.check(first)
        stage.check(make_message("c1", 3))

        assert stage.check(first) is StageOutcome.DUPLICATE_SUPPRESSED


class TestFilterStage:
    """Tests for self, content-type and consent filtering."""

    def _stage(self, consent=None):
        return FilterStage("agent-inbox", ["text"], lambda cid: consent)

    def test_peer_text_passes(self):
        assert self._stage().check(make_message("c1", 1)) is StageOutcome.PASSED

    def test_self_authored_any_case(self):
        stage = self._stage()
        for sender in ("agent-inbox", "AGENT-INBOX", "Agent-Inbox"):
            message = make_message("c1", 1, sender=sender)
            assert stage.check(message) is StageOutcome.SELF_AUTHORED

    def test_undeclared_content_type(self):
        message = make_message("c1", 1, content_type="reaction")
        assert self._stage().check(message) is StageOutcome.UNSUPPORTED_CONTENT_TYPE

    def test_denied_conversation(self):
        stage = self._stage(consent=ConsentState.DENIED)
        assert stage.check(make_message("c1", 1)) is StageOutcome.CONSENT_DENIED

    def test_unknown_consent_passes(self):
        stage = self._stage(consent=ConsentState.UNKNOWN)
        assert stage.check(make_message("c1", 1)) is StageOutcome.PASSED

    def test_self_check_runs_before_content_type(self):
        message = make_message("c1", 1, sender="agent-inbox", content_type="reaction")
        assert self._stage().check(message) is StageOutcome.SELF_AUTHORED


class TestOrderingStage:
    """Tests for per-conversation ordering and replay suppression."""

    def test_sorts_within_conversation(self):
        stage = OrderingStage()
        batch = [make_message("c1", 3), make_message("c1", 1), make_message("c1", 2)]

        ordered = stage.order(batch)

        assert [m.sent_at_sequence for m in ordered] == [1, 2, 3]
        assert stage.last_dispatched("c1") == 3

    def test_interleaved_conversations(self):
        stage = OrderingStage()
        batch = [
            make_message("a", 2),
            make_message("b", 1),
            make_message("a", 1),
            make_message("b", 2),
        ]

        ordered = stage.order(batch)

        per_conversation = {}
        for message in ordered:
            per_conversation.setdefault(message.conversation_id, []).append(message.sent_at_sequence)
        assert per_conversation == {"a": [1, 2], "b": [1, 2]}

    def test_drops_sequences_already_dispatched(self):
        stage = OrderingStage()
        stage.order([make_message("c1", 5)])

        ordered = stage.order([make_message("c1", 4), make_message("c1", 5), make_message("c1", 6)])

        assert [m.sent_at_sequence for m in ordered] == [6]

    def test_distinct_messages_with_equal_sequence(self):
        stage = OrderingStage()
        first = make_message("c1", 1700000000000, message_id="$a")
        second = make_message("c1", 1700000000000, message_id="$b")

        ordered = stage.order([first, second])
        redelivered = stage.order([second, make_message("c1", 1700000000000, message_id="$c")])

        assert [m.message_id for m in ordered] == ["$a", "$b"]
        assert [m.message_id for m in redelivered] == ["$c"]
        assert stage.last_dispatched("c1") == 1700000000000

    def test_seeded_ids_are_stale_at_equal_sequence(self):
        stage = OrderingStage()
        stage.seed("c1", 5, ["c1:5"])

        ordered = stage.order([make_message("c1", 5), make_message("c1", 5, message_id="other")])

        assert [m.message_id for m in ordered] == ["other"]

    def test_seed_and_resume_from(self):
        stage = OrderingStage()
        stage.seed("c1", 10)
        stage.seed("c1", 7)
        stage.seed("c2", 3)

        assert stage.resume_from() == {"c1": 10, "c2": 3}
        assert stage.order([make_message("c1", 10, message_id="new")]) == []


@pytest.mark.asyncio
class TestDispatchStage:
    """Tests for per-conversation dispatch workers."""

    async def test_preserves_order_per_conversation(self):
        handled = []

        async def handle(message):
            handled.append((message.conversation_id, message.sent_at_sequence))

        stage = DispatchStage(handle)
        for seq in (1, 2, 3):
            await stage.submit(make_message("c1", seq))
        await stage.drain()
        await stage.close()

        assert handled == [("c1", 1), ("c1", 2), ("c1", 3)]

    async def test_slow_conversation_does_not_block_others(self):
        release = asyncio.Event()
        handled = []

        async def handle(message):
            if message.conversation_id == "slow":
                await release.wait()
            handled.append(message.conversation_id)

        stage = DispatchStage(handle)
        await stage.submit(make_message("slow", 1))
        await stage.submit(make_message("fast", 1))
        await asyncio.sleep(0.05)

        assert handled == ["fast"]
        release.set()
        await stage.drain()
        assert handled == ["fast", "slow"]
        await stage.close()

    async def test_handler_error_is_contained(self):
        handled = []

        async def handle(message):
            if message.sent_at_sequence == 1:
                raise RuntimeError("boom")
            handled.append(message.sent_at_sequence)

        stage = DispatchStage(handle)
        await stage.submit(make_message("c1", 1))
        await stage.submit(make_message("c1", 2))
        await stage.drain()
        await stage.close()

        assert handled == [2]
        assert stage.errors == 1

    async def test_submit_after_close_rejected(self):
        async def handle(message):
            pass

        stage = DispatchStage(handle)
        await stage.close()
        with pytest.raises(RuntimeError):
            await stage.submit(make_message("c1", 1))


class TestPipelineStats:
    def test_to_dict_counts_outcomes(self):
        stats = PipelineStats()
        stats.record(StageOutcome.DUPLICATE_SUPPRESSED)
        stats.record(StageOutcome.DUPLICATE_SUPPRESSED)
        stats.record(StageOutcome.SELF_AUTHORED)

        data = stats.to_dict()

        assert data["duplicate_suppressed"] == 2
        assert data["self_authored"] == 1
        assert data["stale"] == 0
        assert "passed" not in data
