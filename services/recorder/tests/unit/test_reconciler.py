"""Unit tests for the status reconciler."""

import asyncio
import itertools
from datetime import timedelta
from decimal import Decimal

import pytest

from app.models.bot_session import BotStatus
from app.services.reconciler import StatusReconciler


class TestStatusReconciler:
    """Test cases for StatusReconciler."""

    @pytest.mark.asyncio
    async def test_register_bot(self, reconciler, store, meeting):
        bot = await reconciler.register_bot("b1", "s1", "u1", "org1")

        assert bot.status == BotStatus.CREATED.value
        assert bot.version == 0
        stored = await store.bot("b1")
        assert stored.session_id == "s1"
        assert stored.organization_id == "org1"

    @pytest.mark.asyncio
    async def test_register_bot_twice_returns_existing(self, reconciler, store, meeting):
        first = await reconciler.register_bot("b1", "s1", "u1", "org1")
        second = await reconciler.register_bot("b1", "s1", "u1", "org1")

        assert first.id == second.id

    @pytest.mark.asyncio
    async def test_full_lifecycle(self, reconciler, store, meeting, to_recording, t0):
        """joining, waiting, recording, a late in_call, then done 125s later."""
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)

        late = await reconciler.apply_provider_status("b1", "in_call_not_recording", t0 + timedelta(seconds=5))
        assert not late.applied
        assert late.reason == "regression"
        assert (await store.bot("b1")).status == BotStatus.RECORDING.value

        done = await reconciler.apply_provider_status("b1", "done", t0 + timedelta(seconds=125))

        assert done.applied
        assert done.finalized
        assert done.total_recording_seconds == 125
        assert done.billable_minutes == 3

        bot = await store.bot("b1")
        assert bot.status == BotStatus.COMPLETED.value
        assert bot.total_recording_seconds == 125
        assert bot.billable_minutes == 3
        assert bot.recording_ended_at is not None

        entries = await store.ledger("b1")
        assert [e.seconds_recorded for e in entries] == [60, 60, 5]

        session = await store.meeting("s1")
        assert session.status == "completed"
        assert session.recall_bot_status == BotStatus.COMPLETED.value
        assert session.recording_duration_seconds == 125
        assert session.bot_recording_minutes == 3
        assert Decimal(session.bot_billable_amount) == Decimal("0.30")

    @pytest.mark.asyncio
    async def test_recording_start_is_set_once(self, reconciler, store, meeting, to_recording, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)

        again = await reconciler.apply_provider_status(
            "b1", "recording_permission_allowed", t0 + timedelta(seconds=30)
        )

        assert again.reason == "duplicate"
        bot = await store.bot("b1")
        assert bot.recording_started_at.replace(tzinfo=None) == t0.replace(tzinfo=None)
        assert (await store.meeting("s1")).status == "active"

    @pytest.mark.asyncio
    async def test_terminal_event_is_idempotent(self, reconciler, store, meeting, to_recording, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)

        first = await reconciler.apply_provider_status("b1", "done", t0 + timedelta(seconds=125))
        second = await reconciler.apply_provider_status("b1", "done", t0 + timedelta(seconds=125))
        late = await reconciler.apply_provider_status("b1", "fatal", t0 + timedelta(seconds=300))

        assert first.applied
        assert not second.applied
        assert second.reason == "duplicate"
        assert not late.applied
        assert late.reason == "terminal"

        bot = await store.bot("b1")
        assert bot.status == BotStatus.COMPLETED.value
        assert bot.total_recording_seconds == 125
        assert len(await store.ledger("b1")) == 3

    @pytest.mark.asyncio
    async def test_concurrent_terminal_events_write_ledger_once(
        self, reconciler, store, meeting, to_recording, t0
    ):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)

        ended = t0 + timedelta(seconds=125)
        results = await asyncio.gather(
            reconciler.apply_provider_status("b1", "done", ended),
            reconciler.apply_provider_status("b1", "done", ended),
        )

        assert sorted(r.applied for r in results) == [False, True]
        assert len(await store.ledger("b1")) == 3
        cache = await store.monthly("u1", "2024-05")
        assert cache[0].total_minutes_used == 3

    @pytest.mark.asyncio
    async def test_lost_compare_and_set_does_not_finalize(
        self, db, reconciler, store, meeting, to_recording, t0
    ):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)
        stale = await reconciler.get_bot_session("b1")

        await reconciler.apply_provider_status("b1", "done", t0 + timedelta(seconds=125))

        result = await reconciler.apply_canonical_transition("b1", BotStatus.FAILED, t0 + timedelta(seconds=600))
        assert result.reason == "terminal"

        # A writer still holding the pre-terminal snapshot loses the compare-and-set
        async with db.get_session() as session:
            won = await reconciler._finalize(
                session, stale, BotStatus.FAILED, t0 + timedelta(seconds=600), None, result
            )

        assert not won
        assert len(await store.ledger("b1")) == 3
        assert (await store.bot("b1")).total_recording_seconds == 125

    @pytest.mark.parametrize("order", list(itertools.permutations([
        ("joining_call", -40),
        ("in_waiting_room", -20),
        ("in_call_recording", 0),
    ])))
    @pytest.mark.asyncio
    async def test_terminal_wins_in_any_order(self, reconciler, store, meeting, t0, order):
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        for code, offset in order:
            await reconciler.apply_provider_status("b1", code, t0 + timedelta(seconds=offset))
        result = await reconciler.apply_provider_status("b1", "done", t0 + timedelta(seconds=125))

        assert result.applied
        assert result.finalized
        bot = await store.bot("b1")
        assert bot.status == BotStatus.COMPLETED.value
        assert bot.total_recording_seconds == 125
        assert bot.billable_minutes == 3
        entries = await store.ledger("b1")
        assert [e.seconds_recorded for e in entries] == [60, 60, 5]
        assert sum(e.seconds_recorded for e in entries) == bot.total_recording_seconds

    @pytest.mark.asyncio
    async def test_failure_without_recording_bills_nothing(self, reconciler, store, meeting, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await reconciler.apply_provider_status("b1", "in_waiting_room", t0)

        result = await reconciler.apply_provider_status(
            "b1", "recording_permission_denied", t0 + timedelta(seconds=90),
            sub_code="recording_permission_denied_by_host",
        )

        assert result.applied
        assert result.total_recording_seconds == 0
        bot = await store.bot("b1")
        assert bot.status == BotStatus.PERMISSION_DENIED.value
        assert bot.recording_ended_at is None
        assert bot.sub_code == "recording_permission_denied_by_host"
        assert await store.ledger("b1") == []

        session = await store.meeting("s1")
        assert session.status == "failed"
        assert session.error_message == "Recording permission denied: Host denied recording permission"

    @pytest.mark.asyncio
    async def test_failure_message_uses_raw_sub_code_when_unknown(self, reconciler, store, meeting, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        await reconciler.apply_provider_status("b1", "fatal", t0, sub_code="brand_new_reason")

        session = await store.meeting("s1")
        assert session.error_message == "Bot failed: brand_new_reason"

    @pytest.mark.asyncio
    async def test_end_before_start_clamps_to_zero(self, reconciler, store, meeting, to_recording, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")
        await to_recording(reconciler, "b1", t0)

        result = await reconciler.apply_provider_status("b1", "done", t0 - timedelta(seconds=10))

        assert result.applied
        assert result.total_recording_seconds == 0
        assert result.billable_minutes == 0
        bot = await store.bot("b1")
        assert bot.status == BotStatus.COMPLETED.value
        assert bot.recording_ended_at is not None
        assert await store.ledger("b1") == []

    @pytest.mark.asyncio
    async def test_unknown_code_is_not_applied(self, reconciler, store, meeting, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        result = await reconciler.apply_provider_status("b1", "media_expired", t0)

        assert not result.applied
        assert result.reason == "unknown_status"
        assert (await store.bot("b1")).status == BotStatus.CREATED.value

    @pytest.mark.asyncio
    async def test_unknown_code_alerts_when_configured(self, db, test_settings, meeting, t0, monkeypatch):
        config = test_settings.model_copy(update={"alert_on_unknown_status": True})
        reconciler = StatusReconciler(db, config=config)
        calls = []
        monkeypatch.setattr(
            "app.services.reconciler.logger.error",
            lambda event, **kw: calls.append((event, kw)),
        )

        await reconciler.apply_provider_status("b1", "media_expired", t0)

        assert calls and calls[0][1]["alert"] is True

    @pytest.mark.asyncio
    async def test_limit_exceeded_is_never_applied(self, reconciler, store, meeting, t0):
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        result = await reconciler.apply_canonical_transition("b1", BotStatus.LIMIT_EXCEEDED, t0)

        assert result.reason == "unsupported_status"
        assert (await store.bot("b1")).status == BotStatus.CREATED.value

    @pytest.mark.asyncio
    async def test_unknown_bot_is_registered_from_session(self, reconciler, store, meeting, t0):
        result = await reconciler.apply_provider_status("b9", "joining_call", t0, session_id="s1")

        assert result.applied
        bot = await store.bot("b9")
        assert bot.status == BotStatus.JOINING.value
        assert (bot.user_id, bot.organization_id) == ("u1", "org1")

    @pytest.mark.asyncio
    async def test_unknown_bot_without_session_is_not_found(self, reconciler, store, t0):
        result = await reconciler.apply_provider_status("b9", "joining_call", t0, session_id="missing")

        assert not result.applied
        assert result.reason == "not_found"
        assert await store.bot("b9") is None

    @pytest.mark.asyncio
    async def test_projection_skips_session_owned_by_another_bot(self, db, reconciler, store, meeting, t0):
        from sqlalchemy import update
        from app.models.session import MeetingSession

        async with db.get_session() as session:
            await session.execute(
                update(MeetingSession).where(MeetingSession.id == "s1").values(recall_bot_id="b2")
            )
        await reconciler.register_bot("b1", "s1", "u1", "org1")

        result = await reconciler.apply_provider_status("b1", "fatal", t0)

        assert result.applied
        session = await store.meeting("s1")
        assert session.status == "created"
        assert session.error_message is None
