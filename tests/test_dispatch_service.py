import asyncio
from datetime import timedelta
from unittest.mock import AsyncMock, patch

import httpx
import pytest
from conftest import T0, text_event
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import QueuePool

from app.database import Base
from app.models import InboundMessage
from app.services import message_store, replies
from app.services.completion_service import CompletionInvoker
from app.services.context_assembler import ContextAssembler
from app.services.dispatch_service import DispatchOutcome, DispatchScheduler, RecheckTimers
from app.services.errors import OracleError, StoreError, TranscriptionError
from app.services.llm import OpenAIProvider
from app.services.llm.base import LLMResponse
from app.services.media_service import MediaService
from app.services.payload import MediaRef, Video, Voice, build_inbound_event
from app.services.telegram_service import TelegramService
from app.services.timeutil import utcnow
from app.services.window_policy import WindowPolicy


def statuses(session_factory, conversation_id="telegram:100"):
    db = session_factory()
    try:
        rows = db.query(InboundMessage).filter(InboundMessage.conversation_id == conversation_id).all()
        return sorted(row.status for row in rows)
    finally:
        db.close()


def sent_texts(oracle_call):
    _system, content = oracle_call.args[:2]
    return [part["text"] for part in content if part["type"] == "text"]


class TestIngestion:
    @pytest.mark.asyncio
    async def test_first_message_defers_and_arms_timer(self, make_scheduler, timers, clock, oracle):
        scheduler = make_scheduler(quiet_seconds=3)

        result = await scheduler.on_inbound_message(text_event(at=clock()))

        assert result.stored is True
        assert result.outcome == DispatchOutcome.DEFERRED
        timers.schedule.assert_called_once()
        assert timers.schedule.call_args.args[1] == T0 + timedelta(seconds=3)
        oracle.complete.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_ignored(self, make_scheduler, session_factory, clock):
        scheduler = make_scheduler()
        await scheduler.on_inbound_message(text_event(sequence_id=5, at=clock()))

        result = await scheduler.on_inbound_message(text_event(sequence_id=5, at=clock()))

        assert result.stored is False
        assert result.outcome is None
        assert statuses(session_factory) == ["pending"]

    @pytest.mark.asyncio
    async def test_command_reply_is_immediate(self, make_scheduler, delivery, clock):
        scheduler = make_scheduler()
        await scheduler.on_inbound_message(text_event(text="/start", at=clock()))
        delivery.send_best_effort.assert_awaited_once_with("telegram:100", replies.GREETING)

    @pytest.mark.asyncio
    async def test_unsupported_media_is_acknowledged(self, make_scheduler, delivery, clock):
        scheduler = make_scheduler()
        event = build_inbound_event("telegram:100", 1, Video(media=MediaRef("telegram", file_id="v")), clock())
        await scheduler.on_inbound_message(event)
        delivery.send_best_effort.assert_awaited_once_with("telegram:100", replies.UNSUPPORTED_MEDIA)


class TestBurstDispatch:
    @pytest.mark.asyncio
    async def test_burst_produces_exactly_one_oracle_call(self, make_scheduler, oracle, delivery, clock, timers, session_factory):
        scheduler = make_scheduler(quiet_seconds=3)
        for seq, text in enumerate(["hola", "tengo una duda", "sobre mi pedido"], start=1):
            clock.now = T0 + timedelta(seconds=seq - 1)
            outcome = (await scheduler.on_inbound_message(text_event(sequence_id=seq, text=text, at=clock()))).outcome
            assert outcome == DispatchOutcome.DEFERRED

        assert timers.schedule.call_args.args[1] == T0 + timedelta(seconds=5)

        clock.now = T0 + timedelta(seconds=4)
        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.DEFERRED

        clock.now = T0 + timedelta(seconds=5)
        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.PROCESSED
        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.IDLE

        assert oracle.complete.await_count == 1
        assert sent_texts(oracle.complete.await_args) == ["hola", "tengo una duda", "sobre mi pedido"]
        delivery.send.assert_awaited_once_with("telegram:100", "Respuesta del asistente")
        assert statuses(session_factory) == ["processed"] * 3

    @pytest.mark.asyncio
    async def test_history_is_folded_into_next_batch(self, make_scheduler, oracle, clock):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(sequence_id=1, text="primero", at=clock()))
        clock.advance(3)
        await scheduler.dispatch_conversation("telegram:100")

        clock.advance(60)
        await scheduler.on_inbound_message(text_event(sequence_id=2, text="segundo", at=clock()))
        clock.advance(3)
        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.PROCESSED

        assert sent_texts(oracle.complete.await_args) == ["primero", "segundo"]

    @pytest.mark.asyncio
    async def test_persona_instruction_is_used(self, make_scheduler, oracle, clock):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(sequence_id=1, text="/modo educator", at=clock()))
        await scheduler.on_inbound_message(text_event(sequence_id=2, text="explícame algo", at=clock()))
        clock.advance(3)
        await scheduler.dispatch_conversation("telegram:100")

        system_instruction = oracle.complete.await_args.args[0]
        assert "tutor educativo" in system_instruction


class TestMediaDegradation:
    @pytest.mark.asyncio
    async def test_unreachable_voice_still_dispatches(self, make_scheduler, media, oracle, clock):
        media.transcribe = AsyncMock(side_effect=TranscriptionError("404 on file download"))
        scheduler = make_scheduler(quiet_seconds=3)
        voice = build_inbound_event("telegram:100", 1, Voice(media=MediaRef("telegram", file_id="gone")), clock())
        await scheduler.on_inbound_message(voice)
        await scheduler.on_inbound_message(text_event(sequence_id=2, text="¿me escuchas?", at=clock()))
        clock.advance(3)

        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.PROCESSED
        assert sent_texts(oracle.complete.await_args) == [replies.TRANSCRIPTION_FAILED, "¿me escuchas?"]

    @pytest.mark.asyncio
    async def test_transcript_is_cached_on_the_message(self, make_scheduler, session_factory, clock):
        scheduler = make_scheduler(quiet_seconds=3)
        voice = build_inbound_event("telegram:100", 1, Voice(media=MediaRef("telegram", file_id="ok")), clock())
        await scheduler.on_inbound_message(voice)
        clock.advance(3)
        await scheduler.dispatch_conversation("telegram:100")

        db = session_factory()
        try:
            assert db.query(InboundMessage).one().resolved_text == "hola desde un audio"
        finally:
            db.close()

    @pytest.mark.asyncio
    async def test_malformed_get_file_reply_degrades_only_the_voice(self, make_scheduler, media, oracle, clock):
        def handler(request):
            return httpx.Response(502, json=["bad gateway"])

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            telegram = TelegramService("123:abc", client)
            media.transcribe = MediaService(client, OpenAIProvider("sk-test", client), telegram=telegram).transcribe
            scheduler = make_scheduler(quiet_seconds=3)
            voice = build_inbound_event("telegram:100", 1, Voice(media=MediaRef("telegram", file_id="v1")), clock())
            await scheduler.on_inbound_message(voice)
            await scheduler.on_inbound_message(text_event(sequence_id=2, text="¿me escuchas?", at=clock()))
            clock.advance(3)

            assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.PROCESSED

        assert oracle.complete.await_count == 1
        assert sent_texts(oracle.complete.await_args) == [replies.TRANSCRIPTION_FAILED, "¿me escuchas?"]


class TestShortCircuit:
    @pytest.mark.asyncio
    async def test_only_commands_never_call_oracle(self, make_scheduler, oracle, clock, session_factory):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(text="/start", at=clock()))
        clock.advance(3)

        outcome = await scheduler.dispatch_conversation("telegram:100")

        assert outcome == DispatchOutcome.SHORT_CIRCUITED
        assert oracle.complete.await_count == 0
        assert statuses(session_factory) == ["processed"]

    @pytest.mark.asyncio
    async def test_only_video_never_calls_oracle(self, make_scheduler, oracle, clock):
        scheduler = make_scheduler(quiet_seconds=3)
        event = build_inbound_event("telegram:100", 1, Video(media=MediaRef("telegram", file_id="v")), clock())
        await scheduler.on_inbound_message(event)
        clock.advance(3)

        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.SHORT_CIRCUITED
        assert oracle.complete.await_count == 0


class TestSingleFlight:
    @pytest.mark.asyncio
    async def test_no_claim_while_batch_in_flight(self, make_scheduler, session_factory, clock, oracle):
        db = session_factory()
        message_store.append_message(db, text_event(sequence_id=1, at=clock()))
        message_store.claim_batch(db, "telegram:100", clock())
        db.close()

        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(sequence_id=2, at=clock()))
        clock.advance(3)

        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.NOT_CLAIMED
        oracle.complete.assert_not_awaited()
        assert statuses(session_factory) == ["pending", "processing"]

    @pytest.mark.asyncio
    async def test_concurrent_dispatches_call_oracle_once(self, make_scheduler, oracle, clock):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)

        outcomes = await asyncio.gather(*(scheduler.dispatch_conversation("telegram:100") for _ in range(4)))

        assert outcomes.count(DispatchOutcome.PROCESSED) == 1
        assert oracle.complete.await_count == 1


class TestFailures:
    @pytest.mark.asyncio
    async def test_oracle_failure_marks_error_and_apologises(self, make_scheduler, oracle, delivery, clock, session_factory):
        oracle.complete = AsyncMock(side_effect=OracleError("timeout"))
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)

        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.ERROR
        assert statuses(session_factory) == ["error"]
        delivery.send_best_effort.assert_awaited_once_with("telegram:100", replies.APOLOGY)

    @pytest.mark.asyncio
    async def test_error_in_one_conversation_does_not_affect_another(self, make_scheduler, oracle, delivery, clock, session_factory):
        async def complete(system_instruction, content, model=None):
            if any(part.get("text") == "falla" for part in content):
                raise OracleError("boom")
            return LLMResponse(content="ok", model="gpt-4o")

        oracle.complete = AsyncMock(side_effect=complete)
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event("telegram:1", 1, "falla", at=clock()))
        await scheduler.on_inbound_message(text_event("telegram:2", 1, "funciona", at=clock()))
        clock.advance(3)

        results = await scheduler.sweep()

        assert results["due"] == 2
        assert results["processed"] == 1
        assert results["error"] == 1
        assert statuses(session_factory, "telegram:1") == ["error"]
        assert statuses(session_factory, "telegram:2") == ["processed"]
        delivery.send.assert_awaited_once_with("telegram:2", "ok")

    @pytest.mark.asyncio
    async def test_unexpected_error_after_claim_is_contained(self, make_scheduler, delivery, clock, session_factory):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)

        with patch.object(scheduler.assembler, "assemble", AsyncMock(side_effect=RuntimeError("bug"))):
            outcome = await scheduler.dispatch_conversation("telegram:100")

        assert outcome == DispatchOutcome.ERROR
        assert statuses(session_factory) == ["error"]
        delivery.send_best_effort.assert_awaited_with("telegram:100", replies.INTERNAL_ERROR)

    @pytest.mark.asyncio
    async def test_store_error_on_claim(self, make_scheduler, clock, oracle):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)

        with patch("app.services.dispatch_service.message_store.claim_batch", side_effect=StoreError("locked")):
            outcome = await scheduler.dispatch_conversation("telegram:100")

        assert outcome == DispatchOutcome.STORE_ERROR
        oracle.complete.assert_not_awaited()


class TestForcedRecheck:
    @pytest.mark.asyncio
    async def test_force_ignores_min_delay(self, make_scheduler, clock, timers):
        scheduler = make_scheduler(quiet_seconds=3, min_delay_seconds=60)
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)

        assert await scheduler.dispatch_conversation("telegram:100") == DispatchOutcome.DEFERRED
        assert await scheduler.dispatch_conversation("telegram:100", force=True) == DispatchOutcome.PROCESSED

    @pytest.mark.asyncio
    async def test_force_honours_quiet_period_without_timer(self, make_scheduler, clock, timers):
        scheduler = make_scheduler(quiet_seconds=3)
        await scheduler.on_inbound_message(text_event(at=clock()))
        timers.schedule.reset_mock()

        assert await scheduler.dispatch_conversation("telegram:100", force=True) == DispatchOutcome.DEFERRED
        timers.schedule.assert_not_called()


class TestSweep:
    @pytest.mark.asyncio
    async def test_sweep_dispatches_due_conversations(self, make_scheduler, session_factory, clock, oracle):
        db = session_factory()
        message_store.append_message(db, text_event(at=clock()))
        db.close()
        clock.advance(3)

        results = await make_scheduler(quiet_seconds=3).sweep()

        assert results["due"] == 1
        assert results["processed"] == 1
        assert oracle.complete.await_count == 1

    @pytest.mark.asyncio
    async def test_sweep_releases_stale_claims(self, make_scheduler, session_factory, clock, delivery):
        db = session_factory()
        message_store.append_message(db, text_event(at=clock()))
        message_store.claim_batch(db, "telegram:100", clock())
        db.close()

        clock.advance(600)
        results = await make_scheduler().sweep()

        assert results["released_stale"] == 1
        assert statuses(session_factory) == ["error"]
        delivery.send_best_effort.assert_awaited_once_with("telegram:100", replies.APOLOGY)

    @pytest.mark.asyncio
    async def test_sweep_evicts_expired(self, make_scheduler, session_factory, clock):
        scheduler = make_scheduler(quiet_seconds=3, retention=timedelta(minutes=60))
        await scheduler.on_inbound_message(text_event(at=clock()))
        clock.advance(3)
        await scheduler.dispatch_conversation("telegram:100")

        clock.advance(2 * 3600)
        results = await scheduler.sweep()

        assert results["evicted"] == 1
        assert statuses(session_factory) == []


class TestRecheckTimers:
    @pytest.mark.asyncio
    async def test_timer_fires_callback(self):
        timers = RecheckTimers()
        fired = asyncio.Event()

        async def callback(conversation_id):
            fired.set()

        assert timers.schedule("telegram:100", utcnow(), callback) is True
        await asyncio.wait_for(fired.wait(), timeout=1)
        assert not timers.is_scheduled("telegram:100")

    @pytest.mark.asyncio
    async def test_reschedule_replaces_sleeping_timer(self):
        timers = RecheckTimers()
        calls = []

        async def callback(conversation_id):
            calls.append(conversation_id)

        timers.schedule("telegram:100", utcnow() + timedelta(seconds=30), callback)
        timers.schedule("telegram:100", utcnow() + timedelta(seconds=30), callback)
        assert len(timers) == 1

        await timers.cancel_all()
        assert len(timers) == 0
        assert calls == []

    def test_schedule_without_loop_is_noop(self):
        async def callback(conversation_id):
            return None

        assert RecheckTimers().schedule("telegram:100", T0, callback) is False


class TestConnectionUse:
    @pytest.fixture
    def small_pool_factory(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'pool.db'}",
            connect_args={"check_same_thread": False},
            poolclass=QueuePool,
            pool_size=1,
            max_overflow=0,
            pool_timeout=1,
        )
        Base.metadata.create_all(bind=engine)
        yield engine, sessionmaker(autocommit=False, autoflush=False, bind=engine)
        engine.dispose()

    @pytest.mark.asyncio
    async def test_slow_oracle_does_not_starve_other_conversations(
        self, small_pool_factory, oracle, delivery, media, timers, clock
    ):
        engine, factory = small_pool_factory
        checked_out = []
        first_call_started = asyncio.Event()
        release_first_call = asyncio.Event()

        async def complete(system_instruction, content):
            checked_out.append(engine.pool.checkedout())
            if len(checked_out) == 1:
                first_call_started.set()
                await release_first_call.wait()
            return LLMResponse(content="Respuesta del asistente", model="gpt-4o")

        oracle.complete = AsyncMock(side_effect=complete)
        scheduler = DispatchScheduler(
            factory,
            ContextAssembler(media),
            CompletionInvoker(oracle, delivery),
            delivery,
            WindowPolicy.from_seconds(3),
            timers=timers,
            clock=clock,
        )
        await scheduler.on_inbound_message(text_event(conversation_id="telegram:1", at=clock()))
        await scheduler.on_inbound_message(text_event(conversation_id="telegram:2", at=clock()))
        clock.advance(3)

        first = asyncio.create_task(scheduler.dispatch_conversation("telegram:1"))
        await asyncio.wait_for(first_call_started.wait(), timeout=5)
        second = await scheduler.dispatch_conversation("telegram:2")
        release_first_call.set()

        assert second == DispatchOutcome.PROCESSED
        assert await first == DispatchOutcome.PROCESSED
        assert checked_out == [0, 0]


class TestRearm:
    @pytest.mark.asyncio
    async def test_forced_run_rearms_messages_that_arrived_in_flight(
        self, make_scheduler, session_factory, oracle, clock, timers
    ):
        db = session_factory()
        message_store.append_message(db, text_event(at=clock()))
        db.close()
        clock.advance(3)
        scheduler = make_scheduler(quiet_seconds=3)

        async def complete(system_instruction, content):
            late = session_factory()
            try:
                message_store.append_message(late, text_event(sequence_id=2, text="otra cosa", at=clock()))
            finally:
                late.close()
            return LLMResponse(content="Respuesta del asistente", model="gpt-4o")

        oracle.complete = AsyncMock(side_effect=complete)

        assert await scheduler.dispatch_conversation("telegram:100", force=True) == DispatchOutcome.PROCESSED
        timers.schedule.assert_called_once_with("telegram:100", clock() + timedelta(seconds=3), scheduler._recheck)
