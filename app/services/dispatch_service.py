"""Debounced, single-flight dispatch of accumulated conversation messages.

Coordination happens only through the conversation store: the window policy
decides from stored receive times, deferrals are persisted as ``wait_until``
and the claim is one conditional UPDATE. In-process timers merely fire the
re-check early; the periodic sweep re-applies the same logic when a process
dies before its timers run.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Awaitable, Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.logging_config import ConversationLogger, get_logger
from app.services import message_store, replies
from app.services.command_service import handle_command
from app.services.completion_service import CompletionInvoker
from app.services.context_assembler import ContextAssembler
from app.services.delivery_service import DeliveryRouter
from app.services.errors import StoreError
from app.services.message_store import Claim
from app.services.payload import InboundEvent, Other, Text, Video
from app.services.persona_service import get_system_instruction
from app.services.state_machine import MessageStatus
from app.services.timeutil import utcnow
from app.services.window_policy import WindowAction, WindowPolicy

logger = get_logger("dispatch")


class DispatchOutcome(str, Enum):
    IDLE = "idle"
    DEFERRED = "deferred"
    NOT_CLAIMED = "not_claimed"
    PROCESSED = "processed"
    SHORT_CIRCUITED = "short_circuited"
    ERROR = "error"
    STORE_ERROR = "store_error"


@dataclass(frozen=True)
class IngestResult:
    stored: bool
    outcome: Optional[DispatchOutcome] = None


class RecheckTimers:
    """Per-process timers that re-evaluate a conversation when its wait expires.

    Rescheduling a conversation replaces its sleeping timer. A timer that has
    already fired is left alone so a running dispatch is never cancelled.
    """

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}

    def __len__(self) -> int:
        return sum(1 for task in self._tasks.values() if not task.done())

    def is_scheduled(self, conversation_id: str) -> bool:
        task = self._tasks.get(conversation_id)
        return task is not None and not task.done()

    def schedule(
        self,
        conversation_id: str,
        when: datetime,
        callback: Callable[[str], Awaitable[object]],
    ) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return False

        existing = self._tasks.get(conversation_id)
        if existing is not None and not existing.done():
            existing.cancel()

        delay = max((when - utcnow()).total_seconds(), 0.0)
        task = loop.create_task(self._fire(conversation_id, delay, callback))
        self._tasks[conversation_id] = task
        return True

    async def _fire(self, conversation_id: str, delay: float, callback: Callable[[str], Awaitable[object]]) -> None:
        await asyncio.sleep(delay)
        if self._tasks.get(conversation_id) is asyncio.current_task():
            del self._tasks[conversation_id]
        try:
            await callback(conversation_id)
        except Exception as exc:
            logger.error(
                "Re-check timer failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                exc_info=True,
            )

    async def cancel_all(self) -> None:
        tasks = [task for task in self._tasks.values() if not task.done()]
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


class DispatchScheduler:
    def __init__(
        self,
        session_factory: Callable[[], Session],
        assembler: ContextAssembler,
        invoker: CompletionInvoker,
        delivery: DeliveryRouter,
        policy: WindowPolicy,
        *,
        history_window: timedelta = timedelta(minutes=30),
        history_limit: int = 15,
        retention: timedelta = timedelta(minutes=60),
        stale_after: timedelta = timedelta(minutes=5),
        default_persona: str = "default",
        timers: Optional[RecheckTimers] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.assembler = assembler
        self.invoker = invoker
        self.delivery = delivery
        self.policy = policy
        self.history_window = history_window
        self.history_limit = history_limit
        self.retention = retention
        self.stale_after = stale_after
        self.default_persona = default_persona
        self.timers = timers if timers is not None else RecheckTimers()
        self.clock = clock

    async def on_inbound_message(self, event: InboundEvent) -> IngestResult:
        """Store the event (idempotent on sequence id) and evaluate the conversation."""
        log = ConversationLogger(logger, event.conversation_id, sequence_id=event.sequence_id)
        db = self.session_factory()
        try:
            stored = message_store.append_message(db, event)
            if not stored:
                log.info("Duplicate inbound message ignored")
                return IngestResult(stored=False)

            log.info("Inbound message stored", context={"kind": event.kind.value})
            await self._acknowledge(db, event)
        finally:
            db.close()

        outcome = await self.dispatch_conversation(event.conversation_id)
        return IngestResult(stored=True, outcome=outcome)

    async def _acknowledge(self, db: Session, event: InboundEvent) -> None:
        """Immediate replies that never go through the oracle: commands and unsupported media."""
        payload = event.payload
        if isinstance(payload, Text) and payload.is_command:
            result = handle_command(db, event.conversation_id, payload.text)
            if result.response:
                await self.delivery.send_best_effort(event.conversation_id, result.response)
        elif isinstance(payload, (Video, Other)):
            await self.delivery.send_best_effort(event.conversation_id, replies.UNSUPPORTED_MEDIA)

    async def dispatch_conversation(self, conversation_id: str, *, force: bool = False) -> DispatchOutcome:
        """Apply the window policy and, when the burst has settled, claim and answer it.

        ``force`` marks the external re-check: it skips the minimum response
        delay and never arms a timer for its own deferral, the quiet period still
        holds. Messages that arrived during any processed batch are re-armed.
        """
        log = ConversationLogger(logger, conversation_id, force=force)
        db = self.session_factory()
        try:
            now = self.clock()
            try:
                pending = message_store.get_pending(db, conversation_id)
                decision = self.policy.evaluate(
                    [message.received_at for message in pending],
                    now,
                    apply_min_delay=not force,
                )
                if decision.action == WindowAction.IDLE:
                    return DispatchOutcome.IDLE

                if decision.should_defer:
                    message_store.defer_pending(db, conversation_id, decision.wait_until)
                    if not force:
                        self.timers.schedule(conversation_id, decision.wait_until, self._recheck)
                    log.info(
                        "Dispatch deferred",
                        context={"pending": len(pending), "wait_until": decision.wait_until.isoformat()},
                    )
                    return DispatchOutcome.DEFERRED

                claim = message_store.claim_batch(db, conversation_id, now, respect_wait=not force)
            except (StoreError, SQLAlchemyError) as exc:
                db.rollback()
                log.error("Store error during dispatch", context={"error": str(exc)})
                return DispatchOutcome.STORE_ERROR

            if claim is None:
                log.info("Claim not acquired", context={"pending": len(pending)})
                return DispatchOutcome.NOT_CLAIMED

            outcome = await self._process_claim(db, claim, now, log.bind(claim_id=str(claim.claim_id)))
            self._rearm(db, conversation_id)
            return outcome
        finally:
            db.close()

    async def _process_claim(self, db: Session, claim: Claim, now: datetime, log: ConversationLogger) -> DispatchOutcome:
        conversation_id = claim.conversation_id
        log.info("Batch claimed", context={"count": claim.count})
        try:
            claimed = message_store.get_claimed(db, claim.claim_id)
            history = message_store.get_history(db, conversation_id, now - self.history_window, self.history_limit)
            system_instruction = get_system_instruction(db, conversation_id, self.default_persona)
            # Return the pooled connection before awaiting media and the oracle.
            # close() detaches the loaded rows without expiring them.
            db.close()
            context = await self.assembler.assemble(claimed, history)
            for message_id, transcript in context.transcripts.items():
                message_store.record_resolved_text(db, message_id, transcript)

            if context.is_empty:
                self._close_claim(db, claim, MessageStatus.PROCESSED, None, log)
                log.info("Nothing to answer, batch closed without oracle call")
                return DispatchOutcome.SHORT_CIRCUITED

            log.info(
                "Context assembled",
                context={
                    "new_messages": context.new_message_count,
                    "history_messages": context.history_count,
                    "content_parts": len(context.parts),
                    "degraded": len(context.degraded_ids),
                },
            )
            result = await self.invoker.invoke(conversation_id, system_instruction, context.parts)
        except Exception as exc:
            db.rollback()
            log.error("Dispatch failed after claim", context={"error": str(exc)}, exc_info=True)
            self._close_claim(db, claim, MessageStatus.ERROR, str(exc), log)
            await self.delivery.send_best_effort(conversation_id, replies.INTERNAL_ERROR)
            return DispatchOutcome.ERROR

        self._close_claim(db, claim, result.status, result.error, log)
        return DispatchOutcome.PROCESSED if result.ok else DispatchOutcome.ERROR

    def _close_claim(
        self,
        db: Session,
        claim: Claim,
        status: MessageStatus,
        error: Optional[str],
        log: ConversationLogger,
    ) -> None:
        try:
            updated = message_store.mark_claim(db, claim.claim_id, status, last_error=error)
        except StoreError as exc:
            # Rows stay processing until the stale-claim release fails them.
            log.error("Could not close claim", context={"status": status.value, "error": str(exc)})
            return
        log.info("Claim closed", context={"status": status.value, "updated": updated})

    def _rearm(self, db: Session, conversation_id: str) -> None:
        """Messages that arrived while the batch was in flight get their own re-check."""
        try:
            pending = message_store.get_pending(db, conversation_id)
        except SQLAlchemyError:
            db.rollback()
            return
        ready_at = self.policy.ready_at(message.received_at for message in pending)
        if ready_at is not None:
            self.timers.schedule(conversation_id, ready_at, self._recheck)

    async def _recheck(self, conversation_id: str) -> None:
        await self.dispatch_conversation(conversation_id)

    async def _safe_dispatch(self, conversation_id: str) -> DispatchOutcome:
        try:
            return await self.dispatch_conversation(conversation_id, force=True)
        except Exception as exc:
            logger.error(
                "Sweep dispatch failed",
                extra={"context": {"conversation_id": conversation_id, "error": str(exc)}},
                exc_info=True,
            )
            return DispatchOutcome.ERROR

    async def sweep(self, now: Optional[datetime] = None) -> dict[str, int]:
        """External re-check: fail abandoned claims, dispatch due conversations, evict old records."""
        now = now or self.clock()
        db = self.session_factory()
        try:
            stale = message_store.release_stale_claims(db, now - self.stale_after)
            due = message_store.conversations_due(db, now)
            evicted = message_store.evict_expired(db, now - self.retention)
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("Sweep query failed", extra={"context": {"error": str(exc)}})
            return {"released_stale": 0, "due": 0, "evicted": 0, "store_error": 1}
        finally:
            db.close()

        for conversation_id in stale:
            await self.delivery.send_best_effort(conversation_id, replies.APOLOGY)

        outcomes = await asyncio.gather(*(self._safe_dispatch(conversation_id) for conversation_id in due))

        results = {"released_stale": len(stale), "due": len(due), "evicted": evicted}
        for outcome in outcomes:
            results[outcome.value] = results.get(outcome.value, 0) + 1
        if stale or due or evicted:
            logger.info("Sweep finished", extra={"context": results})
        return results

    async def shutdown(self) -> None:
        await self.timers.cancel_all()
