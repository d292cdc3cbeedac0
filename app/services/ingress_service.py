"""Per-event reply pipeline behind the LINE webhook routes.

Each event runs in its own task. The idempotency ledger is claimed before any
side effect and only marked processed once the terminal reply went out, so a
failed or rate-limited event can be delivered again.
"""

import asyncio
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Optional

from app.database import SessionLocal, session_scope
from app.logging_config import event_logger, get_logger
from app.schemas.line import InboundEvent
from app.schemas.workflow import WorkflowLoadError, load_workflow_graph
from app.services.analytics_cache import invalidate_analytics
from app.services.auto_tag_service import auto_tag_contact
from app.services.background_tasks import spawn_detached
from app.services.business_hours import is_within_business_hours
from app.services.conversation_service import ContactRecord, SqlConversationStore
from app.services.generation_service import DEFAULT_SYSTEM_PROMPT, ReplyGenerator
from app.services.idempotency_service import get_ledger
from app.services.knowledge_service import KnowledgeIndex, format_knowledge_context
from app.services.line_messaging import LineMessagingClient, ReplyChannel
from app.services.rate_limiter import get_rate_limiter
from app.services.reply_decision import (
    DEFAULT_SAFE_DRAFT,
    ReplyAction,
    ReplyDecision,
    classify_reply_category,
    decide_reply_action,
    get_default_handoff_text,
)
from app.services.risk_screener import (
    RiskAssessment,
    apply_reply_guardrail,
    detect_sensitive_keywords,
    match_custom_words,
)
from app.services.settings_service import MerchantConfig, SettingsProvider
from app.services.webhook_event_service import finalize_ingestion, record_ingestion
from app.services.workflow_engine import WorkflowContext, WorkflowEngine

logger = get_logger("ingress_service")

HIGH_RISK_ACK = "已收到，我們將由專員協助處理。"
APOLOGY_TEXT = "抱歉，處理您的訊息時發生錯誤。請稍後再試。"
RATE_LIMIT_NOTICE = "您傳送訊息的速度太快了，請稍候片刻再試。"
DEFAULT_OFF_HOURS_MESSAGE = "您好，目前為非營業時間，我們已收到您的訊息，將於營業時間盡快回覆您。"
SUGGEST_HOLDING_TEXT = DEFAULT_SAFE_DRAFT


@dataclass(frozen=True)
class TenantContext:
    """Which merchant (and optionally which bot) a webhook request belongs to."""

    merchant_id: str
    channel_access_token: str
    bot_id: Optional[str] = None

    @property
    def scope(self) -> str:
        return f"bot:{self.bot_id}" if self.bot_id else f"merchant:{self.merchant_id}"

    def rate_identity(self, sender_id: str) -> str:
        return f"{self.scope}:{sender_id}"


@dataclass
class EventOutcome:
    event_id: str
    status: str  # processed, duplicate, rate_limited, failed
    action: Optional[str] = None
    error: Optional[str] = None


@dataclass
class BatchOutcome:
    outcomes: list[EventOutcome] = field(default_factory=list)

    @property
    def failed(self) -> int:
        return sum(1 for o in self.outcomes if o.status == "failed")

    @property
    def processed(self) -> int:
        return len(self.outcomes) - self.failed

    @property
    def status(self) -> str:
        if not self.failed:
            return "done"
        return "failed" if self.failed == len(self.outcomes) else "partial"


@dataclass
class EventState:
    """Mutable per-event working set passed between pipeline stages."""

    event: InboundEvent
    tenant: TenantContext
    channel: ReplyChannel
    config: MerchantConfig
    log: Any
    contact: Optional[ContactRecord] = None


class MessagePipeline:
    def __init__(
        self,
        *,
        ledger=None,
        rate_limiter=None,
        settings_provider: Optional[SettingsProvider] = None,
        knowledge: Optional[KnowledgeIndex] = None,
        store=None,
        generator: Optional[ReplyGenerator] = None,
        messenger_factory: Callable[[str], LineMessagingClient] = LineMessagingClient,
        session_factory: Callable = SessionLocal,
    ):
        self.ledger = ledger or get_ledger()
        self.rate_limiter = rate_limiter or get_rate_limiter()
        self.settings_provider = settings_provider or SettingsProvider()
        self.knowledge = knowledge or KnowledgeIndex()
        self.store = store or SqlConversationStore()
        self.generator = generator or ReplyGenerator()
        self.messenger_factory = messenger_factory
        self.session_factory = session_factory
        self.workflow_engine = WorkflowEngine(self.generator, self.knowledge, self.store)

    # Ingestion audit record

    async def record_ingestion(self, raw_body: str, events: list[InboundEvent], tenant: TenantContext) -> str:
        def _work() -> str:
            with session_scope(self.session_factory) as db:
                return record_ingestion(
                    db,
                    raw_body=raw_body,
                    event_ids=[e.event_id for e in events],
                    bot_id=tenant.bot_id,
                    merchant_id=tenant.merchant_id,
                )

        return await asyncio.to_thread(_work)

    async def finalize_ingestion(self, record_id: Optional[str], batch: BatchOutcome) -> None:
        if not record_id:
            return

        def _work() -> None:
            with session_scope(self.session_factory) as db:
                finalize_ingestion(
                    db,
                    record_id=record_id,
                    status=batch.status,
                    outcome=[asdict(o) for o in batch.outcomes],
                    last_error=next((o.error for o in batch.outcomes if o.error), None),
                )

        try:
            await asyncio.to_thread(_work)
        except Exception as e:
            logger.warning(
                "Failed to finalize webhook event record",
                extra={"context": {"record_id": record_id, "error": str(e)}},
            )

    # Batch / event processing

    async def process_batch(self, events: list[InboundEvent], tenant: TenantContext) -> BatchOutcome:
        results = await asyncio.gather(
            *(self.process_event(event, tenant) for event in events), return_exceptions=True
        )
        outcomes = []
        for event, result in zip(events, results):
            if isinstance(result, BaseException):
                logger.error(
                    "Event task crashed",
                    extra={"context": {"event_id": event.event_id, "error": str(result)}},
                )
                outcomes.append(EventOutcome(event.event_id, "failed", error=str(result)[:200]))
            else:
                outcomes.append(result)
        return BatchOutcome(outcomes)

    async def process_event(self, event: InboundEvent, tenant: TenantContext) -> EventOutcome:
        log = event_logger(
            logger, event_id=event.event_id, merchant_id=tenant.merchant_id, bot_id=tenant.bot_id
        )
        if event.id_strategy == "composite":
            log.warning("Event id derived from timestamp and sender; dedup is best-effort")

        if not await self.ledger.claim(tenant.scope, event.event_id):
            log.info("Duplicate event skipped", context={"is_redelivery": event.is_redelivery})
            return EventOutcome(event.event_id, "duplicate")

        channel = ReplyChannel(
            self.messenger_factory(tenant.channel_access_token), event.sender_id, event.reply_token
        )

        if event.sender_id:
            limit = await self.rate_limiter.check(tenant.rate_identity(event.sender_id))
            if not limit.allowed:
                await self.ledger.release(tenant.scope, event.event_id)
                log.warning("Sender rate limited", context={"sender_id": event.sender_id, "notify": limit.notify})
                if limit.notify:
                    await self._best_effort_send(channel, RATE_LIMIT_NOTICE, log)
                return EventOutcome(event.event_id, "rate_limited")

        try:
            config = await self.settings_provider.get_settings(tenant.merchant_id)
            state = EventState(event=event, tenant=tenant, channel=channel, config=config, log=log)
            action = await self._handle(state)
        except Exception as e:
            log.error("Event processing failed", context={"error": str(e)}, exc_info=True)
            await self._best_effort_send(channel, APOLOGY_TEXT, log)
            await self.ledger.release(tenant.scope, event.event_id)
            return EventOutcome(event.event_id, "failed", error=str(e)[:200])

        await self.ledger.mark_processed(tenant.scope, event.event_id)
        log.info("Event processed", context={"action": action})
        return EventOutcome(event.event_id, "processed", action=action)

    async def _handle(self, state: EventState) -> str:
        event, config = state.event, state.config

        if event.event_type == "follow":
            if config.welcome_message_enabled and config.welcome_message:
                await state.channel.send(config.welcome_message, config.quick_replies or None)
                return "welcome"
            return "follow_ack"

        if not event.sender_id or not event.text:
            return "ignored"

        state.contact = await self.store.get_or_create_contact(
            state.tenant.merchant_id, event.sender_id, state.tenant.bot_id
        )
        await self.store.insert_message(state.contact.id, event.text, "user", event_id=event.event_id)
        if await self.store.find_event_message(state.contact.id, event.event_id, "assistant"):
            state.log.info("Assistant reply already stored for event, skipping")
            return "already_replied"

        action = await self._respond(state)
        self._after_reply(state)
        return action

    async def _respond(self, state: EventState) -> str:
        event, config, tenant = state.event, state.config, state.tenant
        text = event.text

        risk = detect_sensitive_keywords(text)
        if risk.is_high:
            state.log.warning("High risk message", context={"keywords": risk.matched_keywords})
            await self.store.save_suggestion(
                contact_id=state.contact.id,
                merchant_id=tenant.merchant_id,
                bot_id=tenant.bot_id,
                event_id=event.event_id,
                user_message=text,
                suggested_reply=HIGH_RISK_ACK,
                sources_count=0,
                sources=[],
                confidence_score=0,
                risk_category="high",
                category=classify_reply_category(text),
                reason="high_risk_keywords",
                status="needs_human",
            )
            await self._reply(state, HIGH_RISK_ACK, "needs_human", metadata={"reason": "high_risk_keywords"})
            return "high_risk"

        is_off_hours = not is_within_business_hours(config.business_hours)

        if await self._run_workflows(state, is_off_hours):
            return "workflow"

        custom_hits = match_custom_words(text, config.sensitive_words)
        if custom_hits:
            state.log.info("Custom sensitive words matched", context={"words": custom_hits})
            await self._reply(
                state, get_default_handoff_text(), "needs_human", metadata={"reason": "sensitive_words"}
            )
            return "handoff"

        if is_off_hours:
            await self._reply(
                state,
                config.off_hours_message or DEFAULT_OFF_HOURS_MESSAGE,
                "needs_human",
                metadata={"reason": "off_hours"},
            )
            return "off_hours"

        return await self._answer(state, risk)

    async def _answer(self, state: EventState, risk: RiskAssessment) -> str:
        event, config = state.event, state.config
        found = await self.knowledge.search(state.tenant.merchant_id, event.text)

        candidate = None
        if found.count > 0:
            history = await self.store.get_recent_messages(state.contact.id, config.memory_count + 1)
            if history and history[-1] == {"role": "user", "content": event.text}:
                history = history[:-1]
            generated = await self.generator.generate_reply(
                event.text,
                (config.system_prompt or DEFAULT_SYSTEM_PROMPT) + format_knowledge_context(found),
                model=config.ai_model,
                history=history,
                max_reply_length=config.max_reply_length,
                merchant_id=state.tenant.merchant_id,
            )
            if generated.is_fallback:
                await self._reply(
                    state,
                    generated.text,
                    "needs_human",
                    metadata={"reason": "generation_fallback", "error_type": generated.error_type.value},
                )
                return "fallback"
            guarded = apply_reply_guardrail(generated.text, config.max_reply_length)
            if guarded.triggered:
                state.log.info("Reply guardrail applied", context={"reason": guarded.reason})
            candidate = guarded.text

        decision = decide_reply_action(
            event.text,
            risk,
            found.count,
            threshold=config.confidence_threshold,
            source_titles=[s.title for s in found.sources],
            candidate_draft=candidate,
        )
        state.log.info(
            "Reply decision",
            context={
                "action": decision.action.value,
                "reason": decision.reason,
                "confidence": decision.confidence,
                "category": decision.category,
                "sources": decision.sources.count,
            },
        )
        await self._act(state, decision, risk, [asdict(s) for s in found.sources])
        return decision.action.value

    async def _act(self, state: EventState, decision: ReplyDecision, risk: RiskAssessment, sources: list[dict]):
        metadata = {
            "action": decision.action.value,
            "reason": decision.reason,
            "category": decision.category,
            "sources": decision.sources.titles,
        }
        quick_replies = state.config.quick_replies or None

        if decision.action == ReplyAction.AUTO:
            await self._reply(
                state,
                decision.draft_text,
                "ai_handled",
                resolved_by="ai",
                is_resolved=True,
                confidence=decision.confidence,
                metadata=metadata,
                quick_replies=quick_replies,
            )
        elif decision.action == ReplyAction.SUGGEST:
            await self.store.save_suggestion(
                contact_id=state.contact.id,
                merchant_id=state.tenant.merchant_id,
                bot_id=state.tenant.bot_id,
                event_id=state.event.event_id,
                user_message=state.event.text,
                suggested_reply=decision.draft_text,
                sources_count=decision.sources.count,
                sources=sources,
                confidence_score=decision.confidence,
                risk_category=risk.risk_level,
                category=decision.category,
                reason=decision.reason,
            )
            await self._reply(
                state, SUGGEST_HOLDING_TEXT, "needs_human", confidence=decision.confidence, metadata=metadata
            )
        elif decision.action == ReplyAction.ASK:
            await self._reply(
                state,
                decision.ask_text,
                "ai_handled",
                is_resolved=False,
                confidence=decision.confidence,
                metadata=metadata,
                quick_replies=quick_replies,
            )
        else:
            await self._reply(
                state, decision.draft_text, "needs_human", confidence=decision.confidence, metadata=metadata
            )

    async def _run_workflows(self, state: EventState, is_off_hours: bool) -> bool:
        workflows = await self.store.list_active_workflows(state.tenant.merchant_id)
        for row in workflows:
            try:
                graph = load_workflow_graph(row["id"], row.get("name", ""), row.get("nodes"), row.get("edges"))
            except WorkflowLoadError as e:
                state.log.warning("Skipping invalid workflow", context={"workflow_id": row["id"], "error": e.detail})
                continue

            ctx = WorkflowContext(
                message=state.event.text,
                merchant_id=state.tenant.merchant_id,
                contact_id=state.contact.id,
                event_id=state.event.event_id,
                is_new_customer=state.contact.is_new,
                is_off_hours=is_off_hours,
                system_prompt=state.config.system_prompt,
                ai_model=state.config.ai_model,
                max_reply_length=state.config.max_reply_length,
                channel=state.channel,
            )
            result = await self.workflow_engine.execute(graph, ctx)
            await self.workflow_engine.record_run(result, ctx)

            if result.handled:
                return True
            if not result.success and ctx.side_effects:
                # A reply already reached the user; answering again would duplicate it.
                state.log.warning(
                    "Workflow failed after sending, treating event as handled",
                    context={"workflow_id": graph.id, "error": result.error},
                )
                return True
        return False

    async def _reply(
        self,
        state: EventState,
        text: str,
        status: str,
        *,
        resolved_by: Optional[str] = None,
        is_resolved: Optional[bool] = None,
        confidence: Optional[float] = None,
        metadata: Optional[dict] = None,
        quick_replies: Optional[list[dict]] = None,
    ) -> None:
        """Persist the assistant message, then send it. The stored row marks the event as answered."""
        if is_resolved is None:
            is_resolved = status == "ai_handled"
        await self.store.insert_message(
            state.contact.id,
            text,
            "assistant",
            event_id=state.event.event_id,
            status=status,
            resolved_by=resolved_by or ("ai" if is_resolved else "unresolved"),
            is_resolved=is_resolved,
            confidence=confidence,
            metadata=metadata,
        )
        await state.channel.send(text, quick_replies)

    def _after_reply(self, state: EventState) -> None:
        merchant_id = state.tenant.merchant_id
        spawn_detached(
            "invalidate_analytics",
            invalidate_analytics(merchant_id),
            merchant_id=merchant_id,
            event_id=state.event.event_id,
        )
        spawn_detached(
            "auto_tag_contact",
            auto_tag_contact(self.store, state.contact.id, state.event.text),
            contact_id=state.contact.id,
            event_id=state.event.event_id,
        )

    @staticmethod
    async def _best_effort_send(channel: ReplyChannel, text: str, log) -> None:
        try:
            await channel.send(text)
        except Exception as e:
            log.warning("Best-effort send failed", context={"error": str(e)})


_pipeline: Optional[MessagePipeline] = None


def get_pipeline() -> MessagePipeline:
    global _pipeline
    if _pipeline is None:
        _pipeline = MessagePipeline()
    return _pipeline
