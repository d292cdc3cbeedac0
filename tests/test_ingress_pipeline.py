import asyncio
from unittest.mock import AsyncMock

import pytest

from app.schemas.line import LineWebhookEvent
from app.services.background_tasks import drain
from app.services.generation_service import GenerationResult
from app.services.ingress_service import (
    APOLOGY_TEXT,
    DEFAULT_OFF_HOURS_MESSAGE,
    HIGH_RISK_ACK,
    RATE_LIMIT_NOTICE,
    SUGGEST_HOLDING_TEXT,
)
from app.services.llm import LLMErrorType, get_fallback_message
from app.services.rate_limiter import MemoryRateLimiter
from app.services.reply_decision import GENERIC_ASK_TEXT, get_default_handoff_text
from app.services.webhook_event_service import to_inbound_event
from tests.fakes import knowledge_hits


def line_event(
    text="請問營業時間是幾點？",
    event_id="evt-1",
    user_id="U123",
    reply_token="rt-1",
    event_type="message",
):
    payload = {
        "type": event_type,
        "timestamp": 1700000000000,
        "webhookEventId": event_id,
        "replyToken": reply_token,
        "source": {"type": "user", "userId": user_id},
    }
    if event_type == "message":
        payload["message"] = {"type": "text", "id": f"m-{event_id}", "text": text}
    return to_inbound_event(LineWebhookEvent.model_validate(payload))


class TestAutoReply:
    @pytest.mark.asyncio
    async def test_grounded_low_risk_message_is_answered(self, pipeline, tenant, store, messenger, knowledge):
        knowledge.result = knowledge_hits(3)

        outcome = await pipeline.process_event(line_event(), tenant)
        await drain()

        assert outcome.status == "processed"
        assert outcome.action == "AUTO"
        assert messenger.replies[0][0] == "rt-1"
        assert messenger.sent_texts() == ["我們的營業時間是每天 10:00 到 19:00。"]
        assistant = store.assistant_messages()
        assert len(assistant) == 1
        assert assistant[0]["status"] == "ai_handled"
        assert assistant[0]["resolved_by"] == "ai"
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-1") is True

    @pytest.mark.asyncio
    async def test_history_excludes_current_message(self, pipeline, tenant, generator, knowledge):
        knowledge.result = knowledge_hits(3)

        await pipeline.process_event(line_event(), tenant)

        history = generator.reply_calls[0]["history"]
        assert {"role": "user", "content": "請問營業時間是幾點？"} not in history

    @pytest.mark.asyncio
    async def test_knowledge_context_in_prompt(self, pipeline, tenant, generator, knowledge):
        knowledge.result = knowledge_hits(2)

        await pipeline.process_event(line_event(), tenant)

        assert "FAQ 0" in generator.reply_calls[0]["system_prompt"]


class TestIdempotency:
    @pytest.mark.asyncio
    async def test_redelivery_produces_one_reply(self, pipeline, tenant, store, messenger, knowledge):
        knowledge.result = knowledge_hits(3)

        first = await pipeline.process_event(line_event(), tenant)
        second = await pipeline.process_event(line_event(reply_token="rt-2"), tenant)

        assert first.status == "processed"
        assert second.status == "duplicate"
        assert len(store.assistant_messages()) == 1
        assert len(messenger.sent_texts()) == 1

    @pytest.mark.asyncio
    async def test_concurrent_deliveries_claim_once(self, pipeline, tenant, store, messenger, knowledge):
        knowledge.result = knowledge_hits(3)

        batch = await pipeline.process_batch([line_event(), line_event(reply_token="rt-2")], tenant)

        statuses = sorted(o.status for o in batch.outcomes)
        assert statuses == ["duplicate", "processed"]
        assert len(store.assistant_messages()) == 1
        assert len(messenger.sent_texts()) == 1

    @pytest.mark.asyncio
    async def test_stored_assistant_reply_short_circuits(self, pipeline, tenant, store, messenger):
        contact = await store.get_or_create_contact(tenant.merchant_id, "U123")
        await store.insert_message(contact.id, "舊的回覆", "assistant", event_id="evt-1", status="ai_handled")

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.action == "already_replied"
        assert messenger.sent_texts() == []
        assert len(store.assistant_messages()) == 1


class TestDecisionOutcomes:
    @pytest.mark.asyncio
    async def test_refund_asks_for_order_number(self, pipeline, tenant, store, messenger):
        outcome = await pipeline.process_event(line_event(text="我要退款"), tenant)

        assert outcome.action == "ASK"
        assert "訂單編號" in messenger.sent_texts()[0]
        assert store.assistant_messages()[0]["is_resolved"] is False

    @pytest.mark.asyncio
    async def test_greeting_gets_generic_question(self, pipeline, tenant, messenger):
        outcome = await pipeline.process_event(line_event(text="你好"), tenant)

        assert outcome.action == "ASK"
        assert messenger.sent_texts() == [GENERIC_ASK_TEXT]

    @pytest.mark.asyncio
    async def test_no_sources_skips_generation(self, pipeline, tenant, generator):
        await pipeline.process_event(line_event(text="你們有賣藍色的杯子嗎"), tenant)

        assert generator.reply_calls == []

    @pytest.mark.asyncio
    async def test_low_confidence_stores_suggestion(self, pipeline, tenant, store, messenger, knowledge, merchant_config):
        knowledge.result = knowledge_hits(1)
        merchant_config.confidence_threshold = 0.9

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.action == "SUGGEST"
        assert messenger.sent_texts() == [SUGGEST_HOLDING_TEXT]
        assert store.suggestions[0]["status"] == "draft"
        assert store.suggestions[0]["suggested_reply"] == "我們的營業時間是每天 10:00 到 19:00。"
        assert store.assistant_messages()[0]["status"] == "needs_human"

    @pytest.mark.asyncio
    async def test_generation_fallback_needs_human(self, pipeline, tenant, store, messenger, generator, knowledge):
        knowledge.result = knowledge_hits(3)
        fallback = get_fallback_message(LLMErrorType.TIMEOUT)
        generator.reply = GenerationResult(text=fallback, error_type=LLMErrorType.TIMEOUT)

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.action == "fallback"
        assert messenger.sent_texts() == [fallback]
        assert store.assistant_messages()[0]["status"] == "needs_human"


class TestScreening:
    @pytest.mark.asyncio
    async def test_high_risk_gets_fixed_ack(self, pipeline, tenant, store, messenger, generator):
        outcome = await pipeline.process_event(line_event(text="我要求賠償，不然找律師"), tenant)

        assert outcome.action == "high_risk"
        assert messenger.sent_texts() == [HIGH_RISK_ACK]
        assert store.suggestions[0]["status"] == "needs_human"
        assert store.suggestions[0]["risk_category"] == "high"
        assert store.assistant_messages()[0]["status"] == "needs_human"
        assert generator.reply_calls == []
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-1") is True

    @pytest.mark.asyncio
    async def test_custom_sensitive_word_hands_off(self, pipeline, tenant, messenger, merchant_config):
        merchant_config.sensitive_words = ["競品"]

        outcome = await pipeline.process_event(line_event(text="你們跟競品比起來如何"), tenant)

        assert outcome.action == "handoff"
        assert messenger.sent_texts() == [get_default_handoff_text()]

    @pytest.mark.asyncio
    async def test_off_hours_message(self, pipeline, tenant, messenger, merchant_config):
        merchant_config.business_hours = {
            "timezone": "Asia/Taipei",
            "schedule": {day: {"enabled": False} for day in ("mon", "tue", "wed", "thu", "fri", "sat", "sun")},
        }

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.action == "off_hours"
        assert messenger.sent_texts() == [DEFAULT_OFF_HOURS_MESSAGE]

    @pytest.mark.asyncio
    async def test_merchant_off_hours_message(self, pipeline, tenant, messenger, merchant_config):
        merchant_config.business_hours = {"schedule": {"mon": {"enabled": False}}}
        merchant_config.off_hours_message = "我們下班囉"

        await pipeline.process_event(line_event(), tenant)

        assert messenger.sent_texts() == ["我們下班囉"]


class TestRateLimiting:
    @pytest.mark.asyncio
    async def test_rejected_event_is_not_marked_processed(self, pipeline, tenant, messenger, knowledge):
        knowledge.result = knowledge_hits(3)
        pipeline.rate_limiter = MemoryRateLimiter(max_requests=1, window_seconds=60)

        first = await pipeline.process_event(line_event(event_id="evt-1", reply_token="rt-1"), tenant)
        second = await pipeline.process_event(line_event(event_id="evt-2", reply_token="rt-2"), tenant)
        third = await pipeline.process_event(line_event(event_id="evt-3", reply_token="rt-3"), tenant)

        assert first.status == "processed"
        assert second.status == "rate_limited"
        assert third.status == "rate_limited"
        assert messenger.sent_texts().count(RATE_LIMIT_NOTICE) == 1
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-2") is False
        assert await pipeline.ledger.claim(tenant.scope, "evt-2") is True

    @pytest.mark.asyncio
    async def test_other_senders_unaffected(self, pipeline, tenant):
        pipeline.rate_limiter = MemoryRateLimiter(max_requests=1, window_seconds=60)

        await pipeline.process_event(line_event(event_id="evt-1", user_id="U1"), tenant)
        outcome = await pipeline.process_event(line_event(event_id="evt-2", user_id="U2"), tenant)

        assert outcome.status == "processed"


class TestFailures:
    @pytest.mark.asyncio
    async def test_exception_sends_apology_and_releases_claim(self, pipeline, tenant, messenger, knowledge):
        knowledge.search = AsyncMock(side_effect=RuntimeError("knowledge store down"))

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.status == "failed"
        assert "knowledge store down" in outcome.error
        assert messenger.sent_texts() == [APOLOGY_TEXT]
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-1") is False

    @pytest.mark.asyncio
    async def test_redelivery_after_failure_is_processed(self, pipeline, tenant, store, knowledge):
        original_search = knowledge.search
        knowledge.search = AsyncMock(side_effect=RuntimeError("boom"))
        await pipeline.process_event(line_event(), tenant)

        knowledge.search = original_search
        outcome = await pipeline.process_event(line_event(reply_token="rt-2"), tenant)

        assert outcome.status == "processed"
        user_rows = [m for m in store.messages if m["role"] == "user"]
        assert len(user_rows) == 1

    @pytest.mark.asyncio
    async def test_batch_reports_partial_failure(self, pipeline, tenant, store):
        original = store.get_or_create_contact

        async def flaky(merchant_id, line_user_id, bot_id=None):
            if line_user_id == "U-bad":
                raise RuntimeError("db down")
            return await original(merchant_id, line_user_id, bot_id)

        store.get_or_create_contact = flaky
        batch = await pipeline.process_batch(
            [line_event(event_id="ok", user_id="U-good"), line_event(event_id="bad", user_id="U-bad")], tenant
        )

        assert batch.processed == 1
        assert batch.failed == 1
        assert batch.status == "partial"

    @pytest.mark.asyncio
    async def test_apology_failure_is_swallowed(self, pipeline, tenant, messenger, knowledge):
        knowledge.search = AsyncMock(side_effect=RuntimeError("boom"))
        messenger.fail = True

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.status == "failed"


class TestOtherEvents:
    @pytest.mark.asyncio
    async def test_follow_sends_welcome(self, pipeline, tenant, messenger, merchant_config):
        merchant_config.welcome_message_enabled = True
        merchant_config.welcome_message = "歡迎加入！"

        outcome = await pipeline.process_event(line_event(event_type="follow", event_id="f-1"), tenant)

        assert outcome.action == "welcome"
        assert messenger.sent_texts() == ["歡迎加入！"]

    @pytest.mark.asyncio
    async def test_follow_without_welcome_is_acknowledged(self, pipeline, tenant, messenger):
        outcome = await pipeline.process_event(line_event(event_type="follow", event_id="f-1"), tenant)

        assert outcome.status == "processed"
        assert messenger.sent_texts() == []

    @pytest.mark.asyncio
    async def test_sticker_is_ignored(self, pipeline, tenant, messenger):
        event = to_inbound_event(
            LineWebhookEvent.model_validate(
                {
                    "type": "message",
                    "webhookEventId": "s-1",
                    "replyToken": "rt",
                    "source": {"userId": "U123"},
                    "message": {"type": "sticker", "id": "st-1"},
                }
            )
        )

        outcome = await pipeline.process_event(event, tenant)

        assert outcome.action == "ignored"
        assert messenger.sent_texts() == []


class TestWorkflowRouting:
    @pytest.mark.asyncio
    async def test_firing_workflow_handles_event(self, pipeline, tenant, store, messenger, generator):
        store.workflows = [
            {
                "id": "wf-1",
                "name": "hours",
                "nodes": [
                    {"id": "t", "type": "trigger", "data": {"subType": "keywords", "keywords": ["營業"]}},
                    {"id": "a", "type": "action", "data": {"subType": "send_message", "message": "{{customer_name}}您好"}},
                ],
                "edges": [{"id": "e1", "source": "t", "target": "a"}],
            }
        ]

        outcome = await pipeline.process_event(line_event(), tenant)

        assert outcome.action == "workflow"
        assert messenger.sent_texts() == ["客戶您好"]
        assert generator.reply_calls == []
        assert store.workflow_logs[0]["status"] == "success"
        assert len(store.assistant_messages()) == 1

    @pytest.mark.asyncio
    async def test_non_firing_workflow_falls_through(self, pipeline, tenant, store, messenger):
        store.workflows = [
            {
                "id": "wf-1",
                "name": "price",
                "nodes": [
                    {"id": "t", "type": "trigger", "data": {"subType": "keywords", "keywords": ["價格"]}},
                    {"id": "a", "type": "action", "data": {"subType": "send_message", "message": "價目表"}},
                ],
                "edges": [{"id": "e1", "source": "t", "target": "a"}],
            }
        ]

        outcome = await pipeline.process_event(line_event(text="你好"), tenant)

        assert outcome.action == "ASK"
        assert "價目表" not in messenger.sent_texts()

    @pytest.mark.asyncio
    async def test_invalid_workflow_is_skipped(self, pipeline, tenant, store):
        store.workflows = [{"id": "wf-bad", "name": "bad", "nodes": [{"id": "x", "type": "teleport"}], "edges": []}]

        outcome = await pipeline.process_event(line_event(text="你好"), tenant)

        assert outcome.status == "processed"
        assert outcome.action == "ASK"

    @pytest.mark.asyncio
    async def test_failed_workflow_send_keeps_single_reply_row(self, pipeline, tenant, store, messenger):
        store.workflows = [
            {
                "id": "wf-1",
                "name": "welcome",
                "nodes": [
                    {"id": "t", "type": "trigger", "data": {"subType": "new_message"}},
                    {"id": "a", "type": "action", "data": {"subType": "send_message", "message": "歡迎"}},
                ],
                "edges": [{"id": "e1", "source": "t", "target": "a"}],
            }
        ]
        messenger.fail = True

        outcome = await pipeline.process_event(line_event(text="你好"), tenant)

        assert outcome.action == "workflow"
        assert [m["text"] for m in store.assistant_messages()] == ["歡迎"]
        assert messenger.sent_texts() == []
        assert store.workflow_logs[0]["status"] == "failed"
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-1") is True

    @pytest.mark.asyncio
    async def test_workflow_failing_after_send_is_handled(self, pipeline, tenant, store, messenger, generator):
        generator.labels = {"sentiment": RuntimeError("classifier down")}
        store.workflows = [
            {
                "id": "wf-1",
                "name": "greet then classify",
                "nodes": [
                    {"id": "t", "type": "trigger", "data": {"subType": "new_message"}},
                    {"id": "a", "type": "action", "data": {"subType": "send_message", "message": "您好，馬上為您服務"}},
                    {"id": "ai", "type": "ai", "data": {"subType": "sentiment"}},
                ],
                "edges": [
                    {"id": "e1", "source": "t", "target": "a"},
                    {"id": "e2", "source": "a", "target": "ai"},
                ],
            }
        ]

        outcome = await pipeline.process_event(line_event(text="你好"), tenant)

        assert outcome.status == "processed"
        assert outcome.action == "workflow"
        assert messenger.sent_texts() == ["您好，馬上為您服務"]
        assert len(store.assistant_messages()) == 1
        assert generator.reply_calls == []
        assert store.workflow_logs[0]["status"] == "failed"
        assert await pipeline.ledger.is_processed(tenant.scope, "evt-1") is True


class TestDetachedTasks:
    @pytest.mark.asyncio
    async def test_auto_tag_runs_after_reply(self, pipeline, tenant, store):
        await pipeline.process_event(line_event(text="這個多少錢"), tenant)
        await drain()
        await asyncio.sleep(0)

        contact = next(iter(store.contacts.values()))
        assert "🟢 詢價客戶" in contact.tags
