"""Interpreter for merchant workflow graphs.

Breadth-first from every firing trigger, with one visited set per run so a
malformed (cyclic) graph still terminates. Any node error aborts the run;
nothing is retried at node level.
"""

from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from app.logging_config import event_logger, get_logger
from app.schemas.workflow import (
    ActionNode,
    AiNode,
    ConditionNode,
    EndNode,
    RoutingNode,
    TriggerNode,
    WorkflowGraph,
)
from app.services.generation_service import DEFAULT_SYSTEM_PROMPT, ReplyGenerator
from app.services.knowledge_service import KnowledgeIndex, format_knowledge_context
from app.services.line_messaging import ReplyChannel
from app.services.risk_screener import apply_reply_guardrail

logger = get_logger("workflow_engine")

TRUE_HANDLE = "output-1"
FALSE_HANDLE = "output-2"
HANDOFF_MESSAGE = "您的需求已轉接專人處理，請稍候。"
CUSTOMER_NAME_PLACEHOLDER = "{{customer_name}}"
DEFAULT_CUSTOMER_NAME = "客戶"
REPLY_KNOWLEDGE_LIMIT = 3
REPLY_KNOWLEDGE_MAX_CHARS = 2000


@dataclass
class ExecutedNode:
    node_id: str
    type: str
    sub_type: Optional[str] = None
    input: Any = None
    output: Any = None

    def to_dict(self) -> dict:
        return {
            "nodeId": self.node_id,
            "type": self.type,
            "subType": self.sub_type,
            "input": self.input,
            "output": self.output,
        }


@dataclass
class WorkflowContext:
    message: str
    merchant_id: str
    contact_id: Optional[str] = None
    event_id: Optional[str] = None
    is_new_customer: bool = False
    is_off_hours: bool = False
    system_prompt: str = ""
    ai_model: Optional[str] = None
    max_reply_length: int = 500
    channel: Optional[ReplyChannel] = None
    customer_name: str = DEFAULT_CUSTOMER_NAME
    dry_run: bool = False
    variables: dict[str, Any] = field(default_factory=dict)
    side_effects: int = 0


@dataclass
class WorkflowRunResult:
    workflow_id: str
    success: bool
    triggered: bool = False
    executed_nodes: list[ExecutedNode] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def handled(self) -> bool:
        return self.success and self.triggered

    def trace(self) -> list[dict]:
        return [n.to_dict() for n in self.executed_nodes]


class WorkflowEngine:
    def __init__(self, generator: ReplyGenerator, knowledge: KnowledgeIndex, store):
        self.generator = generator
        self.knowledge = knowledge
        self.store = store

    @staticmethod
    def trigger_fires(node: TriggerNode, ctx: WorkflowContext) -> bool:
        data = node.data
        if data.subType == "keywords":
            if not data.keywords:
                return True
            message = ctx.message.lower()
            return any(str(k).lower() in message for k in data.keywords)
        if data.subType == "new_customer":
            return ctx.is_new_customer
        if data.subType == "off_hours":
            return ctx.is_off_hours
        return True

    @staticmethod
    def evaluate_condition(node: ConditionNode, ctx: WorkflowContext) -> str:
        data = node.data
        actual = str(ctx.variables.get(data.field, "") or "").lower()
        expected = data.compareValue.lower()
        if data.operator == "equals":
            matched = actual == expected
        elif data.operator == "not_equals":
            matched = actual != expected
        else:
            matched = expected in actual
        return TRUE_HANDLE if matched else FALSE_HANDLE

    async def _run_ai(self, node: AiNode, ctx: WorkflowContext) -> str:
        task = node.data.subType
        if task == "reply":
            found = await self.knowledge.search(
                ctx.merchant_id, ctx.message, REPLY_KNOWLEDGE_LIMIT, REPLY_KNOWLEDGE_MAX_CHARS
            )
            prompt = (ctx.system_prompt or DEFAULT_SYSTEM_PROMPT) + format_knowledge_context(found)
            generated = await self.generator.generate_reply(
                ctx.message,
                prompt,
                model=ctx.ai_model,
                max_reply_length=ctx.max_reply_length,
                merchant_id=ctx.merchant_id,
            )
            reply = apply_reply_guardrail(generated.text, ctx.max_reply_length).text
            ctx.variables["ai_reply"] = reply
            return reply

        label = await self.generator.classify(task, ctx.message, ctx.ai_model)
        ctx.variables[task] = label
        return label

    async def _send(self, ctx: WorkflowContext, text: str, status: str, quick_replies: Optional[list[dict]] = None):
        if ctx.contact_id:
            await self.store.insert_message(
                ctx.contact_id,
                text,
                "assistant",
                event_id=ctx.event_id,
                status=status,
                resolved_by="ai" if status == "ai_handled" else "unresolved",
                is_resolved=status == "ai_handled",
                metadata={"source": "workflow"},
            )
            # The saved row is the event's reply even if delivery fails below.
            ctx.side_effects += 1
        if ctx.channel is None:
            raise RuntimeError("No outbound channel for workflow send")
        await ctx.channel.send(text, quick_replies)
        if not ctx.contact_id:
            ctx.side_effects += 1

    async def _run_action(self, node: ActionNode, ctx: WorkflowContext) -> Any:
        data = node.data
        if data.subType == "add_tag":
            tags = data.tag_list
            if ctx.dry_run or not ctx.contact_id or not tags:
                return tags
            return await self.store.add_contact_tags(ctx.contact_id, tags)

        text = data.message.replace(CUSTOMER_NAME_PLACEHOLDER, ctx.customer_name)
        if not text.strip():
            text = str(ctx.variables.get("ai_reply") or "")
        if not text.strip():
            return "skipped_empty"
        if ctx.dry_run:
            return text
        buttons = [{"label": b.label, "text": b.value} for b in data.buttons]
        await self._send(ctx, text, "ai_handled", buttons or None)
        return text

    async def _run_routing(self, node: RoutingNode, ctx: WorkflowContext) -> str:
        if not ctx.dry_run:
            await self._send(ctx, HANDOFF_MESSAGE, "needs_human")
        return HANDOFF_MESSAGE

    async def execute(self, graph: WorkflowGraph, ctx: WorkflowContext) -> WorkflowRunResult:
        log = event_logger(logger, event_id=ctx.event_id, merchant_id=ctx.merchant_id, workflow_id=graph.id)
        result = WorkflowRunResult(workflow_id=graph.id, success=False)

        triggers = graph.trigger_nodes()
        if not triggers:
            result.error = "no_trigger_nodes"
            return result

        queue = deque(node.id for node in triggers)
        visited: set[str] = set()

        while queue:
            node_id = queue.popleft()
            if node_id in visited:
                continue
            visited.add(node_id)

            node = graph.node(node_id)
            if node is None:
                continue

            follow = True
            handle: Optional[str] = None
            try:
                if isinstance(node, TriggerNode):
                    if not self.trigger_fires(node, ctx):
                        continue
                    result.triggered = True
                    record = ExecutedNode(node.id, "trigger", node.data.subType)
                elif isinstance(node, AiNode):
                    output = await self._run_ai(node, ctx)
                    record = ExecutedNode(node.id, "ai", node.data.subType, input=ctx.message, output=output)
                elif isinstance(node, ConditionNode):
                    handle = self.evaluate_condition(node, ctx)
                    record = ExecutedNode(
                        node.id,
                        "condition",
                        node.data.operator,
                        input={"field": node.data.field, "value": ctx.variables.get(node.data.field)},
                        output=handle,
                    )
                elif isinstance(node, ActionNode):
                    output = await self._run_action(node, ctx)
                    record = ExecutedNode(node.id, "action", node.data.subType, output=output)
                elif isinstance(node, RoutingNode):
                    output = await self._run_routing(node, ctx)
                    record = ExecutedNode(node.id, "routing", node.data.subType, output=output)
                    follow = False
                elif isinstance(node, EndNode):
                    record = ExecutedNode(node.id, "end", node.data.subType)
                    follow = False
                else:
                    raise ValueError(f"Unsupported node type: {node.type}")
            except Exception as e:
                result.error = f"{node.type}:{node.id}: {e}"
                log.warning(
                    "Workflow run aborted",
                    context={"node_id": node.id, "error": str(e), "executed": [n.node_id for n in result.executed_nodes]},
                )
                return result

            result.executed_nodes.append(record)
            if follow:
                for edge in graph.outgoing(node.id, handle):
                    queue.append(edge.target)

        result.success = True
        log.info(
            "Workflow run finished",
            context={"triggered": result.triggered, "executed": [n.node_id for n in result.executed_nodes], "dry_run": ctx.dry_run},
        )
        return result

    async def record_run(self, result: WorkflowRunResult, ctx: WorkflowContext) -> Optional[str]:
        """Persist the execution trace; failures are logged, never raised."""
        status = "success" if result.success else "failed"
        if result.success and not result.triggered:
            status = "skipped"
        try:
            return await self.store.save_workflow_log(
                result.workflow_id,
                status=status,
                executed_nodes=result.trace(),
                event_id=ctx.event_id,
                error=result.error,
                dry_run=ctx.dry_run,
            )
        except Exception as e:
            logger.warning(
                "Failed to save workflow log",
                extra={"context": {"workflow_id": result.workflow_id, "event_id": ctx.event_id, "error": str(e)}},
            )
            return None
