from app.schemas.line import InboundEvent, LineWebhookBody, LineWebhookEvent
from app.schemas.webhook import WebhookResponse
from app.schemas.workflow import WorkflowGraph, WorkflowLoadError, load_workflow_graph

__all__ = [
    "InboundEvent",
    "LineWebhookBody",
    "LineWebhookEvent",
    "WebhookResponse",
    "WorkflowGraph",
    "WorkflowLoadError",
    "load_workflow_graph",
]
