from app.models.ai_suggestion import AiSuggestion
from app.models.contact import Contact
from app.models.conversation_message import ConversationMessage
from app.models.knowledge_entry import KnowledgeEntry
from app.models.line_bot import LineBot
from app.models.merchant_settings import MerchantSettings
from app.models.webhook_event import WebhookEvent
from app.models.workflow import Workflow, WorkflowLog

__all__ = [
    "LineBot",
    "MerchantSettings",
    "Contact",
    "ConversationMessage",
    "AiSuggestion",
    "KnowledgeEntry",
    "WebhookEvent",
    "Workflow",
    "WorkflowLog",
]
