from app.services.reply_decision import (
    ReplyAction,
    ReplyDecision,
    decide_reply_action,
)
from app.services.risk_screener import (
    RiskAssessment,
    apply_reply_guardrail,
    detect_sensitive_keywords,
)
