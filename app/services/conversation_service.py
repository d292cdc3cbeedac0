import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.database import SessionLocal, session_scope
from app.models import AiSuggestion, Contact, ConversationMessage, Workflow, WorkflowLog

SUGGESTION_TTL = timedelta(hours=24)


@dataclass
class ContactRecord:
    id: str
    merchant_id: str
    line_user_id: str
    tags: list[str] = field(default_factory=list)
    is_new: bool = False


def _now() -> datetime:
    return datetime.now(timezone.utc)


def get_or_create_contact(db: Session, merchant_id: str, line_user_id: str, bot_id: Optional[str] = None) -> Contact:
    """Find contact by LINE user id for the merchant or create a new one."""
    contact = (
        db.query(Contact).filter(Contact.merchant_id == merchant_id, Contact.line_user_id == line_user_id).first()
    )
    if contact:
        contact.last_active_at = _now()
        return contact

    contact = Contact(
        merchant_id=merchant_id,
        line_user_id=line_user_id,
        bot_id=bot_id,
        tags=[],
        created_at=_now(),
        last_active_at=_now(),
    )
    try:
        with db.begin_nested():
            db.add(contact)
            db.flush()
    except IntegrityError:
        # Concurrent first message from the same user created it first.
        contact = (
            db.query(Contact).filter(Contact.merchant_id == merchant_id, Contact.line_user_id == line_user_id).one()
        )
    return contact


def find_event_message(db: Session, contact_id: str, event_id: str, role: str) -> Optional[ConversationMessage]:
    return (
        db.query(ConversationMessage)
        .filter(
            ConversationMessage.contact_id == contact_id,
            ConversationMessage.event_id == event_id,
            ConversationMessage.role == role,
        )
        .first()
    )


def insert_message(
    db: Session,
    contact_id: str,
    text: str,
    role: str,
    *,
    event_id: Optional[str] = None,
    status: Optional[str] = None,
    resolved_by: Optional[str] = None,
    is_resolved: Optional[bool] = None,
    confidence: Optional[float] = None,
    metadata: Optional[dict] = None,
) -> ConversationMessage:
    """Append a message. A user message already stored for the same event is reused."""
    if event_id and role == "user":
        existing = find_event_message(db, contact_id, event_id, role)
        if existing:
            return existing

    row = ConversationMessage(
        contact_id=contact_id,
        role=role,
        message=text,
        status=status,
        resolved_by=resolved_by,
        is_resolved=is_resolved,
        confidence_score=confidence,
        event_id=event_id,
        message_metadata=metadata or {},
        created_at=_now(),
    )
    db.add(row)
    db.flush()
    return row


def get_recent_messages(db: Session, contact_id: str, limit: int) -> list[dict]:
    """Last `limit` messages, oldest first, shaped as chat-completion history."""
    if limit <= 0:
        return []
    rows = (
        db.query(ConversationMessage)
        .filter(ConversationMessage.contact_id == contact_id)
        .order_by(ConversationMessage.created_at.desc())
        .limit(limit)
        .all()
    )
    return [{"role": r.role, "content": r.message} for r in reversed(rows)]


def add_contact_tags(db: Session, contact_id: str, tags: list[str]) -> list[str]:
    contact = db.query(Contact).filter(Contact.id == contact_id).with_for_update().first()
    if contact is None:
        return []
    merged = list(dict.fromkeys([*(contact.tags or []), *[t for t in tags if t]]))
    contact.tags = merged
    return merged


class SqlConversationStore:
    """Async persistence store; each call runs in its own session scope off the event loop."""

    def __init__(self, session_factory: Callable = SessionLocal):
        self.session_factory = session_factory

    async def _run(self, fn: Callable[[Session], Any]) -> Any:
        def _work():
            with session_scope(self.session_factory) as db:
                return fn(db)

        return await asyncio.to_thread(_work)

    async def get_or_create_contact(
        self, merchant_id: str, line_user_id: str, bot_id: Optional[str] = None
    ) -> ContactRecord:
        def _fn(db: Session) -> ContactRecord:
            contact = get_or_create_contact(db, merchant_id, line_user_id, bot_id)
            has_messages = (
                db.query(ConversationMessage.id).filter(ConversationMessage.contact_id == contact.id).first()
                is not None
            )
            return ContactRecord(
                id=str(contact.id),
                merchant_id=str(contact.merchant_id),
                line_user_id=contact.line_user_id,
                tags=list(contact.tags or []),
                is_new=not has_messages,
            )

        return await self._run(_fn)

    async def count_messages(self, contact_id: str) -> int:
        return await self._run(
            lambda db: db.query(ConversationMessage).filter(ConversationMessage.contact_id == contact_id).count()
        )

    async def insert_message(self, contact_id: str, text: str, role: str, **meta: Any) -> str:
        return await self._run(lambda db: str(insert_message(db, contact_id, text, role, **meta).id))

    async def get_recent_messages(self, contact_id: str, limit: int) -> list[dict]:
        return await self._run(lambda db: get_recent_messages(db, contact_id, limit))

    async def find_event_message(self, contact_id: str, event_id: str, role: str = "assistant") -> Optional[str]:
        def _fn(db: Session) -> Optional[str]:
            row = find_event_message(db, contact_id, event_id, role)
            return str(row.id) if row else None

        return await self._run(_fn)

    async def add_contact_tags(self, contact_id: str, tags: list[str]) -> list[str]:
        return await self._run(lambda db: add_contact_tags(db, contact_id, tags))

    async def save_suggestion(self, **fields: Any) -> str:
        def _fn(db: Session) -> str:
            now = _now()
            fields.setdefault("status", "draft")
            suggestion = AiSuggestion(created_at=now, expires_at=now + SUGGESTION_TTL, **fields)
            db.add(suggestion)
            db.flush()
            return str(suggestion.id)

        return await self._run(_fn)

    async def list_active_workflows(self, merchant_id: str) -> list[dict]:
        def _fn(db: Session) -> list[dict]:
            rows = (
                db.query(Workflow)
                .filter(Workflow.merchant_id == merchant_id, Workflow.is_active.is_(True))
                .order_by(Workflow.created_at)
                .all()
            )
            return [{"id": str(w.id), "name": w.name, "nodes": w.nodes, "edges": w.edges} for w in rows]

        return await self._run(_fn)

    async def get_workflow(self, workflow_id: str) -> Optional[dict]:
        def _fn(db: Session) -> Optional[dict]:
            w = db.query(Workflow).filter(Workflow.id == workflow_id).first()
            if w is None:
                return None
            return {"id": str(w.id), "merchant_id": str(w.merchant_id), "name": w.name, "nodes": w.nodes, "edges": w.edges}

        return await self._run(_fn)

    async def save_workflow_log(
        self,
        workflow_id: str,
        *,
        status: str,
        executed_nodes: list[dict],
        event_id: Optional[str] = None,
        error: Optional[str] = None,
        dry_run: bool = False,
    ) -> str:
        def _fn(db: Session) -> str:
            log = WorkflowLog(
                workflow_id=workflow_id,
                event_id=event_id,
                status=status,
                executed_nodes=executed_nodes,
                error=error,
                dry_run=dry_run,
            )
            db.add(log)
            db.flush()
            return str(log.id)

        return await self._run(_fn)
