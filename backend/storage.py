"""Chat sessions and their messages.

Every function takes the requesting ``User`` and checks that the session it
touches belongs to that user. Anonymous users get ephemeral sessions: nothing
is written for them and their history always reads back empty.
"""
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from exceptions import InvalidInputError, SessionAccessDeniedError, SessionNotFoundError
from models import ChatSession, Message, new_id

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "Nova Conversa"
MESSAGE_ROLES = ("user", "assistant")


def _ephemeral_session(user) -> ChatSession:
    now = datetime.utcnow()
    return ChatSession(
        id=f"{user.username}-session",
        user_id=None,
        title=DEFAULT_TITLE,
        created_at=now,
        updated_at=now,
    )


def get_owned_session(db: Session, user, session_id: str) -> ChatSession:
    chat = db.query(ChatSession).filter(ChatSession.id == session_id).first()
    if not chat:
        raise SessionNotFoundError()
    if chat.user_id != user.id:
        logger.warning("[Sessions] User %s tried to access session %s of user %s", user.id, session_id, chat.user_id)
        raise SessionAccessDeniedError()
    return chat


def list_sessions(db: Session, user) -> List[ChatSession]:
    if user.is_anonymous:
        return []
    return (
        db.query(ChatSession)
        .filter(ChatSession.user_id == user.id)
        .order_by(ChatSession.updated_at.desc())
        .all()
    )


def create_session(db: Session, user, title: Optional[str] = None) -> ChatSession:
    title = (title or "").strip() or DEFAULT_TITLE
    if user.is_anonymous:
        chat = _ephemeral_session(user)
        chat.title = title
        return chat

    now = datetime.utcnow()
    chat = ChatSession(id=new_id(), user_id=user.id, title=title[:200], created_at=now, updated_at=now)
    db.add(chat)
    user.current_session_id = chat.id
    db.commit()
    db.refresh(chat)
    logger.info("[Sessions] Created session %s for user %s", chat.id, user.id)
    return chat


def get_current_session(db: Session, user) -> ChatSession:
    if user.is_anonymous:
        return _ephemeral_session(user)

    if user.current_session_id:
        chat = (
            db.query(ChatSession)
            .filter(ChatSession.id == user.current_session_id, ChatSession.user_id == user.id)
            .first()
        )
        if chat:
            return chat

    chat = (
        db.query(ChatSession)
        .filter(ChatSession.user_id == user.id)
        .order_by(ChatSession.updated_at.desc())
        .first()
    )
    if chat:
        user.current_session_id = chat.id
        db.commit()
        return chat

    return create_session(db, user)


def activate_session(db: Session, user, session_id: str) -> ChatSession:
    chat = get_owned_session(db, user, session_id)
    user.current_session_id = chat.id
    db.commit()
    return chat


def rename_session(db: Session, user, session_id: str, title: str) -> ChatSession:
    title = (title or "").strip()
    if not title:
        raise InvalidInputError("O título não pode ser vazio")
    chat = get_owned_session(db, user, session_id)
    chat.title = title[:200]
    chat.updated_at = datetime.utcnow()
    db.commit()
    db.refresh(chat)
    return chat


def delete_session(db: Session, user, session_id: str) -> None:
    chat = get_owned_session(db, user, session_id)
    db.delete(chat)

    if user.current_session_id == session_id:
        remaining = (
            db.query(ChatSession)
            .filter(ChatSession.user_id == user.id, ChatSession.id != session_id)
            .order_by(ChatSession.updated_at.desc())
            .first()
        )
        user.current_session_id = remaining.id if remaining else None

    db.commit()
    logger.info("[Sessions] Deleted session %s of user %s", session_id, user.id)


def append_message(db: Session, user, session_id: str, role: str, content: str,
                   image_url: Optional[str] = None, metadata: Optional[dict] = None) -> Message:
    if role not in MESSAGE_ROLES:
        raise InvalidInputError(f"Papel de mensagem inválido: {role}")

    now = datetime.utcnow()
    if user.is_anonymous:
        # Returned to the caller but never saved
        return Message(
            id=new_id(), session_id=session_id, role=role, content=content,
            image_url=image_url, meta=metadata, created_at=now,
        )

    chat = get_owned_session(db, user, session_id)
    message = Message(
        id=new_id(), session_id=chat.id, role=role, content=content,
        image_url=image_url, meta=metadata, created_at=now,
    )
    db.add(message)
    chat.updated_at = now
    db.commit()
    db.refresh(message)
    return message


def list_messages(db: Session, user, session_id: str) -> List[Message]:
    if user.is_anonymous:
        return []
    chat = get_owned_session(db, user, session_id)
    return (
        db.query(Message)
        .filter(Message.session_id == chat.id)
        .order_by(Message.created_at.asc())
        .all()
    )


def clear_messages(db: Session, user, session_id: str) -> int:
    if user.is_anonymous:
        return 0
    chat = get_owned_session(db, user, session_id)
    deleted = db.query(Message).filter(Message.session_id == chat.id).delete(synchronize_session=False)
    db.commit()
    db.expire(chat)
    return deleted


def search_messages(db: Session, user, query: str, limit: int = 50):
    query = (query or "").strip()
    if user.is_anonymous or not query:
        return []
    rows = (
        db.query(Message, ChatSession.title)
        .join(ChatSession, Message.session_id == ChatSession.id)
        .filter(ChatSession.user_id == user.id, Message.content.ilike(f"%{query}%"))
        .order_by(Message.created_at.desc())
        .limit(limit)
        .all()
    )
    return [
        {
            "id": msg.id,
            "sessionId": msg.session_id,
            "sessionTitle": title,
            "role": msg.role,
            "content": msg.content,
            "createdAt": msg.created_at.isoformat(),
        }
        for msg, title in rows
    ]


def prune_sessions(db: Session, user, keep: int = 3) -> dict:
    """Keep the ``keep`` most recently created sessions and drop the rest."""
    sessions = (
        db.query(ChatSession)
        .filter(ChatSession.user_id == user.id)
        .order_by(ChatSession.created_at.desc())
        .all()
    )
    kept, dropped = sessions[:keep], sessions[keep:]
    for chat in dropped:
        db.delete(chat)
    if user.current_session_id in {c.id for c in dropped}:
        user.current_session_id = kept[0].id if kept else None
    db.commit()
    return {
        "kept": len(kept),
        "deleted": len(dropped),
        "remaining": [{"id": c.id, "title": c.title} for c in kept],
    }


def count_user_messages(db: Session, user_id: int) -> int:
    return (
        db.query(Message)
        .join(ChatSession, Message.session_id == ChatSession.id)
        .filter(ChatSession.user_id == user_id)
        .count()
    )


def clear_user_history(db: Session, user_id: int) -> int:
    session_ids = [row.id for row in db.query(ChatSession.id).filter(ChatSession.user_id == user_id)]
    if not session_ids:
        return 0
    deleted = db.query(Message).filter(Message.session_id.in_(session_ids)).delete(synchronize_session=False)
    db.commit()
    return deleted
