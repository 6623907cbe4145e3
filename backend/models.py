import uuid
from datetime import datetime
from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    Boolean,
    ForeignKey,
    JSON,
    CheckConstraint,
)
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()

TRANSACTION_TYPES = ("earned", "spent", "daily_reward")


def new_id():
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "user"
    __table_args__ = (CheckConstraint("qkoins >= 0", name="ck_user_qkoins_non_negative"),)

    id = Column(Integer, primary_key=True, index=True)
    username = Column(String(80), unique=True, nullable=False)
    email = Column(String(120), unique=True, nullable=False)
    password_hash = Column(String(255), nullable=False)
    display_name = Column(String(120), nullable=True)
    photo_url = Column(String(500), nullable=True)
    qkoins = Column(Integer, nullable=False, default=0)
    last_daily_reward = Column(DateTime, nullable=True)
    last_bonus_claim = Column(DateTime, nullable=True)
    banned = Column(Boolean, nullable=False, default=False)
    current_session_id = Column(String(36), nullable=True)
    last_login = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    sessions = relationship("ChatSession", back_populates="user", cascade="all, delete-orphan")
    transactions = relationship("QkoinTransaction", back_populates="user", cascade="all, delete-orphan")

    @property
    def is_anonymous(self):
        return "anonymous" in (self.username or "")

    def to_dict(self):
        return {
            "id": self.id,
            "username": self.username,
            "email": self.email,
            "displayName": self.display_name,
            "photoURL": self.photo_url,
            "qkoins": self.qkoins or 0,
            "banned": bool(self.banned),
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class ChatSession(Base):
    __tablename__ = "chat_session"
    id = Column(String(36), primary_key=True, default=new_id)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False, index=True)
    title = Column(String(200), nullable=False, default="Nova Conversa")
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow)
    messages = relationship(
        "Message", back_populates="session", cascade="all, delete-orphan", order_by="Message.created_at"
    )
    user = relationship("User", back_populates="sessions")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "title": self.title,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
            "updatedAt": self.updated_at.isoformat() if self.updated_at else None,
        }


class Message(Base):
    __tablename__ = "message"
    id = Column(String(36), primary_key=True, default=new_id)
    session_id = Column(String(36), ForeignKey("chat_session.id"), nullable=False, index=True)
    role = Column(String(20), nullable=False)  # 'user' or 'assistant'
    content = Column(Text, nullable=False)
    image_url = Column(Text, nullable=True)  # external URL or data URI
    meta = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    session = relationship("ChatSession", back_populates="messages")

    def to_dict(self):
        return {
            "id": self.id,
            "sessionId": self.session_id,
            "role": self.role,
            "content": self.content,
            "imageUrl": self.image_url,
            "metadata": self.meta,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class QkoinTransaction(Base):
    __tablename__ = "qkoin_transaction"
    __table_args__ = (
        CheckConstraint(
            "type IN (" + ", ".join(f"'{t}'" for t in TRANSACTION_TYPES) + ")",
            name="ck_qkoin_transaction_type",
        ),
    )
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("user.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)
    type = Column(String(20), nullable=False)
    description = Column(String(255), nullable=False, default="")
    created_at = Column(DateTime, default=datetime.utcnow)
    user = relationship("User", back_populates="transactions")

    def to_dict(self):
        return {
            "id": self.id,
            "userId": self.user_id,
            "amount": self.amount,
            "type": self.type,
            "description": self.description,
            "createdAt": self.created_at.isoformat() if self.created_at else None,
        }


class SystemLog(Base):
    __tablename__ = "system_log"
    id = Column(Integer, primary_key=True, index=True)
    level = Column(String(20), nullable=False, default="info")
    message = Column(Text, nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)

    def to_dict(self):
        return {
            "id": self.id,
            "level": self.level,
            "message": self.message,
            "details": self.details,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }


class SystemSetting(Base):
    __tablename__ = "system_setting"
    key = Column(String(80), primary_key=True)
    value = Column(Text, nullable=True)
