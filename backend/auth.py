import logging
import secrets
from datetime import datetime
from typing import Optional

import bcrypt
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

import config
from exceptions import (
    EmailTakenError,
    InvalidCredentialsError,
    InvalidInputError,
    UserBannedError,
    UsernameTakenError,
)
from models import User

logger = logging.getLogger(__name__)

BCRYPT_ROUNDS = 10
ANONYMOUS_MARKER = "anonymous"
ANONYMOUS_EMAIL = "anonimo@qisa.ai"


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # malformed hash
        return False


def anonymous_user(browser_token: Optional[str] = None) -> User:
    """Build a throwaway identity for a visitor who is not logged in.

    The returned object is never added to a database session, so nothing
    written for it is persisted.
    """
    token = (browser_token or "").strip()[:64] or secrets.token_hex(8)
    return User(
        username=f"{ANONYMOUS_MARKER}-{token}",
        email=ANONYMOUS_EMAIL,
        password_hash="",
        display_name="Usuário Anônimo",
        qkoins=0,
        banned=False,
    )


def _raise_if_taken(db: Session, username: str, email: str):
    if db.query(User).filter(User.username == username).first():
        raise UsernameTakenError()
    if db.query(User).filter(User.email == email).first():
        raise EmailTakenError()


def register(db: Session, username: str, email: str, password: str, display_name: Optional[str] = None) -> User:
    username = (username or "").strip()
    email = (email or "").strip().lower()
    password = password or ""

    if len(username) < 3 or len(username) > 50:
        raise InvalidInputError("O nome de usuário deve ter entre 3 e 50 caracteres")
    if ANONYMOUS_MARKER in username.lower():
        raise InvalidInputError("Nome de usuário reservado")
    if len(password) < 6:
        raise InvalidInputError("A senha deve ter pelo menos 6 caracteres")

    _raise_if_taken(db, username, email)

    user = User(
        username=username,
        email=email,
        password_hash=hash_password(password),
        display_name=(display_name or "").strip() or username,
        qkoins=config.INITIAL_QKOINS,
    )
    db.add(user)
    try:
        db.commit()
    except IntegrityError:
        # a concurrent registration won the unique constraint
        db.rollback()
        _raise_if_taken(db, username, email)
        raise
    db.refresh(user)
    logger.info("[Auth] Created user %s (%s)", user.id, username)
    return user


def login(db: Session, username: str, password: str) -> User:
    username = (username or "").strip()
    user = db.query(User).filter(User.username == username).first()
    if not user or not verify_password(password or "", user.password_hash):
        logger.info("[Auth] Failed login for %s", username)
        raise InvalidCredentialsError()
    if user.banned:
        raise UserBannedError()

    user.last_login = datetime.utcnow()
    db.commit()
    db.refresh(user)
    logger.info("[Auth] User %s logged in", user.id)
    return user
