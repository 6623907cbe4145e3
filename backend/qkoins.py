"""QKoin balance bookkeeping.

Balance and claim timestamps only change through single conditional UPDATE
statements (``... WHERE qkoins >= :amount``, ``... WHERE last_daily_reward
<= :cutoff``). The row count tells whether the change went through, so two
requests racing on the same user cannot both spend the last coin or both
claim the same window. The transaction log row is committed in the same
database transaction as the balance change.
"""
import logging
import math
from datetime import datetime, timedelta
from typing import List, Optional

from sqlalchemy import or_
from sqlalchemy.orm import Session

import config
from models import QkoinTransaction, User

logger = logging.getLogger(__name__)

DAILY_REWARD_WINDOW = timedelta(hours=config.DAILY_REWARD_WINDOW_HOURS)
BONUS_WINDOW = timedelta(hours=config.BONUS_WINDOW_HOURS)


def _window_elapsed(last_claim: Optional[datetime], window: timedelta, now: datetime) -> bool:
    return last_claim is None or now - last_claim >= window


def get_balance(user) -> int:
    if user.is_anonymous:
        return 0
    return user.qkoins or 0


def can_claim_daily(user, now: Optional[datetime] = None) -> bool:
    if user.is_anonymous:
        return False
    return _window_elapsed(user.last_daily_reward, DAILY_REWARD_WINDOW, now or datetime.utcnow())


def can_claim_bonus(user, now: Optional[datetime] = None) -> bool:
    if user.is_anonymous:
        return False
    return _window_elapsed(user.last_bonus_claim, BONUS_WINDOW, now or datetime.utcnow())


def minutes_until_bonus(user, now: Optional[datetime] = None) -> int:
    now = now or datetime.utcnow()
    if user.last_bonus_claim is None:
        return 0
    remaining = BONUS_WINDOW - (now - user.last_bonus_claim)
    return max(0, math.ceil(remaining.total_seconds() / 60))


def _log(db: Session, user_id: int, amount: int, kind: str, description: str, now: datetime):
    db.add(QkoinTransaction(
        user_id=user_id,
        amount=amount,
        type=kind,
        description=description[:255],
        created_at=now,
    ))


def _claim(db: Session, user, column, window: timedelta, amount: int, kind: str,
           description: str, now: Optional[datetime]) -> bool:
    if user.is_anonymous:
        return False
    now = now or datetime.utcnow()
    cutoff = now - window
    updated = (
        db.query(User)
        .filter(User.id == user.id, or_(column.is_(None), column <= cutoff))
        .update({User.qkoins: User.qkoins + amount, column: now}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        db.refresh(user)
        return False
    _log(db, user.id, amount, kind, description, now)
    db.commit()
    db.refresh(user)
    logger.info("[QKoins] User %s claimed %s (+%s)", user.id, kind, amount)
    return True


def claim_daily(db: Session, user, now: Optional[datetime] = None) -> bool:
    return _claim(
        db, user, User.last_daily_reward, DAILY_REWARD_WINDOW, config.DAILY_REWARD_AMOUNT,
        "daily_reward", "Recompensa diária", now,
    )


def claim_bonus(db: Session, user, now: Optional[datetime] = None) -> bool:
    return _claim(
        db, user, User.last_bonus_claim, BONUS_WINDOW, config.BONUS_AMOUNT,
        "earned", "Bônus resgatado pelo usuário", now,
    )


def spend(db: Session, user, amount: int, description: str) -> bool:
    if user.is_anonymous or amount <= 0:
        return False
    now = datetime.utcnow()
    updated = (
        db.query(User)
        .filter(User.id == user.id, User.qkoins >= amount)
        .update({User.qkoins: User.qkoins - amount}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        db.refresh(user)
        logger.info("[QKoins] User %s cannot spend %s: insufficient balance", user.id, amount)
        return False
    _log(db, user.id, -amount, "spent", description, now)
    db.commit()
    db.refresh(user)
    return True


def earn(db: Session, user, amount: int, description: str) -> bool:
    if user.is_anonymous or amount <= 0:
        return False
    now = datetime.utcnow()
    updated = (
        db.query(User)
        .filter(User.id == user.id)
        .update({User.qkoins: User.qkoins + amount}, synchronize_session=False)
    )
    if not updated:
        db.rollback()
        return False
    _log(db, user.id, amount, "earned", description, now)
    db.commit()
    db.refresh(user)
    return True


def list_transactions(db: Session, user, limit: int = 50) -> List[QkoinTransaction]:
    if user.is_anonymous:
        return []
    return (
        db.query(QkoinTransaction)
        .filter(QkoinTransaction.user_id == user.id)
        .order_by(QkoinTransaction.created_at.desc(), QkoinTransaction.id.desc())
        .limit(limit)
        .all()
    )
