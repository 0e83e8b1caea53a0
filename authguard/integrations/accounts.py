"""Account mutation applied by rule-engine actions."""

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..models import UserAccount

logger = logging.getLogger(__name__)


class AccountService(ABC):

    @abstractmethod
    def lock_account(self, user_id: str, until: datetime, reason: str) -> None:
        pass

    @abstractmethod
    def require_2fa(self, user_id: str, reason: str) -> None:
        pass


class SqlAccountService(AccountService):
    """Upserts user_accounts rows."""

    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def _get_or_create(self, db, user_id: str) -> UserAccount:
        account = db.query(UserAccount).filter(UserAccount.id == user_id).first()
        if account is None:
            account = UserAccount(id=user_id, require_2fa=False)
            db.add(account)
        return account

    def lock_account(self, user_id, until, reason):
        with session_scope(self.session_factory) as db:
            account = self._get_or_create(db, user_id)
            account.locked_until = until
            account.locked_reason = reason
        logger.warning(f"Account {user_id} locked until {until.isoformat()}: {reason}")

    def require_2fa(self, user_id, reason):
        with session_scope(self.session_factory) as db:
            account = self._get_or_create(db, user_id)
            account.require_2fa = True
            account.require_2fa_reason = reason
        logger.warning(f"2FA now required for {user_id}: {reason}")

    def get_account(self, user_id: str) -> Optional[UserAccount]:
        db = self.session_factory()
        try:
            return db.query(UserAccount).filter(UserAccount.id == user_id).first()
        finally:
            db.close()
