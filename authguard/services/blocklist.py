"""Blocklist for IPs, emails and users.

Membership lives in the counter store under ``blocklist_{kind}:{identifier}``
with a TTL, and every entry is also written to the blocklist_entries table.
The table is authoritative: when the store is unreachable membership is read
from it, and ``restore()`` reloads the store after a restart.
"""

import logging
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from ..database import session_scope
from ..errors import PersistenceError, StoreUnavailable
from ..models import BlocklistEntry, BlocklistKind
from ..stores.counter_store import CounterStore
from ..utils.clock import utcnow

logger = logging.getLogger(__name__)

DEFAULT_BLOCK_SECONDS = 7 * 24 * 3600


def blocklist_key(kind: BlocklistKind, identifier: str) -> str:
    return f"blocklist_{kind.value}:{identifier}"


def normalize_identifier(kind: BlocklistKind, identifier: str) -> str:
    identifier = identifier.strip()
    if kind == BlocklistKind.EMAIL:
        return identifier.lower()
    return identifier


class Blocklist:
    """Store-backed blocklist with a durable shadow table."""

    def __init__(self, session_factory: sessionmaker, store: CounterStore,
                 clock: Callable[[], datetime] = utcnow):
        self.session_factory = session_factory
        self.store = store
        self.clock = clock
        self._lock = threading.Lock()

    def block(self, kind: BlocklistKind, identifier: str, reason: str,
              ttl_seconds: int = DEFAULT_BLOCK_SECONDS, risk_score: Optional[int] = None) -> BlocklistEntry:
        """
        Add an identifier to the blocklist.

        Args:
            kind: ip | email | user
            identifier: The address, email or user id
            reason: Why it was blocked
            ttl_seconds: How long the block lasts
            risk_score: Score that triggered the block, if any

        Returns:
            The durable BlocklistEntry row
        """
        identifier = normalize_identifier(kind, identifier)
        now = self.clock()
        with self._lock:
            try:
                with session_scope(self.session_factory) as db:
                    entry = BlocklistEntry(
                        kind=kind,
                        identifier=identifier,
                        reason=reason,
                        risk_score=risk_score,
                        is_active=True,
                        expires_at=now + timedelta(seconds=ttl_seconds),
                        created_at=now,
                    )
                    db.add(entry)
            except SQLAlchemyError as e:
                raise PersistenceError(f"blocklist write failed for {kind.value}") from e

            try:
                self.store.set(blocklist_key(kind, identifier), 1, ttl_seconds)
            except StoreUnavailable as e:
                logger.warning(f"Counter store unavailable; {kind.value} block kept in database only: {e}")

        logger.warning(f"Added to blocklist: {kind.value} {identifier} for {ttl_seconds}s - {reason}")
        return entry

    def unblock(self, kind: BlocklistKind, identifier: str) -> bool:
        """Remove an identifier. Returns True if an active entry existed."""
        identifier = normalize_identifier(kind, identifier)
        now = self.clock()
        with self._lock:
            try:
                with session_scope(self.session_factory) as db:
                    rows = db.query(BlocklistEntry).filter(
                        BlocklistEntry.kind == kind,
                        BlocklistEntry.identifier == identifier,
                        BlocklistEntry.is_active == True,
                    ).all()
                    for row in rows:
                        row.is_active = False
                        row.unblocked_at = now
            except SQLAlchemyError as e:
                raise PersistenceError(f"blocklist update failed for {kind.value}") from e

            try:
                removed = self.store.delete(blocklist_key(kind, identifier))
            except StoreUnavailable as e:
                logger.warning(f"Counter store unavailable during unblock: {e}")
                removed = False

        if rows or removed:
            logger.info(f"Removed from blocklist: {kind.value} {identifier}")
        return bool(rows) or removed

    def is_blocked(self, kind: BlocklistKind, identifier: Optional[str]) -> bool:
        if not identifier:
            return False
        identifier = normalize_identifier(kind, identifier)
        try:
            return self.store.get(blocklist_key(kind, identifier)) is not None
        except StoreUnavailable:
            return self._is_blocked_durable(kind, identifier)

    def _is_blocked_durable(self, kind: BlocklistKind, identifier: str) -> bool:
        now = self.clock()
        db = self.session_factory()
        try:
            return db.query(BlocklistEntry).filter(
                BlocklistEntry.kind == kind,
                BlocklistEntry.identifier == identifier,
                BlocklistEntry.is_active == True,
                BlocklistEntry.expires_at > now,
            ).first() is not None
        finally:
            db.close()

    def list_active(self, kind: Optional[BlocklistKind] = None) -> List[Dict]:
        now = self.clock()
        db = self.session_factory()
        try:
            query = db.query(BlocklistEntry).filter(
                BlocklistEntry.is_active == True,
                BlocklistEntry.expires_at > now,
            )
            if kind is not None:
                query = query.filter(BlocklistEntry.kind == kind)
            return [
                {
                    'kind': row.kind.value,
                    'identifier': row.identifier,
                    'reason': row.reason,
                    'risk_score': row.risk_score,
                    'expires_at': row.expires_at.isoformat() if row.expires_at else None,
                    'created_at': row.created_at.isoformat(),
                }
                for row in query.order_by(BlocklistEntry.created_at.desc()).all()
            ]
        finally:
            db.close()

    def count_active(self, kind: BlocklistKind) -> int:
        return len(self.list_active(kind))

    def restore(self) -> int:
        """Reload unexpired durable entries into the counter store."""
        now = self.clock()
        restored = 0
        db = self.session_factory()
        try:
            rows = db.query(BlocklistEntry).filter(
                BlocklistEntry.is_active == True,
                BlocklistEntry.expires_at > now,
            ).all()
            for row in rows:
                remaining = int((row.expires_at - now).total_seconds())
                if remaining <= 0:
                    continue
                self.store.set(blocklist_key(row.kind, row.identifier), 1, remaining)
                restored += 1
        finally:
            db.close()
        if restored:
            logger.info(f"Restored {restored} blocklist entries into the counter store")
        return restored
