"""
LEDGER ENGINE - TRANSACTION COORDINATOR

Every Domain Service entry point owns exactly one top-level MongoDB
transaction. The function handed to `run` receives a TransactionScope and
must issue every read and write through `scope.session`.

Steps:
A) Refuse to open a scope while another is active (no nesting)
B) Start session + transaction
C) Execute mutation function
D) Commit (automatically on context exit) or abort on any error
E) AFTER commit only: flush the audit outbox and cache invalidations

Side sinks (audit, cache invalidation) are flushed strictly after the
commit returns, so a failing sink cannot roll back or block primary state.
"""

from contextvars import ContextVar
from datetime import datetime
from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo.errors import PyMongoError
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set, TypeVar
import logging

from ledger.errors import LedgerError, TransactionAbortError, TransactionNestingError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_active_scope: ContextVar[Optional["TransactionScope"]] = ContextVar("ledger_active_scope", default=None)


class AuditAction:
    CREATE = "CREATE"
    UPDATE = "UPDATE"
    DELETE = "DELETE"
    STATUS_CHANGE = "STATUS_CHANGE"


class _AbortSignal(Exception):
    """Raised by scope.abort() to roll the transaction back deliberately"""
    def __init__(self, reason: str):
        self.reason = reason
        super().__init__(reason)


class TransactionScope:
    """Handle passed to transactional functions. Collects post-commit side effects."""

    def __init__(self, db: AsyncIOMotorDatabase, session, label: str):
        self.db = db
        self.session = session
        self.label = label
        self.audit_entries: List[Dict[str, Any]] = []
        self.invalidated: Set[str] = set()

    def audit(
        self,
        action: str,
        entity_type: str,
        entity_id: Any,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        details: Optional[str] = None
    ):
        """Queue an audit entry (written after commit)"""
        self.audit_entries.append({
            "action": action,
            "entity_type": entity_type,
            "entity_id": str(entity_id),
            "old_value": old_value,
            "new_value": new_value,
            "details": details,
            "timestamp": datetime.utcnow()
        })

    def invalidate(self, *paths: str):
        """Record resource paths whose cached views become stale on commit"""
        self.invalidated.update(p for p in paths if p)

    def abort(self, reason: str):
        raise _AbortSignal(reason)


class TransactionCoordinator:
    """
    Wraps a set of document mutations in one atomic MongoDB transaction.

    audit_sink: object with `async record_entries(entries)`
    cache_invalidator: callable (sync or async) receiving the sorted list of stale paths
    """

    def __init__(
        self,
        client: AsyncIOMotorClient,
        db: AsyncIOMotorDatabase,
        audit_sink=None,
        cache_invalidator: Optional[Callable[[List[str]], Any]] = None
    ):
        self.client = client
        self.db = db
        self.audit_sink = audit_sink
        self.cache_invalidator = cache_invalidator

    @staticmethod
    def active_scope() -> Optional[TransactionScope]:
        return _active_scope.get()

    async def run(
        self,
        fn: Callable[[TransactionScope], Awaitable[T]],
        label: str = "mutation"
    ) -> T:
        if _active_scope.get() is not None:
            raise TransactionNestingError(
                f"Cannot open transaction '{label}' inside active transaction '{_active_scope.get().label}'",
                details={"label": label}
            )

        try:
            async with await self.client.start_session() as session:
                scope = TransactionScope(self.db, session, label)
                token = _active_scope.set(scope)
                try:
                    async with session.start_transaction():
                        result = await fn(scope)
                        # Transaction commits here
                finally:
                    _active_scope.reset(token)
        except _AbortSignal as e:
            logger.error(f"[TRANSACTION] Aborted {label}: {e.reason}")
            raise TransactionAbortError(e.reason, details={"label": label})
        except LedgerError as e:
            logger.error(f"[TRANSACTION] Aborted {label}: {e.message}")
            raise
        except PyMongoError as e:
            logger.error(f"[TRANSACTION ERROR] {label}: {str(e)}")
            raise TransactionAbortError(
                f"Transaction failed: {str(e)}",
                details={"label": label}
            ) from e

        logger.info(f"[TRANSACTION] Committed {label}")

        await self._flush(scope)
        return result

    async def _flush(self, scope: TransactionScope):
        """Emit post-commit side effects. Failures are logged, never raised."""
        if scope.audit_entries and self.audit_sink is not None:
            try:
                await self.audit_sink.record_entries(scope.audit_entries)
            except Exception as e:
                logger.error(f"[AUDIT] Failed to flush {len(scope.audit_entries)} entries for {scope.label}: {str(e)}")

        if scope.invalidated and self.cache_invalidator is not None:
            paths = sorted(scope.invalidated)
            try:
                outcome = self.cache_invalidator(paths)
                if hasattr(outcome, "__await__"):
                    await outcome
            except Exception as e:
                logger.error(f"[TRANSACTION] Cache invalidation failed for {paths}: {str(e)}")

