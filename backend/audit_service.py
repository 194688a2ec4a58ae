from motor.motor_asyncio import AsyncIOMotorDatabase
from datetime import datetime
from typing import Optional, Dict, Any, List
import logging

logger = logging.getLogger(__name__)


class AuditService:
    """Service for append-only audit logging"""

    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db.audit_logs

    async def record_entries(self, entries: List[Dict[str, Any]]):
        """
        Write a committed transaction's audit outbox (INSERT ONLY).

        Called after commit by the transaction coordinator; a failure here
        never affects the already committed ledger state.
        """
        if not entries:
            return
        try:
            documents = [
                {
                    "entity_type": entry["entity_type"],
                    "entity_id": entry["entity_id"],
                    "action": entry["action"],
                    "old_value_json": entry.get("old_value"),
                    "new_value_json": entry.get("new_value"),
                    "details": entry.get("details"),
                    "timestamp": entry.get("timestamp") or datetime.utcnow()
                }
                for entry in entries
            ]
            await self.collection.insert_many(documents)
            for doc in documents:
                logger.info(f"[AUDIT] {doc['action']} on {doc['entity_type']}:{doc['entity_id']}")
        except Exception as e:
            # Don't fail the main operation if audit logging fails
            logger.error(f"[AUDIT] Failed to create audit log: {str(e)}")

    async def get_audit_logs(
        self,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        limit: int = 100
    ):
        """Retrieve audit logs (READ ONLY), newest first"""
        query = {}

        if entity_type:
            query["entity_type"] = entity_type
        if entity_id:
            query["entity_id"] = entity_id

        cursor = self.collection.find(query).sort("timestamp", -1).limit(limit)
        logs = await cursor.to_list(length=limit)

        # Convert ObjectId to string
        for log in logs:
            log["audit_id"] = str(log.pop("_id"))

        return logs
