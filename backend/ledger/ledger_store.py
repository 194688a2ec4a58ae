"""
Ledger store: persistence of Payment records.

Payments are plain fact rows in the `payments` collection. They are only
written from inside a transaction scope opened by a Domain Service.
"""

from bson import ObjectId
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
import logging

from ledger.errors import NotFoundError
from ledger.precision import ZERO, round_financial, to_decimal
from ledger.references import AnyParty, AnyTarget, parse_object_id
from ledger.transaction import TransactionScope

logger = logging.getLogger(__name__)


class PaymentLedger:
    """Append / update / delete Payment rows and query them by target."""

    COLLECTION = "payments"

    async def insert(self, scope: TransactionScope, payment_doc: Dict[str, Any]) -> Dict[str, Any]:
        now = datetime.utcnow()
        payment_doc.setdefault("created_at", now)
        payment_doc["updated_at"] = now
        result = await scope.db[self.COLLECTION].insert_one(payment_doc, session=scope.session)
        payment_doc["_id"] = result.inserted_id
        logger.debug(f"[PAYMENT] Row inserted: {result.inserted_id}")
        return payment_doc

    async def get(self, scope: TransactionScope, payment_id: Any) -> Dict[str, Any]:
        oid = parse_object_id(payment_id, "Payment")
        payment = await scope.db[self.COLLECTION].find_one({"_id": oid}, session=scope.session)
        if not payment:
            raise NotFoundError("Payment", payment_id)
        return payment

    async def replace_fields(
        self,
        scope: TransactionScope,
        payment_id: ObjectId,
        set_fields: Dict[str, Any],
        unset_fields: Optional[List[str]] = None
    ) -> Dict[str, Any]:
        update: Dict[str, Any] = {"$set": {**set_fields, "updated_at": datetime.utcnow()}}
        if unset_fields:
            update["$unset"] = {field: "" for field in unset_fields}
        updated = await scope.db[self.COLLECTION].find_one_and_update(
            {"_id": payment_id},
            update,
            return_document=True,
            session=scope.session
        )
        if updated is None:
            raise NotFoundError("Payment", payment_id)
        return updated

    async def delete(self, scope: TransactionScope, payment_id: ObjectId):
        result = await scope.db[self.COLLECTION].delete_one({"_id": payment_id}, session=scope.session)
        if result.deleted_count == 0:
            raise NotFoundError("Payment", payment_id)

    async def find_for_target(self, scope: TransactionScope, target: AnyTarget) -> List[Dict[str, Any]]:
        cursor = scope.db[self.COLLECTION].find(target.payment_fields(), session=scope.session)
        return await cursor.to_list(length=None)

    async def sum_for_target(
        self,
        scope: TransactionScope,
        target: AnyTarget,
        exclude_id: Optional[ObjectId] = None
    ) -> Decimal:
        """Ground truth: Σ amount over every live payment referencing the target"""
        query = target.payment_fields()
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        total = ZERO
        async for payment in scope.db[self.COLLECTION].find(query, session=scope.session):
            total += to_decimal(payment.get("amount", 0))
        return round_financial(total)

    async def delete_for_target(self, scope: TransactionScope, target: AnyTarget) -> int:
        result = await scope.db[self.COLLECTION].delete_many(target.payment_fields(), session=scope.session)
        return result.deleted_count

    async def reassign_party(self, scope: TransactionScope, target: AnyTarget, party: Optional[AnyParty]) -> int:
        """Point every payment of a target at a new party (vendor/client reassignment)"""
        if party is None:
            update = {"$unset": {"party_id": "", "party_type": ""}}
        else:
            update = {"$set": {
                "party_id": parse_object_id(party.party_id, party.entity_type),
                "party_type": party.kind,
            }}
        result = await scope.db[self.COLLECTION].update_many(
            target.payment_fields(),
            update,
            session=scope.session
        )
        return result.modified_count

    async def latest_for_target(self, scope: TransactionScope, target: AnyTarget) -> Optional[Dict[str, Any]]:
        payments = await self.find_for_target(scope, target)
        if not payments:
            return None
        return max(payments, key=lambda p: (p.get("created_at") or datetime.min, str(p["_id"])))
