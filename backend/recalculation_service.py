"""
RECALCULATION SERVICE

Repair path for derived balances. Unlike the incremental updates applied on
every payment mutation, this service trusts nothing cached:

1. Target: total_paid = Σ amount of every live payment for the target,
   then status and remaining amount are re-derived and persisted.
2. Party: outstanding balance = Σ remaining amount over the party's
   non-cancelled targets.

Each target (or party) is repaired in its own transaction; batch runs
tolerate and count individual failures. Running twice in a row with no
intervening payment changes produces identical results.

Usage:
    service = RecalculationService(transactions, aggregator, db)
    report = await service.recalculate_all("sale")
"""

from motor.motor_asyncio import AsyncIOMotorDatabase
from typing import Any, Dict, List, Tuple
import logging

from ledger.balance_aggregator import BalanceAggregator, contribution
from ledger.errors import ValidationError
from ledger.precision import ZERO, round_financial, to_decimal, to_decimal128, to_float
from ledger.references import (
    RECALCULABLE_TARGET_TYPES, make_party, make_target, parse_object_id, procurement_collection
)
from ledger.transaction import AuditAction, TransactionCoordinator, TransactionScope

logger = logging.getLogger(__name__)

TARGET_COLLECTIONS = {
    "sale": "sales",
    "asset": "assets",
    "raw_material_procurement": procurement_collection("raw_material"),
    "trading_good_procurement": procurement_collection("trading_good"),
}

# (target_type, owner field) pairs a party's balance is made of
PARTY_SOURCES: Dict[str, List[Tuple[str, str]]] = {
    "client": [("sale", "client_id")],
    "vendor": [
        ("asset", "vendor_id"),
        ("raw_material_procurement", "vendor_id"),
        ("trading_good_procurement", "vendor_id"),
    ],
}

PARTY_COLLECTIONS = {"client": "clients", "vendor": "vendors"}


class RecalculationService:

    def __init__(
        self,
        transactions: TransactionCoordinator,
        aggregator: BalanceAggregator,
        db: AsyncIOMotorDatabase
    ):
        self.transactions = transactions
        self.aggregator = aggregator
        self.db = db

    # =========================================================================
    # TARGETS
    # =========================================================================

    async def recalculate_target(self, target_type: str, target_id: Any) -> Dict[str, Any]:
        """Recompute one target from its payments (ground truth)"""
        target = make_target(target_type, target_id)

        async def mutation(scope: TransactionScope):
            change = await self.aggregator.recompute_exact(scope, target)
            if change.before != change.after:
                logger.warning(
                    f"[RECALC] Drift corrected on {target.entity_type} {target.target_id}: "
                    f"total_paid {change.before.total_paid} -> {change.after.total_paid}, "
                    f"party_delta={change.party_delta}"
                )
                scope.audit(
                    AuditAction.UPDATE, target.entity_type, target.target_id,
                    old_value=change.before.to_document(),
                    new_value=change.after.to_document(),
                    details="Recalculated from payments"
                )
            return {
                "target_type": target_type,
                "target_id": target.target_id,
                "changed": change.before != change.after,
                "party_delta": to_float(change.party_delta),
                **change.after.to_response(),
            }

        return await self.transactions.run(mutation, label=f"recalculate.{target_type}")

    async def recalculate_all(self, target_type: str) -> Dict[str, int]:
        """Recompute every target of a kind. Returns {total, updated}."""
        if target_type not in TARGET_COLLECTIONS:
            raise ValidationError(
                f"Unknown target type: {target_type}",
                details={"allowed": list(RECALCULABLE_TARGET_TYPES)}
            )

        ids = [doc["_id"] async for doc in self.db[TARGET_COLLECTIONS[target_type]].find({}, {"_id": 1})]
        updated = 0
        for target_id in ids:
            try:
                await self.recalculate_target(target_type, target_id)
                updated += 1
            except Exception as e:
                logger.error(f"[RECALC] Failed to recalculate {target_type} {target_id}: {e}")

        logger.info(f"[RECALC] {target_type}: {updated}/{len(ids)} targets recalculated")
        return {"total": len(ids), "updated": updated}

    # =========================================================================
    # PARTIES
    # =========================================================================

    async def recalculate_party(self, party_type: str, party_id: Any) -> Dict[str, Any]:
        """Recompute a party's outstanding balance from its live targets"""
        party = make_party(party_type, party_id)

        async def mutation(scope: TransactionScope):
            document = await self.aggregator.ensure_party(scope, party)
            oid = parse_object_id(party.party_id, party.entity_type)

            outstanding = ZERO
            for target_type, owner_field in PARTY_SOURCES[party.kind]:
                cursor = scope.db[TARGET_COLLECTIONS[target_type]].find({owner_field: oid}, session=scope.session)
                async for doc in cursor:
                    target = make_target(target_type, doc["_id"])
                    outstanding += contribution(doc, self.aggregator.status_of(target, doc))
            outstanding = round_financial(outstanding)

            previous = round_financial(to_decimal(document.get(party.balance_field, 0)))
            if previous != outstanding:
                await scope.db[party.collection].update_one(
                    {"_id": oid},
                    {"$set": {party.balance_field: to_decimal128(outstanding)}},
                    session=scope.session
                )
                logger.warning(
                    f"[RECALC] Drift corrected on {party.entity_type} {party.party_id}: "
                    f"{party.balance_field} {previous} -> {outstanding}"
                )
                scope.audit(
                    AuditAction.UPDATE, party.entity_type, party.party_id,
                    old_value={party.balance_field: to_decimal128(previous)},
                    new_value={party.balance_field: to_decimal128(outstanding)},
                    details="Recalculated from targets"
                )
                scope.invalidate(party.resource_path)

            return {
                "party_type": party.kind,
                "party_id": party.party_id,
                "previous": to_float(previous),
                party.balance_field: to_float(outstanding),
                "changed": previous != outstanding,
            }

        return await self.transactions.run(mutation, label=f"recalculate.{party_type}")

    async def recalculate_all_parties(self, party_type: str) -> Dict[str, int]:
        if party_type not in PARTY_COLLECTIONS:
            raise ValidationError(f"Unknown party type: {party_type}", details={"allowed": list(PARTY_COLLECTIONS)})

        ids = [doc["_id"] async for doc in self.db[PARTY_COLLECTIONS[party_type]].find({}, {"_id": 1})]
        updated = 0
        for party_id in ids:
            try:
                await self.recalculate_party(party_type, party_id)
                updated += 1
            except Exception as e:
                logger.error(f"[RECALC] Failed to recalculate {party_type} {party_id}: {e}")

        logger.info(f"[RECALC] {party_type}: {updated}/{len(ids)} parties recalculated")
        return {"total": len(ids), "updated": updated}
