"""
Inventory adjustment interface consulted by Sale and Procurement services.

Only stock quantities and weighted average cost are touched here; all
calls run inside the caller's transaction scope.
"""

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List
import logging

from ledger.errors import NotFoundError, ValidationError
from ledger.precision import ZERO, round_financial, to_decimal, to_decimal128, validate_positive
from ledger.references import parse_object_id
from ledger.transaction import TransactionScope

logger = logging.getLogger(__name__)

INVENTORY_COLLECTIONS = {
    "raw_material": "raw_materials",
    "trading_good": "trading_goods",
    "finished_good": "finished_goods",
}

ENTITY_NAMES = {
    "raw_material": "RawMaterial",
    "trading_good": "TradingGood",
    "finished_good": "FinishedGood",
}


def stock_line(item_id: Any, item_type: str, quantity: Any, unit_price: Any = None) -> Dict[str, Any]:
    """Normalized line used by every inventory call"""
    return {
        "item_id": str(item_id),
        "item_type": item_type,
        "quantity": to_decimal(quantity),
        "unit_price": to_decimal(unit_price) if unit_price is not None else None,
    }


class InventoryService:

    def _collection(self, scope: TransactionScope, item_type: str):
        if item_type not in INVENTORY_COLLECTIONS:
            raise ValidationError(f"Unknown inventory item type: {item_type}")
        return scope.db[INVENTORY_COLLECTIONS[item_type]]

    async def _find(self, scope: TransactionScope, line: Dict[str, Any]):
        oid = parse_object_id(line["item_id"], ENTITY_NAMES.get(line["item_type"], "InventoryItem"))
        return await self._collection(scope, line["item_type"]).find_one({"_id": oid}, session=scope.session)

    async def _inc_stock(self, scope: TransactionScope, item: Dict[str, Any], item_type: str, quantity: Decimal):
        await self._collection(scope, item_type).update_one(
            {"_id": item["_id"]},
            {
                "$inc": {"current_stock": to_decimal128(quantity)},
                "$set": {"updated_at": datetime.utcnow()}
            },
            session=scope.session
        )

    async def reserve(self, scope: TransactionScope, lines: Iterable[Dict[str, Any]]):
        """Check availability for every line first, then deduct stock."""
        lines = list(lines)
        found: List[Dict[str, Any]] = []
        # Lines repeating an item draw on the same stock
        requested: Dict[tuple, Decimal] = {}
        for line in lines:
            validate_positive(line["quantity"], "quantity")
            item = await self._find(scope, line)
            if not item:
                raise NotFoundError(ENTITY_NAMES.get(line["item_type"], "InventoryItem"), line["item_id"])
            key = (line["item_type"], item["_id"])
            requested[key] = requested.get(key, ZERO) + line["quantity"]
            available = to_decimal(item.get("current_stock", 0))
            if available < requested[key]:
                raise ValidationError(
                    f"Insufficient stock for {item.get('name', line['item_id'])}. "
                    f"Available: {available}, Requested: {requested[key]}",
                    details={"item_id": line["item_id"], "available": str(available), "requested": str(requested[key])}
                )
            found.append(item)

        for line, item in zip(lines, found):
            await self._inc_stock(scope, item, line["item_type"], -line["quantity"])
            logger.info(f"[INVENTORY] Reserved {line['quantity']} of {line['item_type']} {line['item_id']}")
        scope.invalidate("inventory")

    async def release(self, scope: TransactionScope, lines: Iterable[Dict[str, Any]]):
        """Return previously reserved stock."""
        for line in lines:
            item = await self._find(scope, line)
            if not item:
                logger.warning(f"[INVENTORY] Cannot release stock, item not found: {line['item_type']} {line['item_id']}")
                continue
            await self._inc_stock(scope, item, line["item_type"], line["quantity"])
            logger.info(f"[INVENTORY] Released {line['quantity']} of {line['item_type']} {line['item_id']}")
        scope.invalidate("inventory")

    async def receive(self, scope: TransactionScope, lines: Iterable[Dict[str, Any]], received_date: datetime):
        """Add procured stock and fold its unit cost into the weighted average cost."""
        for line in lines:
            item = await self._find(scope, line)
            if not item:
                logger.warning(f"[INVENTORY] Item not found on receipt: {line['item_type']} {line['item_id']}")
                continue

            previous_stock = to_decimal(item.get("current_stock", 0))
            previous_cost = to_decimal(item.get("cost_price", 0))
            quantity = line["quantity"]
            unit_cost = line["unit_price"] if line["unit_price"] is not None else previous_cost

            total_quantity = previous_stock + quantity
            if total_quantity > ZERO:
                new_cost = (previous_stock * previous_cost + quantity * unit_cost) / total_quantity
            else:
                new_cost = unit_cost

            await self._collection(scope, line["item_type"]).update_one(
                {"_id": item["_id"]},
                {"$set": {
                    "current_stock": to_decimal128(total_quantity),
                    "cost_price": to_decimal128(new_cost),
                    "last_procurement_date": received_date,
                    "updated_at": datetime.utcnow()
                }},
                session=scope.session
            )
            logger.info(
                f"[INVENTORY] Received {line['item_type']} {item.get('name', line['item_id'])}. "
                f"Stock: {previous_stock} -> {total_quantity}, Cost: {round_financial(previous_cost)} -> {round_financial(new_cost)}"
            )
        scope.invalidate("inventory")

    async def reverse_receipt(self, scope: TransactionScope, lines: Iterable[Dict[str, Any]]):
        """
        Undo a receipt. Stock is clamped at 0; the previous average cost is
        recovered from old_cost = (cost * stock - qty * unit_cost) / (stock - qty)
        and kept unchanged when that is not a positive finite value.
        """
        for line in lines:
            item = await self._find(scope, line)
            if not item:
                continue

            current_stock = to_decimal(item.get("current_stock", 0))
            current_cost = to_decimal(item.get("cost_price", 0))
            quantity = line["quantity"]
            unit_cost = line["unit_price"] if line["unit_price"] is not None else current_cost
            previous_stock = current_stock - quantity

            set_fields: Dict[str, Any] = {
                "current_stock": to_decimal128(max(previous_stock, ZERO)),
                "updated_at": datetime.utcnow()
            }
            if previous_stock > ZERO:
                previous_cost = (current_cost * current_stock - quantity * unit_cost) / previous_stock
                if previous_cost > ZERO:
                    set_fields["cost_price"] = to_decimal128(previous_cost)
                else:
                    logger.warning(f"[INVENTORY] Could not reverse cost for {item.get('name', line['item_id'])}. Keeping current cost.")

            await self._collection(scope, line["item_type"]).update_one(
                {"_id": item["_id"]},
                {"$set": set_fields},
                session=scope.session
            )
            logger.info(f"[INVENTORY] Reversed receipt {line['item_type']} {line['item_id']}: {current_stock} -> {max(previous_stock, ZERO)}")
        scope.invalidate("inventory")
