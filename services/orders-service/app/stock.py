"""
Stock ledger over the shared ``products`` collection.

Every mutation is a single-document ``$inc``. Decrements are guarded by a
``stock >= qty`` filter so a counter can never go below zero, even when two
checkouts race on the last unit.
"""
import logging
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from bson import ObjectId
from pydantic import BaseModel

from app.errors import StockValidationFailed
from app.models import OrderDB, to_money
from app.schemas import StockIssue

logger = logging.getLogger("orders-service.stock")

StockLine = Tuple[str, int]


class ProductStock(BaseModel):
    id: str
    title: str
    price: Decimal
    stock: int
    is_active: bool = True


def product_key(product_id: str):
    return ObjectId(product_id) if ObjectId.is_valid(product_id) else product_id


class StockLedger:
    def __init__(self, collection):
        self.products = collection

    async def get_product(self, product_id: str) -> Optional[ProductStock]:
        doc = await self.products.find_one({"_id": product_key(product_id)})
        if not doc:
            return None
        return ProductStock(
            id=str(doc["_id"]),
            title=doc.get("title", ""),
            price=to_money(doc.get("price", 0)),
            stock=int(doc.get("stock", 0)),
            is_active=doc.get("is_active", True),
        )

    async def current_stock(self, product_id: str) -> Optional[int]:
        doc = await self.products.find_one({"_id": product_key(product_id)}, {"stock": 1})
        return int(doc["stock"]) if doc else None

    async def decrement_stock(self, product_id: str, qty: int) -> bool:
        result = await self.products.update_one(
            {"_id": product_key(product_id), "stock": {"$gte": qty}},
            {"$inc": {"stock": -qty}},
        )
        return result.modified_count == 1

    async def increment_stock(self, product_id: str, qty: int) -> bool:
        result = await self.products.update_one(
            {"_id": product_key(product_id)},
            {"$inc": {"stock": qty}},
        )
        return result.modified_count == 1

    async def reserve(self, lines: Iterable[StockLine]) -> None:
        """Decrement every line or none of them.

        Lines already applied are released when a later line loses the race.
        """
        reserved: List[StockLine] = []
        for product_id, qty in lines:
            if await self.decrement_stock(product_id, qty):
                reserved.append((product_id, qty))
                continue

            await self.release(reserved)
            available = await self.current_stock(product_id)
            issue = (
                f"Only {available} items available"
                if available is not None else "Product not available"
            )
            logger.warning(
                "Stock reservation lost a race",
                extra={"product_id": product_id},
            )
            raise StockValidationFailed([
                StockIssue(product_id=product_id, issue=issue, available_stock=available)
            ])

    async def release(self, lines: Iterable[StockLine]) -> List[str]:
        """Best-effort increment of every line; returns the product ids that failed."""
        failed = []
        for product_id, qty in lines:
            try:
                if not await self.increment_stock(product_id, qty):
                    failed.append(product_id)
            except Exception:
                logger.exception("Stock increment failed", extra={"product_id": product_id})
                failed.append(product_id)

        if failed:
            logger.error(
                f"Stock release incomplete for products {failed}",
            )
        return failed

    async def restore_order_stock(self, order: OrderDB) -> bool:
        failed = await self.release((item.product_id, item.qty) for item in order.items)
        if failed:
            logger.error(
                "Stock restore needs manual follow-up",
                extra={"order_id": order.order_id},
            )
            return False

        logger.info("Stock restored for cancelled order", extra={"order_id": order.order_id})
        return True
