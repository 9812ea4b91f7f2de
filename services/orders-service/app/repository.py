from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ReturnDocument

from app.models import (
    CartDB, CartItemDB, OrderDB, OrderStatus, PaymentProvider, WebhookLogDB,
    to_document, to_money
)

PAID_STATUSES = [OrderStatus.PAID.value, OrderStatus.COMPLETED.value]


def _order_from_doc(doc: Optional[dict]) -> Optional[OrderDB]:
    if not doc:
        return None
    doc["_id"] = str(doc["_id"])
    return OrderDB(**doc)


class OrderStore:
    def __init__(self, collection):
        self.orders = collection

    async def create_indexes(self):
        await self.orders.create_index("order_id", unique=True)
        await self.orders.create_index([("user_id", 1), ("created_at", -1)])
        await self.orders.create_index("status")
        await self.orders.create_index([("payment_provider", 1), ("provider_ref.order_id", 1)])
        await self.orders.create_index("provider_ref.previous_order_ids")

    async def insert(self, order: OrderDB) -> OrderDB:
        res = await self.orders.insert_one(order.to_mongo())
        return _order_from_doc(await self.orders.find_one({"_id": res.inserted_id}))

    async def get(self, order_id: str) -> Optional[OrderDB]:
        return _order_from_doc(await self.orders.find_one({"order_id": order_id}))

    async def find_by_provider_ref(self, provider: PaymentProvider, provider_order_id: str) -> Optional[OrderDB]:
        # A retried order still answers to the provider orders it replaced
        doc = await self.orders.find_one({"$or": [
            {"payment_provider": provider.value, "provider_ref.order_id": provider_order_id},
            {"provider_ref.previous_order_ids": provider_order_id},
        ]})
        return _order_from_doc(doc)

    async def compare_and_set(
        self, order_id: str, expected: OrderStatus, updates: dict, push: Optional[dict] = None
    ) -> Optional[OrderDB]:
        """Apply `updates` only while the order is still in `expected` status.

        Returns the updated order, or None when another writer moved it first.
        """
        update = {"$set": to_document(updates)}
        if push:
            update["$push"] = to_document(push)
        doc = await self.orders.find_one_and_update(
            {"order_id": order_id, "status": expected.value},
            update,
            return_document=ReturnDocument.AFTER,
        )
        return _order_from_doc(doc)

    async def attach_provider_order(
        self,
        order_id: str,
        provider: PaymentProvider,
        provider_order_id: str,
        previous_order_id: Optional[str] = None,
    ) -> Optional[OrderDB]:
        # Only a still-pending order may get a (new) provider order
        push = {"provider_ref.previous_order_ids": previous_order_id} if previous_order_id else None
        return await self.compare_and_set(order_id, OrderStatus.PENDING, {
            "payment_provider": provider,
            "provider_ref.order_id": provider_order_id,
            "provider_ref.payment_id": None,
            "provider_ref.signature": None,
            "updated_at": datetime.utcnow(),
        }, push=push)

    async def record_client_payment(self, order_id: str, payment_id: str, signature: str) -> Optional[OrderDB]:
        doc = await self.orders.find_one_and_update(
            {"order_id": order_id, "status": OrderStatus.PENDING.value},
            {"$set": {
                "provider_ref.payment_id": payment_id,
                "provider_ref.signature": signature,
                "updated_at": datetime.utcnow(),
            }},
            return_document=ReturnDocument.AFTER,
        )
        return _order_from_doc(doc)

    async def find_page(self, query: dict, page: int, limit: int) -> Tuple[List[OrderDB], int]:
        skip = (page - 1) * limit
        total = await self.orders.count_documents(query)
        cursor = self.orders.find(query).sort("created_at", -1).skip(skip).limit(limit)
        orders = [_order_from_doc(doc) async for doc in cursor]
        return orders, total

    async def status_counts(self) -> Dict[str, int]:
        cursor = self.orders.aggregate([{"$group": {"_id": "$status", "count": {"$sum": 1}}}])
        return {row["_id"]: row["count"] async for row in cursor}

    async def stats(self, now: Optional[datetime] = None) -> dict:
        now = now or datetime.utcnow()
        start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
        start_of_week = start_of_day - timedelta(days=start_of_day.weekday())
        start_of_month = start_of_day.replace(day=1)

        total_orders = await self.orders.count_documents({})
        today_orders = await self.orders.count_documents({"created_at": {"$gte": start_of_day}})
        week_orders = await self.orders.count_documents({"created_at": {"$gte": start_of_week}})
        month_orders = await self.orders.count_documents({"created_at": {"$gte": start_of_month}})

        revenue_rows = await self.orders.aggregate([
            {"$match": {"status": {"$in": PAID_STATUSES}}},
            {"$group": {
                "_id": None,
                "total_revenue": {"$sum": "$total_amount"},
                "avg_order_value": {"$avg": "$total_amount"},
                "total_paid_orders": {"$sum": 1},
            }},
        ]).to_list(length=1)
        revenue = revenue_rows[0] if revenue_rows else {}

        top_products = await self.orders.aggregate([
            {"$match": {"status": {"$in": PAID_STATUSES}}},
            {"$unwind": "$items"},
            {"$group": {
                "_id": "$items.product_id",
                "title": {"$first": "$items.title"},
                "total_quantity_sold": {"$sum": "$items.qty"},
                "total_revenue": {"$sum": "$items.subtotal"},
            }},
            {"$sort": {"total_quantity_sold": -1}},
            {"$limit": 10},
        ]).to_list(length=10)

        return {
            "total_orders": total_orders,
            "today_orders": today_orders,
            "week_orders": week_orders,
            "month_orders": month_orders,
            "status_breakdown": await self.status_counts(),
            "total_revenue": to_money(revenue.get("total_revenue") or 0),
            "average_order_value": to_money(revenue.get("avg_order_value") or 0),
            "total_paid_orders": revenue.get("total_paid_orders", 0),
            "top_products": [
                {
                    "product_id": row["_id"],
                    "title": row.get("title"),
                    "total_quantity_sold": row["total_quantity_sold"],
                    "total_revenue": to_money(row["total_revenue"]),
                }
                for row in top_products
            ],
        }


class CartStore:
    def __init__(self, collection):
        self.carts = collection

    async def create_indexes(self):
        await self.carts.create_index("user_id", unique=True)

    async def get(self, user_id: str) -> CartDB:
        doc = await self.carts.find_one({"user_id": user_id})
        if not doc:
            return CartDB(user_id=user_id, items=[])
        doc["_id"] = str(doc["_id"])
        return CartDB(**doc)

    async def save_items(self, user_id: str, items: List[CartItemDB]) -> CartDB:
        total = sum((item.subtotal for item in items), to_money(0))
        await self.carts.update_one(
            {"user_id": user_id},
            {"$set": {
                "items": to_document([item.model_dump() for item in items]),
                "total": float(total),
                "updated_at": datetime.utcnow(),
            }},
            upsert=True,
        )
        return await self.get(user_id)

    async def clear(self, user_id: str) -> None:
        await self.carts.update_one(
            {"user_id": user_id},
            {"$set": {"items": [], "total": 0.0, "updated_at": datetime.utcnow()}},
        )


class WebhookLogStore:
    def __init__(self, collection):
        self.logs = collection

    async def create_indexes(self):
        await self.logs.create_index([("provider", 1), ("created_at", -1)])
        await self.logs.create_index("order_id")

    async def create(self, log: WebhookLogDB) -> str:
        res = await self.logs.insert_one(log.to_mongo())
        return str(res.inserted_id)

    async def update(self, log_id: str, **fields) -> None:
        await self.logs.update_one({"_id": ObjectId(log_id)}, {"$set": to_document(fields)})

    async def get(self, log_id: str) -> Optional[WebhookLogDB]:
        doc = await self.logs.find_one({"_id": ObjectId(log_id)})
        if not doc:
            return None
        doc["_id"] = str(doc["_id"])
        return WebhookLogDB(**doc)
