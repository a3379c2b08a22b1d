"""
Order and payment lifecycle.

An order moves through these states (status/payment_status):

    CREATED          pending/pending
    AWAITING_PAYMENT pending/pending, payment_intent_id set
    PAID             processing/succeeded   (sticky)
    PAYMENT_FAILED   pending/failed         (customer may retry)
    CANCELLED        cancelled/*

Every transition is a single conditional ``update_one`` on the order document,
so the client-confirmation path and the webhook path can both try to settle
the same order, in any order and any number of times, without one undoing
the other. Failures and cancellations are matched against the intent the
order currently points at, so events from an intent replaced by a retry are
ignored.
"""
import logging
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.database import Database

from cart import Cart
from database import create_document, to_object_id, utcnow
from errors import (
    BookNotFoundError,
    InsufficientStockError,
    OrderNotFoundError,
    OrderStateError,
    PaymentProviderError,
    ValidationError,
)
from payments import PaymentEvent, PaymentEventKind, PaymentIntent
from schemas import (
    Order,
    OrderItem,
    OrderItemOut,
    OrderOut,
    OrderStatus,
    PaymentStatus,
    ShippingAddress,
)

logger = logging.getLogger(__name__)

PENDING = OrderStatus.PENDING.value
PROCESSING = OrderStatus.PROCESSING.value
CANCELLED = OrderStatus.CANCELLED.value

CANCELLABLE_STATUSES = [PENDING, PROCESSING]


class OrderService:
    def __init__(self, db: Database, gateway=None):
        self.db = db
        self.gateway = gateway

    # ------------------------------------------------------------------
    # Reads

    def get_order(self, order_id: str, user_id: Optional[str] = None) -> OrderOut:
        return self._order_out(self._find_order(order_id, user_id))

    def list_orders(self, user_id: Optional[str] = None) -> List[OrderOut]:
        query = {"user_id": user_id} if user_id else {}
        cursor = self.db["order"].find(query).sort([("created_at", -1)])
        return [self._order_out(doc) for doc in cursor]

    def _find_order(self, order_id: str, user_id: Optional[str] = None) -> dict:
        oid = to_object_id(order_id)
        doc = self.db["order"].find_one({"_id": oid}) if oid else None
        # Other users' orders are reported as missing.
        if doc is None or (user_id is not None and doc.get("user_id") != user_id):
            raise OrderNotFoundError(order_id)
        return doc

    def _order_out(self, doc: dict) -> OrderOut:
        order_id = str(doc["_id"])
        items = list(self.db["order_item"].find({"order_id": order_id}))
        book_oids = [o for o in (to_object_id(i["book_id"]) for i in items) if o]
        books = {str(b["_id"]): b for b in self.db["book"].find({"_id": {"$in": book_oids}})}
        item_models = []
        for item in items:
            book = books.get(item["book_id"], {})
            item_models.append(
                OrderItemOut(
                    id=str(item["_id"]),
                    order_id=order_id,
                    book_id=item["book_id"],
                    quantity=item["quantity"],
                    price=item["price"],
                    title=book.get("title"),
                    cover_image=book.get("cover_image"),
                    created_at=item.get("created_at"),
                )
            )
        data = {k: v for k, v in doc.items() if k != "_id"}
        return OrderOut(id=order_id, items=item_models, **data)

    # ------------------------------------------------------------------
    # Placing an order

    def place_order(self, user_id: str, cart: Cart, shipping: ShippingAddress) -> OrderOut:
        """Reserve stock, write the order and its items, or write nothing.

        Steps run in order and each completed step is undone if a later one
        fails: stock decrements are restored and the order row (with any items
        already written) is deleted.
        """
        if len(cart) == 0:
            raise ValidationError("Cart is empty")

        lines = cart.lines()
        books = self._load_books([line.book_id for line in lines])
        for line in lines:
            available = books[line.book_id].get("stock", 0)
            if available < line.quantity:
                raise InsufficientStockError(line.book_id, line.quantity, available)

        prices = {book_id: book["price"] for book_id, book in books.items()}
        total = cart.total_price(prices)
        if total <= 0:
            raise ValidationError("Order total must be positive")

        reserved: List[Tuple[ObjectId, int]] = []
        order_oid: Optional[ObjectId] = None
        try:
            for line in lines:
                book = books[line.book_id]
                self._reserve_stock(book, line.quantity)
                reserved.append((book["_id"], line.quantity))

            order = Order(user_id=user_id, total_amount=total, **shipping.model_dump())
            order_id = create_document(self.db, "order", order)
            order_oid = ObjectId(order_id)

            now = utcnow()
            items = [
                OrderItem(order_id=order_id, book_id=line.book_id, quantity=line.quantity, price=prices[line.book_id])
                for line in lines
            ]
            self.db["order_item"].insert_many([{**i.model_dump(), "created_at": now} for i in items])
        except Exception:
            logger.warning("Order placement for user %s failed, rolling back", user_id)
            self._roll_back(order_oid, reserved)
            raise

        logger.info("Placed order %s for user %s: %d line(s), total %d", order_id, user_id, len(items), total)
        return self.get_order(order_id)

    def _load_books(self, book_ids: List[str]) -> Dict[str, dict]:
        books = {}
        for book_id in book_ids:
            oid = to_object_id(book_id)
            book = self.db["book"].find_one({"_id": oid}) if oid else None
            if book is None:
                raise BookNotFoundError(book_id)
            books[book_id] = book
        return books

    def _reserve_stock(self, book: dict, quantity: int) -> None:
        result = self.db["book"].update_one(
            {"_id": book["_id"], "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}},
        )
        if result.modified_count == 0:
            current = self.db["book"].find_one({"_id": book["_id"]}) or {}
            raise InsufficientStockError(str(book["_id"]), quantity, current.get("stock", 0))

    def _roll_back(self, order_oid: Optional[ObjectId], reserved: List[Tuple[ObjectId, int]]) -> None:
        if order_oid is not None:
            self.db["order_item"].delete_many({"order_id": str(order_oid)})
            self.db["order"].delete_one({"_id": order_oid})
        for book_oid, quantity in reversed(reserved):
            self.db["book"].update_one({"_id": book_oid}, {"$inc": {"stock": quantity}})

    def _release_stock(self, order_oid: ObjectId) -> None:
        """Return an order's quantities to the catalog, at most once per order."""
        claimed = self.db["order"].update_one(
            {"_id": order_oid, "stock_released": {"$ne": True}},
            {"$set": {"stock_released": True}},
        )
        if claimed.modified_count == 0:
            return
        for item in self.db["order_item"].find({"order_id": str(order_oid)}):
            book_oid = to_object_id(item["book_id"])
            if book_oid:
                self.db["book"].update_one({"_id": book_oid}, {"$inc": {"stock": item["quantity"]}})
        logger.info("Released stock for order %s", order_oid)

    # ------------------------------------------------------------------
    # Payment

    def request_payment_intent(self, user_id: str, order_id: str, amount: Optional[int]) -> PaymentIntent:
        """Return a confirmable intent for the order, reusing a live one if present."""
        if amount is None or amount <= 0:
            raise ValidationError("Invalid amount")

        order = self._find_order(order_id, user_id)
        if order["payment_status"] == PaymentStatus.SUCCEEDED.value or order["status"] != PENDING:
            raise OrderStateError(order_id, order["status"], "pay for")
        if amount != order["total_amount"]:
            raise ValidationError("Amount does not match order total")

        existing_id = order.get("payment_intent_id")
        if existing_id:
            intent = self.gateway.retrieve_payment_intent(existing_id)
            if intent.is_live:
                return intent
            if intent.status == "succeeded":
                self.mark_paid(order_id, intent.id)
                raise OrderStateError(order_id, PROCESSING, "pay for")

        attempt = order.get("payment_attempts", 0) + 1
        intent = self.gateway.create_payment_intent(amount, order_id, f"order-{order_id}-{attempt}")
        self.db["order"].update_one(
            {"_id": order["_id"], "payment_intent_id": existing_id},
            {"$set": {"payment_intent_id": intent.id, "payment_attempts": attempt, "updated_at": utcnow()}},
        )
        logger.info("Created payment intent %s for order %s (attempt %d)", intent.id, order_id, attempt)
        return intent

    def checkout(
        self, user_id: str, cart: Cart, shipping: ShippingAddress
    ) -> Tuple[OrderOut, Optional[PaymentIntent], Optional[str]]:
        """Place the order and ask for a payment intent.

        A failed intent request does not undo the order; the caller gets the
        order back with the error and retries the intent for the same order.
        """
        order = self.place_order(user_id, cart, shipping)
        try:
            intent = self.request_payment_intent(user_id, order.id, order.total_amount)
        except PaymentProviderError as e:
            logger.warning("Order %s placed but payment intent failed: %s", order.id, e)
            return order, None, str(e)
        return self.get_order(order.id), intent, None

    def confirm_payment(self, user_id: str, order_id: str) -> OrderOut:
        order = self._find_order(order_id, user_id)
        intent_id = order.get("payment_intent_id")
        if not intent_id:
            raise OrderStateError(order_id, order["status"], "confirm payment for")
        self.apply_intent_status(order_id, self.gateway.retrieve_payment_intent(intent_id))
        return self.get_order(order_id)

    def apply_intent_status(self, order_id: str, intent: PaymentIntent) -> bool:
        if intent.status == "succeeded":
            return self.mark_paid(order_id, intent.id)
        if intent.status == "canceled":
            return self.mark_canceled(order_id, intent.id)
        if intent.status == "requires_payment_method" and intent.last_payment_error:
            return self.mark_failed(order_id, intent.id)
        return False

    def handle_event(self, event: PaymentEvent) -> bool:
        """Apply a verified provider event. Returns True if the order changed."""
        if event.kind is PaymentEventKind.IGNORED:
            logger.info("Unhandled event type: %s", event.type)
            return False
        if self.db["payment_event"].find_one({"_id": event.id}):
            logger.info("Event %s already processed", event.id)
            return False
        oid = to_object_id(event.order_id) if event.order_id else None
        if oid is None or self.db["order"].find_one({"_id": oid}) is None:
            logger.warning("Event %s (%s) references unknown order %r", event.id, event.type, event.order_id)
            return False

        transitions = {
            PaymentEventKind.SUCCEEDED: self.mark_paid,
            PaymentEventKind.FAILED: self.mark_failed,
            PaymentEventKind.CANCELED: self.mark_canceled,
        }
        changed = transitions[event.kind](event.order_id, event.intent_id)
        self.db["payment_event"].update_one(
            {"_id": event.id},
            {"$setOnInsert": {"type": event.type, "order_id": event.order_id, "received_at": utcnow()}},
            upsert=True,
        )
        return changed

    def mark_paid(self, order_id: str, intent_id: Optional[str]) -> bool:
        """Record a successful charge. Any intent that succeeded pays the order."""
        changes = {"status": PROCESSING, "payment_status": PaymentStatus.SUCCEEDED.value}
        if intent_id:
            changes["payment_intent_id"] = intent_id
        changed = self._transition(
            order_id,
            {"status": {"$in": CANCELLABLE_STATUSES}, "payment_status": {"$ne": PaymentStatus.SUCCEEDED.value}},
            changes,
        )
        if changed:
            logger.info("Order %s marked as paid", order_id)
        return changed

    def mark_failed(self, order_id: str, intent_id: Optional[str]) -> bool:
        changed = self._transition(
            order_id,
            {
                "status": PENDING,
                "payment_status": {"$in": [PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]},
                **self._current_intent(intent_id),
            },
            {"payment_status": PaymentStatus.FAILED.value},
        )
        if changed:
            logger.info("Payment failed for order %s", order_id)
        return changed

    def mark_canceled(self, order_id: str, intent_id: Optional[str]) -> bool:
        changed = self._transition(
            order_id,
            {
                "payment_status": {"$nin": [PaymentStatus.SUCCEEDED.value, PaymentStatus.CANCELED.value]},
                **self._current_intent(intent_id),
            },
            {"status": CANCELLED, "payment_status": PaymentStatus.CANCELED.value},
        )
        if changed:
            self._release_stock(ObjectId(order_id))
            logger.info("Payment canceled for order %s", order_id)
        return changed

    @staticmethod
    def _current_intent(intent_id: Optional[str]) -> dict:
        # Failures and cancellations only count for the intent the order is
        # waiting on; a superseded intent has been replaced by a retry.
        return {"payment_intent_id": {"$in": [intent_id, None]}}

    def _transition(self, order_id: str, guard: dict, changes: dict) -> bool:
        oid = to_object_id(order_id)
        if oid is None:
            raise OrderNotFoundError(order_id)
        result = self.db["order"].update_one(
            {"_id": oid, **guard},
            {"$set": {**changes, "updated_at": utcnow()}},
        )
        return result.modified_count > 0

    # ------------------------------------------------------------------
    # Status changes

    def cancel_order(self, user_id: str, order_id: str) -> OrderOut:
        """Customer cancellation, allowed from pending or processing only.

        For a pending order the live intent is canceled at the provider first.
        An intent that already succeeded is recorded as payment before the
        order is cancelled.
        """
        order = self._find_order(order_id, user_id)
        if order["status"] not in CANCELLABLE_STATUSES:
            raise OrderStateError(order_id, order["status"], "cancel")

        intent_id = order.get("payment_intent_id")
        if order["status"] == PENDING and intent_id and self.gateway is not None:
            intent = self.gateway.retrieve_payment_intent(intent_id)
            if intent.status == "succeeded":
                self.mark_paid(order_id, intent.id)
            elif intent.status != "canceled":
                self.gateway.cancel_payment_intent(intent_id)

        result = self.db["order"].update_one(
            {"_id": order["_id"], "status": {"$in": CANCELLABLE_STATUSES}},
            {"$set": {"status": CANCELLED, "updated_at": utcnow()}},
        )
        if result.modified_count == 0:
            current = self._find_order(order_id)
            raise OrderStateError(order_id, current["status"], "cancel")

        self._release_stock(order["_id"])
        logger.info("Order %s cancelled by customer %s", order_id, user_id)
        return self.get_order(order_id)

    def set_status(self, order_id: str, status: OrderStatus) -> OrderOut:
        """Admin override: any status may be set from any status."""
        order = self._find_order(order_id)
        self.db["order"].update_one(
            {"_id": order["_id"]},
            {"$set": {"status": status.value, "updated_at": utcnow()}},
        )
        if status is OrderStatus.CANCELLED:
            self._release_stock(order["_id"])
        logger.info("Order %s status set to %s by admin", order_id, status.value)
        return self.get_order(order_id)
