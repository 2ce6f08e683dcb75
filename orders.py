"""
Order repository: the order lifecycle on top of the document store.

Every operation is one load -> mutate -> save sequence. A save that loses
against a concurrent writer is retried from a fresh load, so a caller either
sees the whole change applied or gets an error with nothing persisted.
"""

from datetime import datetime
from typing import Any, Callable, List, Mapping, NamedTuple, Optional, TypeVar
from zoneinfo import ZoneInfo

import structlog
from pydantic import ValidationError as PydanticValidationError

from config import Settings
from errors import KitchenClosedError, NotFoundError, UpstreamError, ValidationError, WriteConflictError
from models import (
    COMPLETED_ORDERS_CAP,
    Document,
    Order,
    OrderCreate,
    OrderStatus,
    StatusUpdate,
    archive,
    format_order_id,
    format_timestamp,
    parse_timestamp,
)
from storage import DocumentStore

logger = structlog.get_logger()

T = TypeVar("T")


class StatusChange(NamedTuple):
    order: Order
    previous_status: OrderStatus


class KitchenStatus(NamedTuple):
    is_open: bool
    changed: bool
    previous: bool


def _describe(error: PydanticValidationError) -> str:
    fields = sorted({str(e["loc"][0]) for e in error.errors() if e.get("loc")})
    if any(e["type"] in ("missing", "value_error") for e in error.errors()):
        return f"Missing or invalid fields: {', '.join(fields)}"
    return f"Invalid fields: {', '.join(fields)}"


class OrderRepository:
    def __init__(
        self,
        store: DocumentStore,
        *,
        completed_cap: int = COMPLETED_ORDERS_CAP,
        write_retries: int = 3,
        enforce_kitchen_open: bool = False,
        timezone: str = "Pacific/Auckland",
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.completed_cap = completed_cap
        self.write_retries = write_retries
        self.enforce_kitchen_open = enforce_kitchen_open
        self.tz = ZoneInfo(timezone)
        self._clock = clock or (lambda: datetime.now(self.tz))

    @classmethod
    def from_settings(cls, store: DocumentStore, settings: Settings) -> "OrderRepository":
        return cls(
            store,
            completed_cap=settings.completed_orders_cap,
            write_retries=settings.write_retries,
            enforce_kitchen_open=settings.enforce_kitchen_open,
            timezone=settings.timezone,
        )

    def _now(self) -> datetime:
        return self._clock()

    async def _mutate(self, change: Callable[[Document], T]) -> T:
        for attempt in range(1, self.write_retries + 1):
            doc = await self.store.load()
            result = change(doc)
            try:
                await self.store.save(doc)
            except WriteConflictError:
                logger.warning("document_write_conflict", attempt=attempt)
                continue
            return result
        raise UpstreamError("Order data is busy, please try again")

    def _archive(self, doc: Document, finished: List[Order]):
        doc.completed_orders = archive(doc.completed_orders, finished, self.completed_cap)

    # Reads

    async def list_active(self) -> List[Order]:
        doc = await self.store.load()
        return doc.orders

    async def list_recent(self, limit: int = 10) -> List[dict]:
        """Active and completed orders, newest first, tagged with isActive"""
        doc = await self.store.load()
        now = self._now().replace(tzinfo=None)
        tagged = [dict(o.to_json(), isActive=True) for o in doc.orders]
        tagged += [dict(o.to_json(), isActive=False) for o in doc.completed_orders]
        tagged.sort(key=lambda o: parse_timestamp(o.get("timestamp"), now, self.tz), reverse=True)
        return tagged[:limit]

    async def kitchen_open(self) -> bool:
        doc = await self.store.load()
        return doc.kitchen_open

    # Writes

    async def create(self, payload: Mapping[str, Any]) -> Order:
        try:
            fields = OrderCreate.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_describe(e)) from e

        def change(doc: Document) -> Order:
            if self.enforce_kitchen_open and not doc.kitchen_open:
                raise KitchenClosedError("The kitchen is currently closed")
            order = Order(
                id=format_order_id(doc.next_order_id),
                food=fields.food,
                room=fields.room,
                name=fields.name,
                comments=fields.comments,
                timestamp=format_timestamp(self._now()),
                status=OrderStatus.PENDING,
            )
            doc.next_order_id += 1
            doc.orders.append(order)
            return order

        order = await self._mutate(change)
        logger.info("order_created", order_id=order.id, room=order.room)
        return order

    async def update_status(self, order_id: str, payload: Mapping[str, Any]) -> StatusChange:
        try:
            update = StatusUpdate.model_validate(payload)
        except PydanticValidationError as e:
            raise ValidationError(_describe(e)) from e

        def change(doc: Document) -> StatusChange:
            order = doc.find_active(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            previous = order.status
            if update.status.rank < previous.rank:
                raise ValidationError(
                    f"Cannot move order {order_id} from {previous.value} back to {update.status.value}"
                )
            order.status = update.status
            if order.is_completed:
                order.completed_at = update.completed_at or format_timestamp(self._now())
                doc.orders = [o for o in doc.orders if o.id != order_id]
                self._archive(doc, [order])
            return StatusChange(order, previous)

        result = await self._mutate(change)
        logger.info(
            "order_status_updated",
            order_id=order_id,
            previous=result.previous_status.value,
            status=result.order.status.value,
        )
        return result

    async def delete(self, order_id: str) -> Order:
        """Remove an active order for good; it is not archived"""

        def change(doc: Document) -> Order:
            order = doc.find_active(order_id)
            if order is None:
                raise NotFoundError(f"Order {order_id} not found")
            doc.orders = [o for o in doc.orders if o.id != order_id]
            return order

        order = await self._mutate(change)
        logger.info("order_deleted", order_id=order_id)
        return order

    async def clear_active(self) -> int:
        def change(doc: Document) -> int:
            stamp = format_timestamp(self._now())
            finished = doc.orders
            for order in finished:
                order.status = OrderStatus.COMPLETED
                order.completed_at = stamp
            doc.orders = []
            self._archive(doc, finished)
            return len(finished)

        count = await self._mutate(change)
        logger.info("orders_cleared", count=count)
        return count

    async def set_kitchen_open(self, is_open: bool) -> KitchenStatus:
        def change(doc: Document) -> KitchenStatus:
            previous = doc.kitchen_open
            doc.kitchen_open = is_open
            return KitchenStatus(is_open, previous != is_open, previous)

        result = await self._mutate(change)
        logger.info("kitchen_status_set", is_open=is_open, changed=result.changed)
        return result
