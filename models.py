"""
Order and Document schemas.

The whole deployment shares one JSON document::

    {"orders": [...], "completedOrders": [...], "kitchenOpen": false, "nextOrderId": 1}

Loading is lenient: unknown keys are dropped and wrong-typed values fall back
to safe defaults so a hand-edited or half-written document never takes the
service down.
"""

from datetime import datetime
from enum import Enum
from typing import Any, List, Optional
from zoneinfo import ZoneInfo

import structlog
from pydantic import BaseModel, ConfigDict, Field, PrivateAttr, ValidationInfo, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError

logger = structlog.get_logger()

TIMESTAMP_FORMAT = "%d/%m/%Y, %H:%M:%S"
ORDER_ID_WIDTH = 3
COMPLETED_ORDERS_CAP = 50


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    BEING_MADE = "being-made"
    BEING_DELIVERED = "being-delivered"
    COMPLETED = "completed"

    @property
    def rank(self) -> int:
        return STATUS_FLOW.index(self)


STATUS_FLOW = list(OrderStatus)


def format_order_id(number: int) -> str:
    return str(number).zfill(ORDER_ID_WIDTH)


def format_timestamp(moment: datetime) -> str:
    return moment.strftime(TIMESTAMP_FORMAT)


def archive(completed: List["Order"], finished: List["Order"], cap: int = COMPLETED_ORDERS_CAP) -> List["Order"]:
    """Append finished orders, dropping the oldest by insertion once over ``cap``"""
    return (completed + finished)[-cap:]


def parse_timestamp(value: Any, fallback: datetime, tz: ZoneInfo) -> datetime:
    """
    Parse a stored order timestamp into a naive local datetime.

    Accepts the display format written by the service and ISO 8601 (older
    documents). Anything else yields ``fallback``.
    """
    if not isinstance(value, str) or not value:
        return fallback
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT)
    except ValueError:
        pass
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return fallback
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(tz).replace(tzinfo=None)
    return parsed


class Order(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: str
    food: str
    room: str
    name: str
    comments: str = ""
    timestamp: str = ""
    status: OrderStatus = OrderStatus.PENDING
    completed_at: Optional[str] = Field(None, alias="completedAt")

    @field_validator("id", mode="before")
    @classmethod
    def pad_numeric_id(cls, v):
        if isinstance(v, int) and not isinstance(v, bool):
            return format_order_id(v)
        return v

    @field_validator("food", "room", "name", "comments", mode="before")
    @classmethod
    def numbers_as_text(cls, v, info):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            return str(v)
        if v is None and info.field_name in ("room", "comments"):
            return ""
        return v

    @property
    def is_completed(self) -> bool:
        return self.status is OrderStatus.COMPLETED

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class Document(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    orders: List[Order] = Field(default_factory=list)
    completed_orders: List[Order] = Field(default_factory=list, alias="completedOrders")
    kitchen_open: bool = Field(False, alias="kitchenOpen")
    next_order_id: int = Field(1, alias="nextOrderId")

    # Row version the document was read at; None when no row existed
    _version: Optional[int] = PrivateAttr(None)

    @field_validator("orders", "completed_orders", mode="before")
    @classmethod
    def drop_malformed_orders(cls, v):
        if not isinstance(v, list):
            return []
        kept = []
        for entry in v:
            try:
                kept.append(Order.model_validate(entry))
            except PydanticValidationError as e:
                logger.warning("malformed_order_dropped", entry=repr(entry)[:200], error=str(e))
        return kept

    @field_validator("kitchen_open", mode="before")
    @classmethod
    def strict_kitchen_open(cls, v):
        return v if isinstance(v, bool) else False

    @field_validator("next_order_id", mode="before")
    @classmethod
    def numeric_next_order_id(cls, v):
        if isinstance(v, bool):
            return 1
        if isinstance(v, float) and v.is_integer():
            v = int(v)
        if isinstance(v, int) and v >= 1:
            return v
        return 1

    @model_validator(mode="after")
    def normalize(self, info: ValidationInfo):
        # Ids are never reused, even if the counter was lost
        highest = max(
            (int(o.id) for o in self.orders + self.completed_orders if o.id.isdigit()),
            default=0,
        )
        if self.next_order_id <= highest:
            self.next_order_id = highest + 1

        cap = (info.context or {}).get("completed_cap", COMPLETED_ORDERS_CAP)
        finished = [o for o in self.orders if o.is_completed]
        self.orders = [o for o in self.orders if not o.is_completed]
        self.completed_orders = archive(self.completed_orders, finished, cap)
        return self

    def find_active(self, order_id: str) -> Optional[Order]:
        for order in self.orders:
            if order.id == order_id:
                return order
        return None

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True, exclude_none=True)


class OrderCreate(BaseModel):
    """Customer-submitted order fields"""

    model_config = ConfigDict(extra="ignore")

    food: str
    room: str
    name: str
    comments: str = Field("", max_length=500)

    @field_validator("food", "room", "name", mode="before")
    @classmethod
    def required_text(cls, v):
        if isinstance(v, (int, float)) and not isinstance(v, bool):
            v = str(v)
        if not isinstance(v, str) or not v.strip():
            raise ValueError("must be a non-empty string")
        return v.strip()

    @field_validator("comments", mode="before")
    @classmethod
    def optional_text(cls, v):
        if v is None:
            return ""
        if not isinstance(v, str):
            raise ValueError("must be a string")
        return v.strip()


class StatusUpdate(BaseModel):
    """The only fields a manager may change on an existing order"""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    status: OrderStatus
    completed_at: Optional[str] = Field(None, alias="completedAt")
