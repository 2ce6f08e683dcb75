"""
Client-side sync for the order pages.

OrdersClient talks to the API, RateLimiter keeps a client from flooding it
with mutations, and SyncController keeps one view (order form, manager
dashboard or order tracking) in step with the server by draining the event
log, either by polling or over the SSE stream.

Draining hands each event to whichever client gets there first, so a view
can miss events another client took. Controllers therefore also re-fetch
their whole view after a few quiet polling ticks and on every stream
heartbeat.
"""

import asyncio
import json
import time
from collections import deque
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Tuple
from urllib.parse import parse_qs, urlsplit

import httpx
import structlog

logger = structlog.get_logger()

ORDERS_PATH = "/api/orders"
EVENTS_PATH = "/api/events"


class ClientError(Exception):
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class RateLimitExceeded(ClientError):
    def __init__(self, message: str, retry_after: float):
        super().__init__(message)
        self.retry_after = retry_after


class RateLimiter:
    """
    Sliding-window limits per minute and per hour, plus a cooldown that kicks
    in when too many requests land within a short burst window.
    """

    def __init__(
        self,
        per_minute: int = 20,
        per_hour: int = 200,
        burst_limit: int = 5,
        burst_window: float = 2.0,
        cooldown: float = 5.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.per_minute = per_minute
        self.per_hour = per_hour
        self.burst_limit = burst_limit
        self.burst_window = burst_window
        self.cooldown = cooldown
        self._clock = clock
        self._minute = deque()
        self._hour = deque()
        self._cooldown_until = 0.0

    def _expire(self, now: float):
        while self._minute and now - self._minute[0] >= 60:
            self._minute.popleft()
        while self._hour and now - self._hour[0] >= 3600:
            self._hour.popleft()

    def acquire(self):
        """Record a request or raise RateLimitExceeded without recording it"""
        now = self._clock()
        self._expire(now)

        if now < self._cooldown_until:
            raise RateLimitExceeded("Too many actions, please wait a moment", self._cooldown_until - now)
        if len(self._minute) >= self.per_minute:
            raise RateLimitExceeded("Request limit reached for this minute", 60 - (now - self._minute[0]))
        if len(self._hour) >= self.per_hour:
            raise RateLimitExceeded("Request limit reached for this hour", 3600 - (now - self._hour[0]))

        recent = sum(1 for t in self._minute if now - t < self.burst_window)
        if recent >= self.burst_limit:
            self._cooldown_until = now + self.cooldown
            raise RateLimitExceeded("Too many actions, please wait a moment", self.cooldown)

        self._minute.append(now)
        self._hour.append(now)


class OrdersClient:
    """Thin wrapper over the orders API; raises ClientError with the server's message"""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        manager_secret: Optional[str] = None,
        manager_header: str = "X-Manager-Key",
        limiter: Optional[RateLimiter] = None,
    ):
        self.http = http
        self.manager_secret = manager_secret
        self.manager_header = manager_header
        self.limiter = limiter

    async def _request(
        self,
        method: str,
        path: str = ORDERS_PATH,
        *,
        params: Optional[Dict[str, Any]] = None,
        json: Any = None,
        manager: bool = False,
        limited: bool = False,
    ) -> Any:
        if limited and self.limiter is not None:
            self.limiter.acquire()

        headers = {}
        if manager:
            if not self.manager_secret:
                raise ClientError("Manager access code required")
            headers[self.manager_header] = self.manager_secret

        try:
            response = await self.http.request(method, path, params=params, json=json, headers=headers)
        except httpx.HTTPError as e:
            logger.error("api_request_failed", method=method, path=path, error=str(e))
            raise ClientError(f"Network error: {e}") from e

        if response.is_error:
            try:
                message = response.json().get("error")
            except ValueError:
                message = response.text
            logger.warning("api_request_rejected", method=method, path=path, status=response.status_code)
            raise ClientError(message or f"HTTP {response.status_code}", response.status_code)
        return response.json()

    async def list_orders(self) -> List[dict]:
        return await self._request("GET")

    async def recent_orders(self, limit: Optional[int] = None) -> List[dict]:
        params = {"completed-orders": "true"}
        if limit is not None:
            params["limit"] = limit
        return await self._request("GET", params=params)

    async def kitchen_status(self) -> bool:
        result = await self._request("GET", params={"kitchen-status": "true"})
        return bool(result.get("isOpen"))

    async def submit_order(self, fields: Dict[str, Any]) -> dict:
        result = await self._request("POST", json=fields, limited=True)
        return result["order"]

    async def update_status(self, order_id: str, status: str) -> dict:
        result = await self._request(
            "PUT", params={"update-order": order_id}, json={"status": status}, manager=True, limited=True
        )
        return result["order"]

    async def delete_order(self, order_id: str) -> dict:
        result = await self._request("DELETE", params={"delete-order": order_id}, manager=True, limited=True)
        return result["order"]

    async def clear_orders(self) -> int:
        result = await self._request("POST", json=[], manager=True, limited=True)
        return result["clearedCount"]

    async def set_kitchen_status(self, is_open: bool) -> bool:
        result = await self._request(
            "POST", params={"kitchen-status": "true"}, json={"isOpen": is_open}, manager=True, limited=True
        )
        return result["isOpen"]

    async def poll_events(self, limit: int = 10) -> List[dict]:
        result = await self._request("GET", EVENTS_PATH, params={"poll": "true", "limit": limit})
        return result["events"]

    async def stream_events(self) -> AsyncIterator[dict]:
        """Yield SSE frames until the server closes the stream"""
        try:
            async with self.http.stream("GET", EVENTS_PATH, headers={"Accept": "text/event-stream"}) as response:
                if response.is_error:
                    raise ClientError(f"Event stream refused: HTTP {response.status_code}", response.status_code)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    try:
                        event = json.loads(line[len("data:"):].strip())
                    except ValueError:
                        logger.warning("event_frame_unparsable", frame=line[:200])
                        continue
                    yield event
        except httpx.HTTPError as e:
            raise ClientError(f"Event stream error: {e}") from e


class View(str, Enum):
    ORDER = "order"
    MANAGER = "manager"
    TRACKING = "tracking"


def resolve_view(url: str) -> Tuple[View, Optional[str]]:
    """``?id=<order>`` tracks an order, ``?page=manager`` is the dashboard"""
    params = parse_qs(urlsplit(url).query)
    order_id = params.get("id", [""])[0]
    if order_id:
        return View.TRACKING, order_id
    if params.get("page", [""])[0] == "manager":
        return View.MANAGER, None
    return View.ORDER, None


@dataclass
class ViewState:
    orders: List[dict] = field(default_factory=list)
    recent: List[dict] = field(default_factory=list)
    kitchen_open: bool = False
    tracked_order: Optional[dict] = None
    tracked_deleted: bool = False


Notice = Callable[[str, str], None]


def log_notice(level: str, message: str):
    logger.info("user_notice", level=level, message=message)


class SyncController:
    def __init__(
        self,
        client: OrdersClient,
        url: str,
        *,
        notify: Notice = log_notice,
        is_visible: Callable[[], bool] = lambda: True,
        poll_seconds: float = 3.0,
        reconnect_seconds: float = 1.0,
        recent_limit: int = 10,
        resync_ticks: int = 2,
    ):
        self.client = client
        self.view, self.order_id = resolve_view(url)
        self.state = ViewState()
        self.notify = notify
        self.is_visible = is_visible
        self.poll_seconds = poll_seconds
        self.reconnect_seconds = reconnect_seconds
        self.recent_limit = recent_limit
        # Polling ticks without events before the whole view is re-fetched
        self.resync_ticks = resync_ticks
        self._quiet_ticks = 0

    # Fetching

    async def _fetch_view(self):
        if self.view is View.MANAGER:
            self.state.orders = await self.client.list_orders()
        if self.view is View.TRACKING:
            await self.refresh_tracking()
        else:
            self.state.kitchen_open = await self.client.kitchen_status()
        self.state.recent = await self.client.recent_orders(self.recent_limit)

    async def load(self):
        """Initial state for the current view"""
        try:
            await self._fetch_view()
        except ClientError as e:
            self.notify("error", f"Could not load orders: {e.message}")

    async def resync(self):
        """Re-fetch the whole view, picking up events drained by other clients"""
        self._quiet_ticks = 0
        try:
            await self._fetch_view()
        except ClientError as e:
            logger.warning("view_resync_failed", view=self.view.value, error=e.message)

    async def refresh_tracking(self):
        orders = await self.client.list_orders()
        found = next((o for o in orders if o.get("id") == self.order_id), None)
        if found is None:
            recent = await self.client.recent_orders(50)
            found = next((o for o in recent if o.get("id") == self.order_id), None)
        self.state.tracked_order = found

    async def handle_event(self, event: dict):
        """Re-fetch only what the event affects for this view"""
        kind = event.get("type")
        data = event.get("data") or {}
        if kind in ("connected", "heartbeat"):
            await self.resync()
            return

        try:
            if kind == "KITCHEN_STATUS_CHANGED":
                self.state.kitchen_open = bool(data.get("isOpen"))
                self.notify("info", f"Kitchen {'opened' if self.state.kitchen_open else 'closed'}")
                return

            if self.view is View.MANAGER:
                self.state.orders = await self.client.list_orders()
                if kind == "NEW_ORDER":
                    order = data.get("order") or {}
                    self.notify("info", f"New order #{order.get('id', '?')}")

            if self.view is View.TRACKING:
                if kind == "ORDER_DELETED" and data.get("orderId") == self.order_id:
                    self.state.tracked_order = None
                    self.state.tracked_deleted = True
                    self.notify("error", "This order has been deleted by a manager")
                elif kind == "ORDERS_CLEARED" or data.get("orderId") == self.order_id:
                    await self.refresh_tracking()

            self.state.recent = await self.client.recent_orders(self.recent_limit)
        except ClientError as e:
            logger.warning("event_refresh_failed", event_type=kind, error=e.message)

    # Live updates

    async def poll_once(self) -> int:
        if not self.is_visible():
            logger.debug("poll_skipped_hidden")
            return 0
        events = await self.client.poll_events()
        for event in events:
            await self.handle_event(event)

        if events:
            self._quiet_ticks = 0
        else:
            self._quiet_ticks += 1
            if self._quiet_ticks >= self.resync_ticks:
                await self.resync()
        return len(events)

    async def _wait(self, stop: asyncio.Event, seconds: float):
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def run_polling(self, stop: asyncio.Event):
        while not stop.is_set():
            try:
                await self.poll_once()
            except ClientError as e:
                logger.warning("poll_failed", error=e.message)
            await self._wait(stop, self.poll_seconds)

    async def run_stream(self, stop: asyncio.Event):
        """Consume the SSE stream, reconnecting whenever the server closes it"""
        while not stop.is_set():
            try:
                async for event in self.client.stream_events():
                    await self.handle_event(event)
                    if stop.is_set():
                        break
            except ClientError as e:
                logger.warning("event_stream_dropped", error=e.message)
            await self._wait(stop, self.reconnect_seconds)

    # Mutations: state changes only after the server confirms

    async def submit_order(self, fields: Dict[str, Any]) -> Optional[str]:
        try:
            order = await self.client.submit_order(fields)
        except ClientError as e:
            self.notify("error", f"Could not place order: {e.message}")
            return None
        self.view, self.order_id = View.TRACKING, order["id"]
        self.state.tracked_order = order
        self.state.tracked_deleted = False
        self.notify("success", f"Order #{order['id']} placed")
        return order["id"]

    async def _refresh_orders(self):
        try:
            self.state.orders = await self.client.list_orders()
        except ClientError as e:
            logger.warning("orders_refresh_failed", error=e.message)

    async def update_status(self, order_id: str, status: str) -> bool:
        try:
            await self.client.update_status(order_id, status)
        except ClientError as e:
            self.notify("error", f"Failed to update order: {e.message}")
            return False
        await self._refresh_orders()
        return True

    async def delete_order(self, order_id: str) -> bool:
        try:
            await self.client.delete_order(order_id)
        except ClientError as e:
            self.notify("error", f"Failed to delete order: {e.message}")
            return False
        await self._refresh_orders()
        self.notify("success", f"Order #{order_id} has been permanently deleted")
        return True

    async def clear_orders(self) -> bool:
        try:
            await self.client.clear_orders()
        except ClientError as e:
            self.notify("error", f"Failed to clear orders: {e.message}")
            return False
        await self._refresh_orders()
        return True

    async def toggle_kitchen(self) -> bool:
        """Flip immediately, roll back if the server refuses"""
        previous = self.state.kitchen_open
        self.state.kitchen_open = not previous
        try:
            await self.client.set_kitchen_status(self.state.kitchen_open)
        except ClientError as e:
            self.state.kitchen_open = previous
            self.notify("error", f"Failed to update kitchen status: {e.message}")
            return False
        return True
