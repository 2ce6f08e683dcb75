import asyncio
import json

import httpx
import pytest

from sync_client import (
    ClientError,
    OrdersClient,
    RateLimiter,
    RateLimitExceeded,
    SyncController,
    View,
    resolve_view,
)


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


class TestRateLimiter:
    def test_minute_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(per_minute=3, burst_limit=10, clock=clock)
        for _ in range(3):
            limiter.acquire()
            clock.advance(5)
        with pytest.raises(RateLimitExceeded) as exc:
            limiter.acquire()
        assert exc.value.retry_after == pytest.approx(45)

        clock.advance(45)
        limiter.acquire()

    def test_hour_limit(self):
        clock = FakeClock()
        limiter = RateLimiter(per_minute=100, per_hour=2, burst_limit=10, clock=clock)
        limiter.acquire()
        clock.advance(120)
        limiter.acquire()
        clock.advance(120)
        with pytest.raises(RateLimitExceeded):
            limiter.acquire()

    def test_burst_triggers_cooldown(self):
        clock = FakeClock()
        limiter = RateLimiter(burst_limit=3, burst_window=2.0, cooldown=5.0, clock=clock)
        for _ in range(3):
            limiter.acquire()
            clock.advance(0.1)
        with pytest.raises(RateLimitExceeded):
            limiter.acquire()

        clock.advance(4)
        with pytest.raises(RateLimitExceeded):
            limiter.acquire()
        clock.advance(1)
        limiter.acquire()

    def test_rejected_requests_are_not_counted(self):
        clock = FakeClock()
        limiter = RateLimiter(per_minute=1, burst_limit=10, clock=clock)
        limiter.acquire()
        for _ in range(5):
            with pytest.raises(RateLimitExceeded):
                limiter.acquire()
        clock.advance(60)
        limiter.acquire()


@pytest.mark.parametrize("url, expected", [
    ("https://example.test/", (View.ORDER, None)),
    ("https://example.test/?page=manager", (View.MANAGER, None)),
    ("https://example.test/?id=007", (View.TRACKING, "007")),
    ("https://example.test/?page=manager&id=007", (View.TRACKING, "007")),
    ("https://example.test/?id=", (View.ORDER, None)),
])
def test_resolve_view(url, expected):
    assert resolve_view(url) == expected


class FakeServer:
    """In-memory stand-in for the orders API, served through httpx.MockTransport"""

    def __init__(self, secret="let-me-cook"):
        self.secret = secret
        self.orders = []
        self.completed = []
        self.kitchen_open = False
        self.events = []
        self.fail = set()
        self.requests = []

    def handle(self, request: httpx.Request) -> httpx.Response:
        params = request.url.params
        self.requests.append((request.method, request.url.path, dict(params)))
        key = (request.method, next(iter(params), None))
        if key in self.fail:
            return httpx.Response(500, json={"error": "Failed to save order data"})

        if request.url.path == "/api/events":
            events, self.events = self.events, []
            return httpx.Response(200, json={"events": events})

        manager = request.headers.get("X-Manager-Key") == self.secret
        body = json.loads(request.content) if request.content else None

        if "kitchen-status" in params:
            if request.method == "GET":
                return httpx.Response(200, json={"isOpen": self.kitchen_open})
            if not manager:
                return httpx.Response(401, json={"error": "Unauthorized"})
            self.kitchen_open = body["isOpen"]
            return httpx.Response(200, json={"success": True, "isOpen": self.kitchen_open, "changed": True})
        if "completed-orders" in params:
            return httpx.Response(200, json=self.orders + self.completed)
        if "update-order" in params:
            order = next(o for o in self.orders if o["id"] == params["update-order"])
            order["status"] = body["status"]
            return httpx.Response(200, json={"success": True, "order": order})
        if "delete-order" in params:
            order = next(o for o in self.orders if o["id"] == params["delete-order"])
            self.orders.remove(order)
            return httpx.Response(200, json={"success": True, "order": order})
        if request.method == "GET":
            return httpx.Response(200, json=self.orders)
        if body == []:
            count = len(self.orders)
            self.completed += self.orders
            self.orders = []
            return httpx.Response(200, json={"success": True, "clearedCount": count})
        if not body.get("food"):
            return httpx.Response(400, json={"error": "Missing or invalid fields: food"})
        order = dict(body, id=f"{len(self.orders) + len(self.completed) + 1:03d}", status="pending")
        self.orders.append(order)
        self.events.append({"type": "NEW_ORDER", "data": {"order": order}})
        return httpx.Response(201, json={"success": True, "order": order})


@pytest.fixture
def server():
    return FakeServer()


@pytest.fixture
async def http(server):
    async with httpx.AsyncClient(
        transport=httpx.MockTransport(server.handle), base_url="https://orders.test"
    ) as client:
        yield client


@pytest.fixture
def notices():
    return []


@pytest.fixture
def make_controller(http, notices):
    def build(url="https://orders.test/", secret="let-me-cook", **kwargs):
        client = OrdersClient(http, manager_secret=secret)
        return SyncController(client, url, notify=lambda level, message: notices.append((level, message)), **kwargs)
    return build


class TestOrdersClient:
    async def test_error_message_from_server(self, http):
        client = OrdersClient(http)
        with pytest.raises(ClientError) as exc:
            await client.submit_order({"room": "1"})
        assert exc.value.status_code == 400
        assert exc.value.message == "Missing or invalid fields: food"

    async def test_manager_call_without_secret(self, http, server):
        client = OrdersClient(http)
        with pytest.raises(ClientError):
            await client.set_kitchen_status(True)
        assert server.requests == []

    async def test_network_error(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(refuse), base_url="https://orders.test") as http:
            with pytest.raises(ClientError) as exc:
                await OrdersClient(http).list_orders()
        assert exc.value.message.startswith("Network error")

    async def test_limiter_applies_to_mutations_only(self, http, server):
        limiter = RateLimiter(per_minute=1, burst_limit=10, clock=FakeClock())
        client = OrdersClient(http, limiter=limiter)
        await client.submit_order({"food": "Toast", "room": "1", "name": "A"})
        with pytest.raises(RateLimitExceeded):
            await client.submit_order({"food": "Toast", "room": "1", "name": "A"})
        assert len(await client.list_orders()) == 1

    async def test_stream_events(self, server):
        body = (
            'data: {"type": "connected", "data": {}}\n\n'
            ": comment\n\n"
            "data: not json\n\n"
            'data: {"type": "NEW_ORDER", "data": {"order": {"id": "001"}}}\n\n'
        )
        transport = httpx.MockTransport(
            lambda request: httpx.Response(200, text=body, headers={"Content-Type": "text/event-stream"})
        )
        async with httpx.AsyncClient(transport=transport, base_url="https://orders.test") as http:
            events = [e async for e in OrdersClient(http).stream_events()]
        assert [e["type"] for e in events] == ["connected", "NEW_ORDER"]


class TestSyncController:
    async def test_submit_switches_to_tracking(self, make_controller, notices):
        controller = make_controller()
        order_id = await controller.submit_order({"food": "Toast", "room": "12", "name": "Alice"})

        assert order_id == "001"
        assert controller.view is View.TRACKING
        assert controller.order_id == "001"
        assert controller.state.tracked_order["status"] == "pending"
        assert notices == [("success", "Order #001 placed")]

    async def test_failed_submit_stays_on_form(self, make_controller, notices):
        controller = make_controller()
        assert await controller.submit_order({"room": "12"}) is None
        assert controller.view is View.ORDER
        assert notices[0][0] == "error"

    async def test_manager_load(self, make_controller, server):
        server.orders = [{"id": "001", "status": "pending"}]
        server.kitchen_open = True
        controller = make_controller("https://orders.test/?page=manager")
        await controller.load()

        assert controller.state.orders == server.orders
        assert controller.state.kitchen_open is True
        assert controller.state.recent == server.orders

    async def test_tracking_falls_back_to_recent(self, make_controller, server):
        server.completed = [{"id": "004", "status": "completed"}]
        controller = make_controller("https://orders.test/?id=004")
        await controller.load()
        assert controller.state.tracked_order == {"id": "004", "status": "completed"}

    async def test_toggle_rolls_back_on_failure(self, make_controller, server, notices):
        controller = make_controller("https://orders.test/?page=manager")
        server.fail.add(("POST", "kitchen-status"))

        assert await controller.toggle_kitchen() is False
        assert controller.state.kitchen_open is False
        assert notices[-1][0] == "error"

    async def test_toggle(self, make_controller, server):
        controller = make_controller("https://orders.test/?page=manager")
        assert await controller.toggle_kitchen() is True
        assert controller.state.kitchen_open is True
        assert server.kitchen_open is True

    async def test_toggle_without_secret_rolls_back(self, make_controller, server):
        controller = make_controller("https://orders.test/?page=manager", secret=None)
        assert await controller.toggle_kitchen() is False
        assert controller.state.kitchen_open is False
        assert server.requests == []

    async def test_manager_actions_refresh_orders(self, make_controller, server):
        controller = make_controller("https://orders.test/?page=manager")
        await controller.client.submit_order({"food": "Toast", "room": "1", "name": "A"})
        await controller.client.submit_order({"food": "Tea", "room": "2", "name": "B"})

        assert await controller.update_status("001", "accepted") is True
        assert controller.state.orders[0]["status"] == "accepted"
        assert await controller.delete_order("001") is True
        assert [o["id"] for o in controller.state.orders] == ["002"]
        assert await controller.clear_orders() is True
        assert controller.state.orders == []

    async def test_hidden_page_skips_poll(self, make_controller, server):
        controller = make_controller(is_visible=lambda: False)
        assert await controller.poll_once() == 0
        assert server.requests == []

    async def test_manager_new_order_event(self, make_controller, server, notices):
        controller = make_controller("https://orders.test/?page=manager")
        server.orders = [{"id": "001", "status": "pending"}]
        server.events = [{"type": "NEW_ORDER", "data": {"order": {"id": "001"}}}]

        assert await controller.poll_once() == 1
        assert controller.state.orders == server.orders
        assert notices == [("info", "New order #001")]

    async def test_kitchen_event_needs_no_fetch(self, make_controller, server):
        controller = make_controller()
        await controller.handle_event({"type": "KITCHEN_STATUS_CHANGED", "data": {"isOpen": True}})
        assert controller.state.kitchen_open is True
        assert server.requests == []

    async def test_tracked_order_deleted(self, make_controller, notices):
        controller = make_controller("https://orders.test/?id=003")
        controller.state.tracked_order = {"id": "003"}
        await controller.handle_event({"type": "ORDER_DELETED", "data": {"orderId": "003"}})

        assert controller.state.tracked_order is None
        assert controller.state.tracked_deleted is True
        assert notices[-1] == ("error", "This order has been deleted by a manager")

    async def test_tracked_order_status_update(self, make_controller, server):
        server.orders = [{"id": "003", "status": "being-made"}]
        controller = make_controller("https://orders.test/?id=003")
        await controller.handle_event({"type": "ORDER_STATUS_UPDATED", "data": {"orderId": "003"}})
        assert controller.state.tracked_order["status"] == "being-made"

    async def test_unrelated_event_leaves_tracked_order(self, make_controller, server):
        server.orders = [{"id": "003", "status": "being-made"}]
        controller = make_controller("https://orders.test/?id=003")
        controller.state.tracked_order = {"id": "003", "status": "pending"}
        await controller.handle_event({"type": "ORDER_STATUS_UPDATED", "data": {"orderId": "009"}})
        assert controller.state.tracked_order["status"] == "pending"

    async def test_heartbeat_resyncs_view(self, make_controller, server):
        server.orders = [{"id": "001", "status": "pending"}]
        controller = make_controller("https://orders.test/?page=manager")
        await controller.handle_event({"type": "heartbeat", "data": {}})
        assert controller.state.orders == server.orders

    async def test_single_quiet_tick_only_polls(self, make_controller, server):
        controller = make_controller("https://orders.test/?page=manager")
        assert await controller.poll_once() == 0
        assert [path for _, path, _ in server.requests] == ["/api/events"]

    async def test_manager_catches_up_after_another_client_drains(self, make_controller, server):
        customer = make_controller()
        manager = make_controller("https://orders.test/?page=manager")
        await manager.load()
        assert manager.state.orders == []

        await customer.submit_order({"food": "Toast", "room": "12", "name": "Alice"})
        assert await customer.poll_once() == 1

        for _ in range(3):
            assert await manager.poll_once() == 0
        assert [o["id"] for o in manager.state.orders] == ["001"]
        assert [o["id"] for o in manager.state.recent] == ["001"]

    async def test_run_polling_stops(self, make_controller, server):
        controller = make_controller(poll_seconds=0.01)
        stop = asyncio.Event()
        task = asyncio.create_task(controller.run_polling(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=1)
        assert any(path == "/api/events" for _, path, _ in server.requests)
