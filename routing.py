"""
Query-flag routing for the single ``/api/orders`` resource.

The flag is resolved once into a Route; app.py maps (Route, method) pairs to
handler functions.
"""

from enum import Enum
from typing import Mapping, NamedTuple, Optional


class Route(str, Enum):
    ORDERS = "orders"
    KITCHEN_STATUS = "kitchen-status"
    COMPLETED_ORDERS = "completed-orders"
    UPDATE_ORDER = "update-order"
    DELETE_ORDER = "delete-order"


ROUTE_METHODS = {
    Route.ORDERS: ("GET", "POST"),
    Route.KITCHEN_STATUS: ("GET", "POST"),
    Route.COMPLETED_ORDERS: ("GET",),
    Route.UPDATE_ORDER: ("PUT", "POST"),
    Route.DELETE_ORDER: ("DELETE",),
}

# First flag present wins
FLAG_PRECEDENCE = (
    Route.KITCHEN_STATUS,
    Route.COMPLETED_ORDERS,
    Route.UPDATE_ORDER,
    Route.DELETE_ORDER,
)


class ResolvedRoute(NamedTuple):
    route: Route
    order_id: Optional[str] = None


def resolve_route(query: Mapping[str, str]) -> ResolvedRoute:
    for route in FLAG_PRECEDENCE:
        if route.value in query:
            if route in (Route.UPDATE_ORDER, Route.DELETE_ORDER):
                return ResolvedRoute(route, query[route.value].strip() or None)
            return ResolvedRoute(route)
    return ResolvedRoute(Route.ORDERS)


def allowed_methods(route: Route) -> tuple:
    return ROUTE_METHODS[route]
