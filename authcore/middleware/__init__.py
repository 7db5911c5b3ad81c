"""ASGI middleware for access logging and the route gate."""

from .logging import LoggingMiddleware
from .route_gate import RouteGateMiddleware

__all__ = ["LoggingMiddleware", "RouteGateMiddleware"]
