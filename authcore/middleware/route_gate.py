"""Middleware enforcing the page-level authorization table."""

from __future__ import annotations

import logging

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import RedirectResponse, Response

from ..auth import SessionIssuer, extract_session_token
from ..route_gate import decide

logger = logging.getLogger("authcore.route_gate")


class RouteGateMiddleware(BaseHTTPMiddleware):
    """Redirect requests the gate does not allow; everything else passes through."""

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        issuer: SessionIssuer = request.app.state.session_issuer
        claims = issuer.verify(extract_session_token(request))
        decision = decide(request.url.path, claims, query=request.url.query)
        if decision.allowed:
            return await call_next(request)

        logger.info(
            "Route gate redirected request",
            extra={
                "event_dataset": "authcore.route_gate",
                "event_action": "gate_redirect",
                "url_path": request.url.path,
                "user_id": str(claims.subject) if claims else None,
            },
        )
        response = RedirectResponse(decision.location or "/", status_code=307)
        response.headers["Cache-Control"] = "no-store"
        return response
