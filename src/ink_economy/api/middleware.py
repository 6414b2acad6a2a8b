"""
Starlette middleware that meters proxied inference calls.

Flow:
  1. Before request: refuse with 402 when the caller's balance is at or
     below zero.
  2. Request is executed.
  3. After response: read the provider's usage block from the response body,
     price it and charge the account. Failed calls are never charged.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Optional, Sequence

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse, Response

from ..errors import InkEconomyError, InsufficientCreditsError, UpstreamError
from ..models.account import AccountRole
from ..models.usage import UsageReport
from ..services.container import InkServices


logger = logging.getLogger(__name__)


class UsageMeteringMiddleware(BaseHTTPMiddleware):
    """
    Charges ink for every successful response under `path_prefix` that
    carries a usage report.

    - Error responses (status >= 400) pass through uncharged.
    - A success response without readable usage passes through uncharged and
      is logged; the caller is not billed for a report it never received.
    """

    def __init__(
        self,
        app: Any,
        services: InkServices,
        *,
        path_prefix: str = "/ai",
        account_id_header: str = "X-Account-Id",
        session_id_header: str = "X-Ink-Session-Id",
        model_header: str = "X-Ink-Model",
        idempotency_header: str = "Idempotency-Key",
        skip_paths: Optional[Sequence[str]] = None,
    ) -> None:
        super().__init__(app)
        self.services = services
        self.path_prefix = path_prefix.rstrip("/")
        self.account_id_header = account_id_header
        self.session_id_header = session_id_header
        self.model_header = model_header
        self.idempotency_header = idempotency_header
        self.skip_paths = tuple(skip_paths or ())

    def _should_apply(self, path: str) -> bool:
        if not path.startswith(self.path_prefix + "/") and path != self.path_prefix:
            return False
        for skip in self.skip_paths:
            if path == skip or path.startswith(skip.rstrip("/") + "/"):
                return False
        return True

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Any]
    ) -> Response:
        if not self._should_apply(request.url.path):
            return await call_next(request)

        account_id = (request.headers.get(self.account_id_header) or "").strip()
        if not account_id:
            return JSONResponse(
                status_code=401,
                content={"error": "Unauthorized", "code": "UNAUTHORIZED", "details": {}},
            )

        try:
            await self.services.accounts.ensure_account(account_id, role=AccountRole.USER)
            await self.services.billing.ensure_can_use(account_id)
        except InsufficientCreditsError as e:
            return JSONResponse(
                status_code=e.status_code,
                content={"error": e.message, "code": e.code, "details": e.details},
            )

        response = await call_next(request)

        body_bytes = getattr(response, "body", None)
        if body_bytes is None and hasattr(response, "body_iterator"):
            body_bytes = b"".join([chunk async for chunk in response.body_iterator])

        charged: Optional[int] = None
        if response.status_code < 400 and body_bytes:
            try:
                usage = UsageReport.from_response(json.loads(body_bytes))
            except (json.JSONDecodeError, UnicodeDecodeError, UpstreamError) as e:
                logger.warning(
                    "Usage metering: no usable usage in response",
                    extra={"path": request.url.path, "account_id": account_id, "error": str(e)},
                )
            else:
                try:
                    charge = await self.services.billing.charge_for_usage(
                        account_id,
                        usage,
                        session_id=request.headers.get(self.session_id_header),
                        model=request.headers.get(self.model_header),
                        idempotency_key=request.headers.get(self.idempotency_header),
                    )
                except InkEconomyError as e:
                    logger.error(
                        "Usage metering: charge failed",
                        extra={"path": request.url.path, "account_id": account_id, "error": e.message},
                    )
                else:
                    charged = charge.charged_credits

        if body_bytes is None:
            return response
        headers = dict(response.headers)
        headers.pop("content-length", None)
        if charged is not None:
            headers["X-Ink-Charged"] = str(charged)
        return Response(
            content=body_bytes,
            status_code=response.status_code,
            headers=headers,
            media_type=getattr(response, "media_type", "application/json"),
        )
