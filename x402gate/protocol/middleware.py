# x402gate/protocol/middleware.py
"""
FastAPI middleware for x402 payments on Solana.

For requests to protected routes this middleware:
1. Answers requests without X-PAYMENT with 402 and the payment challenge
2. Decodes X-PAYMENT and checks the transaction against its own requirements
3. Hands the payment to the facilitator for co-signing and broadcast
4. Reserves the settlement signature in the replay guard
5. Serves the request and attaches X-PAYMENT-RESPONSE

Settlement and reservation run shielded from request cancellation: once a
payment is in flight it is recorded even if the client goes away.
"""
import asyncio
import logging
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from fastapi import Request, Response
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from x402gate.core.config import settings
from x402gate.protocol import audit
from x402gate.protocol.discovery import discover_fee_payer
from x402gate.protocol.errors import PaymentRejected, ProtocolError, ReplayDetected, X402Error
from x402gate.protocol.forwarder import SettlementForwarder
from x402gate.protocol.preflight import inspect_payment
from x402gate.protocol.replay import ReplayGuard
from x402gate.protocol.requirements import (
    WWW_AUTHENTICATE_HEADER,
    X_PAYMENT_HEADER,
    X_PAYMENT_RESPONSE_HEADER,
    build_challenge_body,
    build_payment_requirements,
    decode_payment_header,
    encode_payment_response,
    encode_www_authenticate,
)
from x402gate.protocol.types import PaymentRequirements, SettlementResult

logger = logging.getLogger(__name__)


def parse_protected_routes(entries: List[str]) -> List[Tuple[str, str, Optional[Decimal]]]:
    """
    Parse route entries of the form ``"POST /api/v1/report"`` or
    ``"GET /api/v1/premium=0.05"`` (price in USD after ``=``).
    """
    routes = []
    for entry in entries:
        route, _, price = entry.partition("=")
        method, _, path = route.strip().partition(" ")
        if not path:
            raise ValueError(f"Protected route entry must be 'METHOD /path[=price]', got {entry!r}")
        routes.append((method.upper(), path.strip(), Decimal(price.strip()) if price.strip() else None))
    return routes


def match_protected_route(
    routes: List[Tuple[str, str, Optional[Decimal]]],
    method: str,
    path: str,
) -> Optional[Tuple[str, str, Optional[Decimal]]]:
    for route in routes:
        protected_method, protected_path, _ = route
        if method == protected_method and path.rstrip("/").startswith(protected_path.rstrip("/")):
            return route
    return None


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        return forwarded_for.split(",")[0].strip()
    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()
    if request.client:
        return request.client.host
    return "unknown"


def create_402_response(
    requirements: PaymentRequirements,
    error_message: str = "Payment required",
    error_reason: Optional[str] = None,
) -> JSONResponse:
    body = build_challenge_body(requirements, error_message)
    if error_reason:
        body["success"] = False
        body["errorReason"] = error_reason
    return JSONResponse(
        status_code=402,
        content=body,
        headers={WWW_AUTHENTICATE_HEADER: encode_www_authenticate(requirements)},
    )


class X402Middleware(BaseHTTPMiddleware):
    """
    x402 payment middleware.

    The forwarder and replay guard may be passed in directly; otherwise they
    are taken from ``app.state`` (set up by the application lifespan).
    """

    def __init__(
        self,
        app,
        forwarder: Optional[SettlementForwarder] = None,
        replay_guard: Optional[ReplayGuard] = None,
        protected_routes: Optional[List[str]] = None,
    ):
        super().__init__(app)
        self._forwarder = forwarder
        self._replay_guard = replay_guard
        self.routes = parse_protected_routes(
            protected_routes if protected_routes is not None else settings.X402_PROTECTED_ROUTES
        )

    def _get_forwarder(self, request: Request) -> SettlementForwarder:
        if self._forwarder is None:
            self._forwarder = getattr(request.app.state, "forwarder", None) or SettlementForwarder()
        return self._forwarder

    def _get_replay_guard(self, request: Request) -> ReplayGuard:
        if self._replay_guard is None:
            self._replay_guard = request.app.state.replay_guard
        return self._replay_guard

    async def _requirements_for(self, request: Request, price: Decimal) -> PaymentRequirements:
        fee_payer = settings.X402_FEE_PAYER or await run_in_threadpool(discover_fee_payer, settings.X402_NETWORK)
        return build_payment_requirements(
            pay_to=settings.X402_PAY_TO_ADDRESS,
            price=price,
            description=f"{request.method} {request.url.path}",
            fee_payer=fee_payer,
            resource=str(request.url),
            network=settings.X402_NETWORK,
            asset=settings.X402_ASSET,
            decimals=settings.X402_ASSET_DECIMALS,
            safety_ceiling=settings.X402_SAFETY_CEILING,
            max_timeout_seconds=settings.X402_MAX_TIMEOUT_SECONDS,
        )

    async def _settle_and_reserve(
        self,
        request: Request,
        payment_header: str,
        requirements: PaymentRequirements,
        payer: str,
        amount: int,
    ) -> SettlementResult:
        result = await self._get_forwarder(request).settle(payment_header, requirements)
        if not result.success:
            return result
        if not result.transaction:
            return SettlementResult(
                success=False,
                network=result.network,
                payer=result.payer,
                error_reason="missing_settlement_signature",
            )

        await self._get_replay_guard(request).claim(
            result.transaction,
            payer=result.payer or payer,
            amount=amount,
            recipient=requirements.pay_to,
            resource=requirements.extra.resource,
            network=requirements.network,
        )
        return result

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        if not settings.X402_ENABLED:
            return await call_next(request)

        route = match_protected_route(self.routes, request.method, request.url.path)
        if route is None:
            return await call_next(request)

        client_ip = get_client_ip(request)
        logger.info(f"x402: Processing protected request from {client_ip}: {request.method} {request.url.path}")

        if not settings.X402_PAY_TO_ADDRESS:
            logger.error("x402: X402_PAY_TO_ADDRESS not configured")
            return JSONResponse(status_code=503, content={"error": "Payments are not configured"})

        price = route[2] if route[2] is not None else Decimal(str(settings.X402_DEFAULT_PRICE_USD))
        try:
            requirements = await self._requirements_for(request, price)
        except ProtocolError as e:
            logger.error(f"x402: Cannot build payment requirements: {e}")
            return JSONResponse(
                status_code=503,
                content={"error": "Service temporarily unavailable", "detail": e.message},
            )

        payment_header = request.headers.get(X_PAYMENT_HEADER)
        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {requirements.max_amount_required} units")
            audit.log_payment_required_sent(
                client_ip=client_ip,
                amount=requirements.max_amount_required,
                asset=requirements.asset,
                network=requirements.network,
                pay_to=requirements.pay_to,
                resource=str(request.url),
            )
            return create_402_response(requirements, "X-PAYMENT header is required")

        if not requirements.fee_payer:
            logger.error("x402: No fee payer configured or discovered; cannot settle")
            return JSONResponse(status_code=503, content={"error": "Facilitator fee payer unavailable"})

        try:
            payload = decode_payment_header(payment_header)
            payer, amount = inspect_payment(payload, requirements)
        except PaymentRejected as e:
            logger.warning(f"x402: Rejected payment from {client_ip}: {e.reason}: {e.message} facts={e.facts}")
            audit.log_payment_rejected(None, e.reason, e.facts, client_ip=client_ip)
            return create_402_response(requirements, e.message, e.reason)
        except X402Error as e:
            logger.warning(f"x402: Invalid payment from {client_ip}: {e.reason}: {e.message}")
            audit.log_payment_failed(client_ip, reason=e.reason, stage="inspect")
            return create_402_response(requirements, e.message, e.reason)

        audit.log_payment_received(client_ip, payer=payer, amount=amount, network=payload.network)

        try:
            result = await asyncio.shield(
                self._settle_and_reserve(request, payment_header, requirements, payer, amount)
            )
        except ReplayDetected as e:
            return create_402_response(requirements, e.message, e.reason)
        except Exception as e:
            logger.error(f"x402: Settlement of payment from {payer} failed: {e}")
            audit.log_error(client_ip, type(e).__name__, str(e), {"stage": "settle", "payer": payer})
            return JSONResponse(
                status_code=502,
                content={"error": "Payment settlement failed", "detail": str(e)},
            )

        audit.log_payment_settled(
            client_ip=client_ip,
            payer=result.payer or payer,
            transaction=result.transaction,
            network=result.network,
            success=result.success,
            error_reason=result.error_reason,
        )
        if not result.success:
            return create_402_response(
                requirements,
                f"Payment settlement failed: {result.error_reason}",
                result.error_reason,
            )

        logger.info(f"x402: Payment {result.transaction} settled for payer {result.payer or payer}")
        response = await call_next(request)
        response.headers[X_PAYMENT_RESPONSE_HEADER] = encode_payment_response(result)
        return response
