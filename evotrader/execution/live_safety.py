"""
Live Safety Gate Chain.

Every request to spend real capital walks the same ordered gates; the first
failing gate blocks the request and writes a ``live_trade_blocked`` event:

    credentials -> armed -> session id -> atomic spend -> caps -> daily limit
    -> balances -> price -> cash guard -> asset check -> place order

The arm session spend is the only mutation before the order. Everything else
is re-read fresh on every call.
"""
import asyncio
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from loguru import logger

from evotrader.config.runtime_config import RuntimeConfig
from evotrader.core.types import SpendReason
from evotrader.core.utils import to_float, utc_midnight, utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.errors import CollaboratorError, KeyMaterialError
from evotrader.exchange.coinbase_client import CoinbaseAccount, CoinbaseClient
from evotrader.market.snapshots import MarketSnapshotProvider

BUY_PRICE_BUFFER = 1.005   # slippage allowance on qty * price estimates
FEE_BUFFER = 1.01
EXCHANGE_MIN_USD = 1.0
DEFAULT_DEADLINE_SECONDS = 10.0


@dataclass
class LiveOrderRequest:
    symbol: str
    side: str
    qty: float = 0.0
    quote_usd: Optional[float] = None
    arm_session_id: Optional[str] = None
    request_id: Optional[str] = None
    agent_id: Optional[str] = None
    generation_id: Optional[str] = None
    tags: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "LiveOrderRequest":
        quote = data.get("quote_usd")
        return cls(
            symbol=str(data.get("symbol") or ""),
            side=str(data.get("side") or "").lower(),
            qty=to_float(data.get("qty")),
            quote_usd=to_float(quote) if quote is not None else None,
            arm_session_id=data.get("arm_session_id"),
            request_id=data.get("request_id"),
            agent_id=data.get("agent_id"),
            generation_id=data.get("generation_id"),
            tags=dict(data.get("tags") or {}),
        )

    def summary(self) -> Dict[str, Any]:
        return {"symbol": self.symbol, "side": self.side, "qty": self.qty, "quote_usd": self.quote_usd}


@dataclass
class LiveExecutionResult:
    ok: bool
    blocked: bool = False
    reason: Optional[str] = None
    http_status: int = 200
    request_id: Optional[str] = None
    order_id: Optional[str] = None
    order_cost: float = 0.0
    auto_disarmed: bool = False
    error: Optional[str] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "blocked": self.blocked,
            "reason": self.reason,
            "request_id": self.request_id,
            "order_id": self.order_id,
            "order_cost": round(self.order_cost, 2),
            "auto_disarmed": self.auto_disarmed,
            "error": self.error,
            "details": dict(self.details),
        }


@dataclass
class CashGuard:
    """Outcome of the never-spend-more-than-cash rule for a buy."""
    allowed: bool
    max_allowed: float
    order_cost: float
    requested_cost: float


def cash_guard(
    available: float,
    hold: float,
    live_cap_usd: float,
    max_usd_per_trade: float,
    price: float,
    qty: float = 0.0,
    quote_usd: Optional[float] = None,
) -> CashGuard:
    """Clamp a buy so that cost plus fee buffer fits the tightest of balance, cap and canary limit.

    Cost is rounded down to whole cents; a clamped cost below the exchange
    minimum blocks.
    """
    max_allowed = min(available - hold, live_cap_usd, max_usd_per_trade)
    requested = quote_usd if quote_usd and quote_usd > 0 else qty * price * BUY_PRICE_BUFFER
    cost = min(requested, max_allowed / FEE_BUFFER) if max_allowed > 0 else 0.0
    cost = math.floor(cost * 100) / 100
    return CashGuard(
        allowed=cost >= EXCHANGE_MIN_USD and cost * FEE_BUFFER <= max_allowed + 1e-9,
        max_allowed=max_allowed,
        order_cost=cost,
        requested_cost=requested,
    )


def _account(accounts: List[CoinbaseAccount], currency: str) -> Optional[CoinbaseAccount]:
    for account in accounts:
        if account.currency == currency:
            return account
    return None


class LiveSafetyChain:
    def __init__(
        self,
        store: LedgerStore,
        exchange: Optional[CoinbaseClient],
        clock: Callable[[], datetime] = utc_now,
        deadline_seconds: float = DEFAULT_DEADLINE_SECONDS,
    ):
        self.store = store
        self.exchange = exchange
        self.clock = clock
        self.deadline_seconds = deadline_seconds
        self.market = MarketSnapshotProvider(store)

    async def _block(
        self,
        request: LiveOrderRequest,
        request_id: str,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
        http_status: int = 403,
    ) -> LiveExecutionResult:
        details = details or {}
        await self.store.log_event("live_trade_blocked", {
            **request.summary(),
            "block_reason": reason,
            "request_id": request_id,
            "arm_session_id": request.arm_session_id,
            "execution_mode": "live",
            **details,
        })
        logger.warning(f"Live {request.side} {request.symbol} blocked: {reason}")
        return LiveExecutionResult(
            ok=False,
            blocked=True,
            reason=reason,
            http_status=http_status,
            request_id=request_id,
            details=details,
        )

    async def execute(self, request: LiveOrderRequest) -> LiveExecutionResult:
        request_id = request.request_id or str(uuid.uuid4())
        try:
            return await self._execute(request, request_id)
        except Exception as e:
            logger.exception(f"Unexpected live execution error: {e}")
            await self.store.log_event("live_trade_error", {
                **request.summary(),
                "request_id": request_id,
                "error": str(e),
                "execution_mode": "live",
            })
            return LiveExecutionResult(ok=False, reason="LIVE_EXECUTION_ERROR", http_status=500, request_id=request_id, error=str(e))

    async def _previous_execution(self, request_id: str) -> Optional[Dict[str, Any]]:
        for event in await self.store.list_events("live_trade_executed"):
            if (event.get("metadata") or {}).get("request_id") == request_id:
                return event["metadata"]
        return None

    async def _execute(self, request: LiveOrderRequest, request_id: str) -> LiveExecutionResult:
        if request.side not in ("buy", "sell") or not request.symbol:
            return await self._block(request, request_id, "BLOCKED_INVALID_REQUEST", http_status=400)
        if request.side == "sell" and request.qty <= 0:
            return await self._block(request, request_id, "BLOCKED_INVALID_REQUEST", http_status=400)
        if request.side == "buy" and request.qty <= 0 and not (request.quote_usd and request.quote_usd > 0):
            return await self._block(request, request_id, "BLOCKED_INVALID_REQUEST", http_status=400)

        # credentials present and decodable
        if self.exchange is None or not self.exchange.has_credentials:
            return await self._block(request, request_id, "BLOCKED_NO_CREDENTIALS")
        try:
            self.exchange.signing_key()
        except KeyMaterialError as e:
            return await self._block(request, request_id, "BLOCKED_NO_CREDENTIALS", {"key_material": str(e)})

        now = self.clock()
        state = await self.store.get_system_state()
        if not state.is_armed(now):
            return await self._block(request, request_id, "BLOCKED_LIVE_NOT_ARMED")

        if not request.arm_session_id:
            return await self._block(request, request_id, "BLOCKED_NO_SESSION")

        spend = await self.store.spend_arm_session(request.arm_session_id, request_id)
        if not spend.success:
            status = 409 if spend.reason == SpendReason.CANARY_ALREADY_CONSUMED else 403
            return await self._block(request, request_id, spend.reason.value, http_status=status)
        if spend.reason == SpendReason.OK_IDEMPOTENT:
            previous = await self._previous_execution(request_id)
            if previous is None:
                return await self._block(request, request_id, "BLOCKED_REQUEST_ALREADY_PROCESSED", http_status=409)
            logger.info(f"Live request {request_id} already executed; returning the recorded order")
            return LiveExecutionResult(
                ok=True,
                request_id=request_id,
                order_id=previous.get("order_id"),
                order_cost=to_float(previous.get("order_cost")),
                details={"idempotent": True},
            )

        config = RuntimeConfig.from_document(await self.store.get_config())
        limits = config.canary_limits

        trades_today = await self.store.count_events("live_trade_executed", since=utc_midnight(now))
        if trades_today >= limits.max_trades_per_day:
            return await self._block(request, request_id, "BLOCKED_DAILY_LIMIT", {
                "trades_today": trades_today,
                "daily_limit": limits.max_trades_per_day,
            })

        try:
            accounts = await asyncio.wait_for(self.exchange.get_accounts(), timeout=self.deadline_seconds)
        except (CollaboratorError, asyncio.TimeoutError) as e:
            logger.error(f"Balance fetch failed: {e}")
            return await self._block(request, request_id, "BLOCKED_COINBASE_ERROR", {"error": str(e) or "timeout"})

        price = await self.market.get_price(request.symbol)
        if not price:
            return await self._block(request, request_id, "BLOCKED_NO_PRICE")

        order_cost = 0.0
        quote_size = None
        if request.side == "buy":
            usd = _account(accounts, "USD")
            available = usd.available if usd else 0.0
            hold = usd.hold if usd else 0.0
            guard = cash_guard(
                available, hold, config.live_cap_usd, limits.max_usd_per_trade,
                price, qty=request.qty, quote_usd=request.quote_usd,
            )
            if not guard.allowed:
                return await self._block(request, request_id, "BLOCKED_INSUFFICIENT_CASH", {
                    "order_cost": guard.order_cost,
                    "requested_cost": round(guard.requested_cost, 2),
                    "available_cash": available,
                    "hold_cash": hold,
                    "live_cap": config.live_cap_usd,
                    "max_allowed": guard.max_allowed,
                })
            order_cost = quote_size = guard.order_cost
        else:
            base_currency = request.symbol.split("-")[0]
            asset = _account(accounts, base_currency)
            available_qty = asset.available if asset else 0.0
            if request.qty > available_qty:
                return await self._block(request, request_id, "BLOCKED_INSUFFICIENT_ASSET", {
                    "available_qty": available_qty,
                    "base_currency": base_currency,
                })

        try:
            response = await asyncio.wait_for(
                self.exchange.place_market_order(
                    request.symbol,
                    request.side,
                    quote_size=quote_size,
                    base_size=request.qty if request.side == "sell" else None,
                    client_order_id=f"live_{request_id}",
                ),
                timeout=self.deadline_seconds,
            )
        except (CollaboratorError, asyncio.TimeoutError) as e:
            logger.error(f"Order placement failed: {e}")
            return await self._block(request, request_id, "BLOCKED_COINBASE_ERROR", {"error": str(e) or "timeout"})

        if not response.ok:
            reason = "BLOCKED_NO_TRADE_PERMISSION" if response.permission_denied else "BLOCKED_ORDER_REJECTED"
            return await self._block(request, request_id, reason, {
                "coinbase_error": response.error,
                "exchange_http_status": response.http_status,
            })

        await self.store.log_event("live_trade_executed", {
            **request.summary(),
            "order_id": response.order_id,
            "order_cost": order_cost,
            "price": price,
            "agent_id": request.agent_id,
            "generation_id": request.generation_id or state.current_generation_id,
            "arm_session_id": request.arm_session_id,
            "request_id": request_id,
            "execution_mode": "live",
        })
        logger.warning(f"LIVE ORDER PLACED: {request.side} {request.symbol} (order {response.order_id})")

        result = LiveExecutionResult(
            ok=True,
            request_id=request_id,
            order_id=response.order_id,
            order_cost=order_cost,
            details={"trades_today": trades_today + 1, "daily_limit": limits.max_trades_per_day},
        )
        if limits.auto_disarm_after_trade:
            await self.store.update_system_state({"live_armed_until": None})
            await self.store.log_event("live_auto_disarmed", {
                "reason": "trade_completed",
                "order_id": response.order_id,
                "arm_session_id": request.arm_session_id,
            })
            result.auto_disarmed = True
        return result
