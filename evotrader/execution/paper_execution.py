"""
Paper Execution - simulated fills against the latest market snapshot.

This is the execution collaborator the decision cycle dispatches to. Slippage
always works against the trader, fees are charged on fill notional, and a sell
can never take a position below zero.
"""
import random
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from loguru import logger

from evotrader.config.runtime_config import PaperRiskConfig
from evotrader.core.types import Fill, Order, OrderSide, OrderStatus, Position
from evotrader.core.utils import utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.market.snapshots import MarketSnapshotProvider


@dataclass
class ExecutionResult:
    """Outcome of one submitted order"""
    ok: bool
    order_id: Optional[str] = None
    fill_price: float = 0.0
    fee: float = 0.0
    slippage_pct: float = 0.0
    realized_pnl: Optional[float] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        if not self.ok:
            return {"ok": False, "error": self.error, "order_id": self.order_id}
        return {
            "ok": True,
            "order_id": self.order_id,
            "fill_price": self.fill_price,
            "fee": self.fee,
            "slippage_pct": self.slippage_pct,
            "realized_pnl": self.realized_pnl,
        }


class PaperExecutor:
    """Fills market orders for the single paper account"""

    def __init__(
        self,
        store: LedgerStore,
        risk: Optional[PaperRiskConfig] = None,
        rng: Optional[random.Random] = None,
        clock: Callable = utc_now,
    ):
        self.store = store
        self.risk = risk or PaperRiskConfig()
        self.rng = rng or random.Random()
        self.clock = clock
        self.market = MarketSnapshotProvider(store)

    def _slippage(self) -> float:
        low = self.risk.slippage_min_pct
        high = max(low, self.risk.slippage_max_pct)
        return low + self.rng.random() * (high - low)

    async def _reject(
        self,
        account_id: str,
        symbol: str,
        side: OrderSide,
        qty: float,
        reason: str,
        agent_id: Optional[str],
        generation_id: Optional[str],
        tags: Dict[str, Any],
    ) -> ExecutionResult:
        order = Order(
            id=str(uuid.uuid4()),
            account_id=account_id,
            symbol=symbol,
            side=side,
            qty=qty,
            status=OrderStatus.REJECTED,
            agent_id=agent_id,
            generation_id=generation_id,
            reason=reason,
            tags=dict(tags),
            created_at=self.clock(),
        )
        await self.store.insert_order(order)
        logger.warning(f"Paper order rejected: {side.value} {qty} {symbol} ({reason})")
        return ExecutionResult(ok=False, order_id=order.id, error=reason)

    async def submit_order(
        self,
        symbol: str,
        side: str,
        qty: float,
        agent_id: Optional[str] = None,
        generation_id: Optional[str] = None,
        tags: Optional[Dict[str, Any]] = None,
        price: Optional[float] = None,
        slippage_pct: Optional[float] = None,
    ) -> ExecutionResult:
        """
        Execute a simulated market order.

        Args:
            symbol: Trading symbol, e.g. ``BTC-USD``
            side: ``buy`` or ``sell``
            qty: Base-asset quantity, must be positive
            price: Mark price override (liquidation); defaults to the snapshot price
            slippage_pct: Slippage override; defaults to a uniform draw from the config range

        Returns:
            ExecutionResult with fill price, fee and slippage, or the rejection reason
        """
        tags = dict(tags or {})
        order_side = OrderSide(str(side).lower())

        if not symbol or qty is None or qty <= 0:
            return ExecutionResult(ok=False, error="invalid_qty")

        account = await self.store.get_paper_account()
        if account is None:
            return ExecutionResult(ok=False, error="no_paper_account")

        if price is None:
            price = await self.market.get_price(symbol)
        if price is None or price <= 0:
            return await self._reject(
                account.id, symbol, order_side, qty, f"no_market_data_{symbol}", agent_id, generation_id, tags
            )

        slip = self._slippage() if slippage_pct is None else slippage_pct
        multiplier = 1 + slip if order_side is OrderSide.BUY else 1 - slip
        fill_price = price * multiplier
        notional = qty * fill_price
        fee = notional * self.risk.fee_pct

        now = self.clock()
        order = Order(
            id=str(uuid.uuid4()),
            account_id=account.id,
            symbol=symbol,
            side=order_side,
            qty=qty,
            status=OrderStatus.FILLED,
            agent_id=agent_id,
            generation_id=generation_id,
            filled_price=fill_price,
            filled_qty=qty,
            slippage_pct=slip,
            tags=tags,
            created_at=now,
            filled_at=now,
        )
        fill = Fill(
            order_id=order.id,
            symbol=symbol,
            side=order_side,
            qty=qty,
            price=fill_price,
            fee=fee,
            timestamp=now,
            agent_id=agent_id,
            generation_id=generation_id,
            tags=tags,
        )
        outcome = await self.store.apply_paper_fill(order, fill)
        if not outcome.ok:
            return await self._reject(
                account.id, symbol, order_side, qty, outcome.reason, agent_id, generation_id, tags
            )

        logger.info(
            f"Paper fill: {order_side.value} {qty} {symbol} @ {fill_price:.4f} "
            f"(slippage {slip * 100:.3f}%, fee ${fee:.4f})"
        )
        return ExecutionResult(
            ok=True,
            order_id=order.id,
            fill_price=fill_price,
            fee=fee,
            slippage_pct=slip,
            realized_pnl=outcome.realized_pnl,
        )

    async def liquidate(
        self,
        position: Position,
        mark_price: float,
        generation_id: Optional[str],
        reason: str = "generation_end",
    ) -> ExecutionResult:
        """Forced sell of a whole position at mark, tagged so fitness ignores it."""
        tags = {"liquidation": True, "forced": True, "reason": reason}
        return await self.submit_order(
            symbol=position.symbol,
            side=OrderSide.SELL.value,
            qty=position.qty,
            agent_id=None,
            generation_id=generation_id,
            tags=tags,
            price=mark_price,
            slippage_pct=0.0,
        )

