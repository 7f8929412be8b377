import asyncio
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence

from loguru import logger
from supabase import Client, create_client

from evotrader.core.types import (
    Agent,
    AgentStatus,
    ArmSession,
    Fill,
    Generation,
    Order,
    PaperAccount,
    PaperFillOutcome,
    Position,
    ShadowTrade,
    SpendResult,
    SystemState,
    SystemStatus,
    TerminationReason,
)
from evotrader.core.utils import to_iso, utc_now
from evotrader.database.ledger_store import LedgerStore
from evotrader.errors import CollaboratorError


class SupabaseLedgerStore(LedgerStore):
    """Ledger store over Supabase/PostgREST.

    The supabase client is synchronous, so every call runs in a worker thread.
    Atomic transitions are the SQL functions in ``database/migrations`` invoked
    through ``rpc``. Failures are logged and raised as ``CollaboratorError`` so
    the calling cycle fails closed.
    """

    def __init__(self, supabase_url: str, supabase_key: str, client: Optional[Client] = None):
        self.client: Client = client or create_client(supabase_url, supabase_key)
        logger.info("Supabase ledger store initialized")

    async def _run(self, what: str, fn: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(fn)
        except Exception as e:
            logger.error(f"Supabase {what} failed: {e}")
            raise CollaboratorError("ledger", f"{what} failed: {e}") from e

    def _table(self, name: str):
        return self.client.table(name)

    # ---- system state / config -------------------------------------------------------

    async def _system_state_row(self) -> Dict[str, Any]:
        response = await self._run(
            "system_state read",
            lambda: self._table("system_state").select("*").limit(1).execute(),
        )
        return response.data[0] if response.data else {}

    async def get_system_state(self) -> SystemState:
        return SystemState.from_row(await self._system_state_row())

    async def update_system_state(self, fields: Dict[str, Any]) -> None:
        row = await self._system_state_row()
        if not row:
            raise CollaboratorError("ledger", "system_state row missing")
        payload = {k: to_iso(v) if isinstance(v, datetime) else v for k, v in fields.items()}
        payload["updated_at"] = to_iso(utc_now())
        await self._run(
            "system_state update",
            lambda: self._table("system_state").update(payload).eq("id", row["id"]).execute(),
        )

    async def transition_system_status(
        self, allowed_from: Iterable[SystemStatus], new_status: SystemStatus
    ) -> Optional[SystemStatus]:
        allowed = [SystemStatus(s).value for s in allowed_from]
        response = await self._run(
            "system status transition",
            lambda: self.client.rpc(
                "transition_system_status",
                {"allowed_from": allowed, "new_status": new_status.value},
            ).execute(),
        )
        previous = response.data
        if isinstance(previous, list):
            previous = previous[0] if previous else None
        return SystemStatus(previous) if previous else None

    async def get_config(self) -> Dict[str, Any]:
        response = await self._run(
            "system_config read",
            lambda: self._table("system_config").select("config").limit(1).execute(),
        )
        if not response.data:
            return {}
        return dict(response.data[0].get("config") or {})

    async def merge_config(self, patch: Dict[str, Any]) -> Dict[str, Any]:
        response = await self._run(
            "system_config merge",
            lambda: self.client.rpc("merge_system_config", {"patch": patch}).execute(),
        )
        return dict(response.data or {})

    # ---- market data -------------------------------------------------------------------

    async def list_market_data(self, symbols: Optional[Sequence[str]] = None) -> List[Dict[str, Any]]:
        def query():
            q = self._table("market_data").select("*")
            if symbols is not None:
                q = q.in_("symbol", list(symbols))
            return q.order("symbol").execute()

        response = await self._run("market_data read", query)
        return list(response.data or [])

    # ---- agents / generations -------------------------------------------------------------

    async def list_agents(
        self, generation_id: str, statuses: Optional[Iterable[AgentStatus]] = None
    ) -> List[Agent]:
        wanted = [AgentStatus(s).value for s in statuses] if statuses else None

        def query():
            q = self._table("agents").select("*").eq("generation_id", generation_id)
            if wanted:
                q = q.in_("status", wanted)
            return q.order("created_at").order("id").execute()

        response = await self._run("agents read", query)
        return [Agent.from_row(r) for r in response.data or []]

    async def update_agent_status(self, agent_ids: Sequence[str], status: AgentStatus) -> None:
        if not agent_ids:
            return
        await self._run(
            "agent status update",
            lambda: self._table("agents").update({"status": status.value}).in_("id", list(agent_ids)).execute(),
        )

    async def get_generation(self, generation_id: str) -> Optional[Generation]:
        response = await self._run(
            "generation read",
            lambda: self._table("generations").select("*").eq("id", generation_id).limit(1).execute(),
        )
        return Generation.from_row(response.data[0]) if response.data else None

    async def get_active_generation(self) -> Optional[Generation]:
        response = await self._run(
            "active generation read",
            lambda: self._table("generations").select("*").eq("is_active", True)
            .order("generation_number", desc=True).limit(1).execute(),
        )
        return Generation.from_row(response.data[0]) if response.data else None

    async def start_generation(self) -> Generation:
        response = await self._run(
            "start_new_generation",
            lambda: self.client.rpc("start_new_generation", {}).execute(),
        )
        generation_id = response.data
        if isinstance(generation_id, list):
            generation_id = generation_id[0] if generation_id else None
        generation = await self.get_generation(str(generation_id)) if generation_id else None
        if generation is None:
            raise CollaboratorError("ledger", "start_new_generation returned no generation")
        return generation

    async def begin_generation_end(self, generation_id: str, stale_after_seconds: float = 600) -> bool:
        response = await self._run(
            "begin_generation_end",
            lambda: self.client.rpc(
                "begin_generation_end",
                {"gen_id": generation_id, "stale_after_seconds": int(stale_after_seconds)},
            ).execute(),
        )
        return bool(response.data)

    async def end_generation(self, generation_id: str, reason: TerminationReason) -> bool:
        response = await self._run(
            "end_generation",
            lambda: self.client.rpc(
                "end_generation", {"gen_id": generation_id, "reason": TerminationReason(reason).value}
            ).execute(),
        )
        return bool(response.data)

    async def rollover_generation(self, generation_id: str, reason: TerminationReason) -> Optional[Generation]:
        response = await self._run(
            "rollover_generation",
            lambda: self.client.rpc(
                "rollover_generation", {"gen_id": generation_id, "reason": TerminationReason(reason).value}
            ).execute(),
        )
        new_id = response.data
        if isinstance(new_id, list):
            new_id = new_id[0] if new_id else None
        if not new_id:
            return None
        generation = await self.get_generation(str(new_id))
        if generation is None:
            raise CollaboratorError("ledger", "rollover_generation returned an unknown generation")
        return generation

    async def update_generation_stats(
        self,
        generation_id: str,
        total_pnl: float,
        total_trades: int,
        max_drawdown: float,
        avg_fitness: Optional[float] = None,
    ) -> None:
        payload: Dict[str, Any] = {
            "total_pnl": round(total_pnl, 2),
            "total_trades": total_trades,
            "max_drawdown": round(max_drawdown, 4),
        }
        if avg_fitness is not None:
            payload["avg_fitness"] = round(avg_fitness, 6)
        await self._run(
            "generation stats update",
            lambda: self._table("generations").update(payload).eq("id", generation_id).execute(),
        )

    # ---- paper account ----------------------------------------------------------------------

    async def get_paper_account(self) -> Optional[PaperAccount]:
        response = await self._run(
            "paper account read",
            lambda: self._table("paper_accounts").select("*").limit(1).execute(),
        )
        return PaperAccount.from_row(response.data[0]) if response.data else None

    async def set_account_cash(self, account_id: str, cash: float) -> None:
        await self._run(
            "paper account cash update",
            lambda: self._table("paper_accounts").update(
                {"cash": cash, "updated_at": to_iso(utc_now())}
            ).eq("id", account_id).execute(),
        )

    async def raise_peak_equity(self, account_id: str, equity: float) -> float:
        response = await self._run(
            "raise_peak_equity",
            lambda: self.client.rpc("raise_peak_equity", {"account_id": account_id, "equity": equity}).execute(),
        )
        value = response.data
        if isinstance(value, list):
            value = value[0] if value else equity
        return float(value)

    async def list_positions(self, account_id: str) -> List[Position]:
        response = await self._run(
            "positions read",
            lambda: self._table("paper_positions").select("*").eq("account_id", account_id).gt("qty", 0).execute(),
        )
        return [Position.from_row(r) for r in response.data or []]

    async def save_position(self, position: Position) -> None:
        if position.qty <= 0:
            await self._run(
                "position delete",
                lambda: self._table("paper_positions").delete()
                .eq("account_id", position.account_id).eq("symbol", position.symbol).execute(),
            )
            return
        payload = {
            "account_id": position.account_id,
            "symbol": position.symbol,
            "qty": position.qty,
            "avg_entry_price": position.avg_entry_price,
            "realized_pnl": position.realized_pnl,
            "updated_at": to_iso(utc_now()),
        }
        await self._run(
            "position upsert",
            lambda: self._table("paper_positions").upsert(payload, on_conflict="account_id,symbol").execute(),
        )

    async def insert_order(self, order: Order) -> Order:
        row = {k: v for k, v in order.to_row().items() if v is not None}
        response = await self._run(
            "order insert",
            lambda: self._table("paper_orders").insert(row).execute(),
        )
        return Order.from_row(response.data[0]) if response.data else order

    async def apply_paper_fill(self, order: Order, fill: Fill) -> PaperFillOutcome:
        order_row = {k: v for k, v in order.to_row().items() if v is not None}
        response = await self._run(
            "apply_paper_fill",
            lambda: self.client.rpc(
                "apply_paper_fill", {"order_row": order_row, "fill_row": fill.to_row()}
            ).execute(),
        )
        rows = response.data or []
        if isinstance(rows, dict):
            return PaperFillOutcome.from_row(rows)
        return PaperFillOutcome.from_row(rows[0] if rows else None)

    async def count_filled_orders(
        self,
        since: Optional[datetime] = None,
        agent_id: Optional[str] = None,
        generation_id: Optional[str] = None,
        tag: Optional[str] = None,
    ) -> int:
        def query():
            q = self._table("paper_orders").select("id", count="exact").eq("status", "filled")
            if since is not None:
                q = q.gte("created_at", to_iso(since))
            if agent_id is not None:
                q = q.eq("agent_id", agent_id)
            if generation_id is not None:
                q = q.eq("generation_id", generation_id)
            if tag is not None:
                q = q.eq(f"tags->>{tag}", "true")
            return q.execute()

        response = await self._run("filled order count", query)
        return int(response.count or 0)

    async def list_filled_orders(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Order]:
        def query():
            q = self._table("paper_orders").select("*").eq("status", "filled")
            if generation_id is not None:
                q = q.eq("generation_id", generation_id)
            if agent_id is not None:
                q = q.eq("agent_id", agent_id)
            return q.order("created_at").execute()

        response = await self._run("filled orders read", query)
        return [Order.from_row(r) for r in response.data or []]

    async def list_fills(
        self, generation_id: Optional[str] = None, agent_id: Optional[str] = None
    ) -> List[Fill]:
        def query():
            q = self._table("paper_fills").select(
                "*, paper_orders!inner(agent_id, generation_id, tags)"
            )
            if generation_id is not None:
                q = q.eq("paper_orders.generation_id", generation_id)
            if agent_id is not None:
                q = q.eq("paper_orders.agent_id", agent_id)
            return q.order("timestamp").order("id").execute()

        response = await self._run("fills read", query)
        fills: List[Fill] = []
        for row in response.data or []:
            order = row.pop("paper_orders", None) or {}
            row.update({
                "agent_id": order.get("agent_id"),
                "generation_id": order.get("generation_id"),
                "tags": order.get("tags") or {},
            })
            fills.append(Fill.from_row(row))
        return fills

    # ---- events -----------------------------------------------------------------------------------

    async def log_event(
        self,
        action: str,
        metadata: Optional[Dict[str, Any]] = None,
        previous_status: Optional[str] = None,
        new_status: Optional[str] = None,
    ) -> None:
        row: Dict[str, Any] = {"action": action, "metadata": metadata or {}}
        if previous_status is not None:
            row["previous_status"] = previous_status
        if new_status is not None:
            row["new_status"] = new_status
        await self._run(
            f"event insert ({action})",
            lambda: self._table("control_events").insert(row).execute(),
        )

    async def list_events(
        self, action: str, since: Optional[datetime] = None, limit: Optional[int] = None
    ) -> List[Dict[str, Any]]:
        def query():
            q = self._table("control_events").select("*").eq("action", action)
            if since is not None:
                q = q.gte("triggered_at", to_iso(since))
            q = q.order("triggered_at", desc=True)
            if limit is not None:
                q = q.limit(limit)
            return q.execute()

        response = await self._run(f"events read ({action})", query)
        return list(response.data or [])

    async def count_events(self, action: str, since: Optional[datetime] = None) -> int:
        def query():
            q = self._table("control_events").select("id", count="exact").eq("action", action)
            if since is not None:
                q = q.gte("triggered_at", to_iso(since))
            return q.execute()

        response = await self._run(f"events count ({action})", query)
        return int(response.count or 0)

    async def count_decisions(self, decision: str, since: datetime) -> int:
        response = await self._run(
            "decision count",
            lambda: self._table("control_events").select("id", count="exact")
            .eq("action", "trade_decision")
            .eq("metadata->>decision", decision)
            .gte("triggered_at", to_iso(since))
            .execute(),
        )
        return int(response.count or 0)

    # ---- performance / shadow --------------------------------------------------------------------

    async def save_performance(self, record: Dict[str, Any]) -> None:
        await self._run(
            "performance upsert",
            lambda: self._table("performance").upsert(record, on_conflict="agent_id,generation_id").execute(),
        )

    async def list_performance(self, generation_id: str) -> List[Dict[str, Any]]:
        response = await self._run(
            "performance read",
            lambda: self._table("performance").select("*").eq("generation_id", generation_id).execute(),
        )
        return list(response.data or [])

    async def insert_shadow_trade(self, trade: ShadowTrade) -> None:
        row = {
            "id": trade.id,
            "agent_id": trade.agent_id,
            "generation_id": trade.generation_id,
            "symbol": trade.symbol,
            "side": trade.side,
            "entry_time": to_iso(trade.entry_time),
            "entry_price": trade.entry_price,
            "intended_qty": trade.intended_qty,
            "confidence": trade.confidence,
            "outcome_status": trade.outcome_status,
        }
        await self._run(
            "shadow trade insert",
            lambda: self._table("shadow_trades").insert(row).execute(),
        )

    async def list_shadow_trades(
        self,
        status: Optional[str] = None,
        generation_id: Optional[str] = None,
        agent_id: Optional[str] = None,
    ) -> List[ShadowTrade]:
        def query():
            q = self._table("shadow_trades").select("*")
            if status is not None:
                q = q.eq("outcome_status", status)
            if generation_id is not None:
                q = q.eq("generation_id", generation_id)
            if agent_id is not None:
                q = q.eq("agent_id", agent_id)
            return q.order("entry_time").execute()

        response = await self._run("shadow trades read", query)
        return [ShadowTrade.from_row(r) for r in response.data or []]

    async def update_shadow_trade(self, trade_id: str, fields: Dict[str, Any]) -> None:
        payload = {k: to_iso(v) if isinstance(v, datetime) else v for k, v in fields.items()}
        await self._run(
            "shadow trade update",
            lambda: self._table("shadow_trades").update(payload).eq("id", trade_id).execute(),
        )

    # ---- arm sessions -------------------------------------------------------------------------------

    async def create_arm_session(self, session: ArmSession) -> ArmSession:
        row = {k: v for k, v in session.to_row().items() if v is not None}
        response = await self._run(
            "arm session insert",
            lambda: self._table("arm_sessions").insert(row).execute(),
        )
        return ArmSession.from_row(response.data[0]) if response.data else session

    async def get_arm_session(self, session_id: str) -> Optional[ArmSession]:
        response = await self._run(
            "arm session read",
            lambda: self._table("arm_sessions").select("*").eq("id", session_id).limit(1).execute(),
        )
        return ArmSession.from_row(response.data[0]) if response.data else None

    async def spend_arm_session(self, session_id: str, request_id: str) -> SpendResult:
        response = await self._run(
            "spend_arm_session",
            lambda: self.client.rpc(
                "spend_arm_session", {"session_id": session_id, "request_id": request_id}
            ).execute(),
        )
        rows = response.data or []
        return SpendResult.from_row(rows[0] if isinstance(rows, list) and rows else None)
