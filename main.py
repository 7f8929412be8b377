"""
evotrader - Main Entry Point
One invocation per scheduler tick: run a single operation, print its JSON result, exit.
"""
import argparse
import asyncio
import json
import sys
from typing import Any, Dict, List, Optional

from loguru import logger

from config.settings import Settings
from evotrader.errors import EvoTraderError
from evotrader.execution.live_safety import LiveOrderRequest
from evotrader.logging_setup import setup_logging
from evotrader.runtime import Services, build_store, seed_demo


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="evotrader", description="Evolutionary trading population control core")
    parser.add_argument("--dry-run", action="store_true", help="Use an in-memory ledger seeded with a demo cohort")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("cycle", help="Run one decision cycle")
    sub.add_parser("fitness", help="Score the active generation")
    sub.add_parser("lifecycle", help="Check generation end conditions and roll over")
    sub.add_parser("shadow", help="Mark pending shadow trades to market")
    sub.add_parser("status", help="Show system state")

    arm = sub.add_parser("arm", help="Arm the live path with a single-use session")
    arm.add_argument("--minutes", type=float, default=None, help="Arm duration (1-60, default 30)")
    disarm = sub.add_parser("disarm", help="Disarm the live path")
    disarm.add_argument("--reason", default="manual")

    live = sub.add_parser("live-execute", help="Request one live order through the safety chain")
    live.add_argument("--symbol", required=True)
    live.add_argument("--side", required=True, choices=["buy", "sell"])
    live.add_argument("--qty", type=float, default=0.0)
    live.add_argument("--quote-usd", type=float, default=None)
    live.add_argument("--session", dest="arm_session_id", default=None, help="Arm session id")
    live.add_argument("--request-id", default=None, help="Idempotency key")

    control = sub.add_parser("control", help="Start, pause or stop the system")
    control.add_argument("action", choices=["start", "pause", "stop"])
    control.add_argument("--reason", default=None)

    loss = sub.add_parser("loss-reaction", help="Reset the loss reaction session or clear its cooldown")
    loss.add_argument("action", choices=["reset", "clear-cooldown"])
    loss.add_argument("--reason", default="manual")
    return parser


async def run_command(args: argparse.Namespace, services: Services) -> Dict[str, Any]:
    command = args.command
    if command == "cycle":
        return (await services.orchestrator().run()).to_dict()
    if command == "fitness":
        return (await services.fitness().run()).to_dict()
    if command == "lifecycle":
        return (await services.lifecycle().run()).to_dict()
    if command == "shadow":
        return (await services.shadow().run()).to_dict()
    if command == "status":
        return {"ok": True, **(await services.status())}
    if command == "arm":
        return (await services.arm().arm(args.minutes)).to_dict()
    if command == "disarm":
        return (await services.arm().disarm(args.reason)).to_dict()
    if command == "live-execute":
        request = LiveOrderRequest(
            symbol=args.symbol,
            side=args.side,
            qty=args.qty,
            quote_usd=args.quote_usd,
            arm_session_id=args.arm_session_id,
            request_id=args.request_id,
        )
        return (await services.live_chain().execute(request)).to_dict()
    if command == "control":
        return (await services.controls().apply(args.action, args.reason)).to_dict()
    if command == "loss-reaction":
        return await services.loss_reaction_action(args.action, args.reason)
    raise EvoTraderError(f"unknown command {command}")


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    settings = Settings.load()
    setup_logging(settings)

    try:
        store = build_store(settings, dry_run=args.dry_run)
        if args.dry_run:
            await seed_demo(store)
        result = await run_command(args, Services(store=store, settings=settings))
    except EvoTraderError as e:
        logger.error(f"{args.command} failed: {e}")
        result = {"ok": False, "error": str(e)}

    print(json.dumps(result, indent=2, default=str))
    return 0 if result.get("ok", False) else 1


def cli() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    cli()
