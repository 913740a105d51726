"""
cli.py — algodesk command line.

Thin front end over the REST wrappers and live streams. Every command runs
inside one asyncio.run(); handled failures print a one-line message and exit
with status 1, argparse usage errors exit with 2.

Usage (CLI):
    algodesk login --email me@example.com
    algodesk strategies list
    algodesk strategies push s1 my_strategy.py
    algodesk backtest run --strategy-id s1 --symbol RELIANCE --from 2024-01-01 --to 2024-06-30
    algodesk watch orders --strategy-id s1
    algodesk watch backtest job_123

Usage (programmatic):
    from cli import main
    exit_code = main(["health"])
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import json
import sys
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

from loguru import logger

import auth_api
import backtesting_api
import orders_api
import strategies_api
from api_client import ApiClient
from config import DeskConfig, load_config
from editor import EditorArbiter, codes_match
from errors import ConfigError, DeskError, describe_error
from flow_builder import FlowBuilder
from health_check import run_health_checks
from session import SessionManager, StateStore
from stream_events import ResourceKind
from streams import (
    StreamSubscription,
    watch_backtest_history,
    watch_backtest_jobs,
    watch_backtest_progress,
    watch_historical_data,
    watch_orders,
    watch_strategy_status,
)


EXIT_OK = 0
EXIT_ERROR = 1


# ─── Logging ──────────────────────────────────────────────────────────────────

def setup_logging(log_level: str = "INFO", log_file: Optional[str] = "logs/algodesk.log") -> None:
    logger.remove()
    logger.add(
        sys.stdout,
        format="<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | {message}",
        level=log_level,
        colorize=True,
    )
    if log_file:
        logger.add(
            log_file,
            rotation="10 MB",
            retention="7 days",
            level="DEBUG",
            format="{time:YYYY-MM-DD HH:mm:ss} | {level} | {message}",
        )


# ─── Context ──────────────────────────────────────────────────────────────────

class Desk:
    """Config, session and REST client shared by one CLI invocation."""

    def __init__(self, config: DeskConfig, sessions: Optional[SessionManager] = None) -> None:
        self.config = config
        self.sessions = sessions or SessionManager(StateStore(config.state_path))
        self.client = ApiClient(config, self.sessions)

    def firebase(self) -> auth_api.FirebaseAuth:
        return auth_api.FirebaseAuth(self.config.firebase, timeout=self.config.request_timeout)

    def require_login(self) -> None:
        if not self.sessions.current.is_authenticated:
            raise DeskError("Not logged in. Run `algodesk login` first.")


def _print_json(data: Any) -> None:
    print(json.dumps(data, indent=2, default=str))


def _read_password(args: argparse.Namespace) -> str:
    return args.password or getpass.getpass("Password: ")


# ─── Auth commands ────────────────────────────────────────────────────────────

async def cmd_login(desk: Desk, args: argparse.Namespace) -> int:
    user = await auth_api.login(desk.client, desk.firebase(), args.email, _read_password(args))
    print(f"Logged in as {user.email}")
    return EXIT_OK


async def cmd_register(desk: Desk, args: argparse.Namespace) -> int:
    user = await auth_api.register(desk.client, desk.firebase(), args.name, args.email, _read_password(args))
    print(f"Registered and logged in as {user.email}")
    return EXIT_OK


async def cmd_reset_password(desk: Desk, args: argparse.Namespace) -> int:
    await desk.firebase().send_password_reset(args.email)
    print(f"Password reset email sent to {args.email}")
    return EXIT_OK


async def cmd_logout(desk: Desk, args: argparse.Namespace) -> int:
    await auth_api.logout(desk.client)
    print("Logged out")
    return EXIT_OK


async def cmd_whoami(desk: Desk, args: argparse.Namespace) -> int:
    user = await auth_api.restore_session(desk.client)
    if user is None:
        print("Not logged in")
        return EXIT_ERROR
    print(f"{user.email} ({user.name or 'no name'}) id={user.id}")
    return EXIT_OK


async def cmd_health(desk: Desk, args: argparse.Namespace) -> int:
    results = await run_health_checks(desk.client)
    for r in results:
        mark = "OK  " if r.success else "FAIL"
        status = f" [{r.status}]" if r.status is not None else ""
        print(f"{mark} {r.name:<8} {r.message}{status}")
    return EXIT_OK if all(r.success for r in results) else EXIT_ERROR


# ─── Strategy commands ────────────────────────────────────────────────────────

async def cmd_strategies(desk: Desk, args: argparse.Namespace) -> int:
    desk.require_login()
    client = desk.client
    action = args.action

    if action == "list":
        strategies = await strategies_api.list_strategies(client, args.status)
        if not strategies:
            print("No strategies")
        for s in strategies:
            print(f"{s.id:<24} {s.status.value:<8} {s.name}  trades={s.total_trades} pnl={s.total_pnl:.2f}")
        return EXIT_OK

    if action == "show":
        strategy = await strategies_api.get_strategy(client, args.strategy_id)
        print(f"{strategy.name} [{strategy.status.value}] id={strategy.id}")
        if strategy.description:
            print(strategy.description)
        print()
        print(strategy.code or "(no code)")
        return EXIT_OK

    if action in ("start", "resume"):
        fn = strategies_api.start_strategy if action == "start" else strategies_api.resume_strategy
        result = await fn(client, args.strategy_id, args.broker, args.credentials_id)
    elif action == "stop":
        result = await strategies_api.stop_strategy(client, args.strategy_id)
    elif action == "pause":
        result = await strategies_api.pause_strategy(client, args.strategy_id)
    elif action == "delete":
        await strategies_api.delete_strategy(client, args.strategy_id)
        print(f"Deleted {args.strategy_id}")
        return EXIT_OK
    elif action == "push":
        return await _push_code(desk, args.strategy_id, Path(args.file))
    elif action == "flow":
        return await _show_flow(desk, args.strategy_id, args.generate)
    else:
        raise ValueError(f"unknown strategies action {action}")

    print(f"{result.strategy_id}: {result.status.value} {result.message}".rstrip())
    return EXIT_OK


async def _push_code(desk: Desk, strategy_id: str, path: Path) -> int:
    """Replace a strategy's code with a local file, the way an external edit lands in the editor."""
    code = path.read_text()
    strategy = await strategies_api.get_strategy(desk.client, strategy_id)

    async def _save(sid: str, value: str, auto_save: bool) -> Any:
        return await strategies_api.update_strategy(desk.client, sid, {"strategy_code": value}, auto_save)

    if codes_match(code, strategy.code):
        print(f"{strategy.name}: code unchanged")
        return EXIT_OK

    try:
        validation = await strategies_api.validate_code(desk.client, code)
    except DeskError as exc:
        logger.warning(f"Validation unavailable: {describe_error(exc)}")
        validation = None
    if validation is not None and not validation.valid:
        for issue in validation.errors:
            print(f"line {issue.line}:{issue.column}: {issue.message}")
        return EXIT_ERROR

    editor = EditorArbiter(_save, desk.config.autosave_delay)
    editor.select_strategy(strategy.id, strategy.code)
    if not editor.inject(code):
        raise ValueError(f"{path} is empty")
    try:
        await editor.save_now()
    finally:
        await editor.close()
    print(f"{strategy.name}: code saved ({len(code.splitlines())} lines)")
    return EXIT_OK


async def _show_flow(desk: Desk, strategy_id: str, generate: bool) -> int:
    strategy = await strategies_api.get_strategy(desk.client, strategy_id)
    builder = FlowBuilder.for_client(desk.client, desk.config.autosave_delay)
    builder.load(strategy.id, strategy.name, strategy.strategy_model)
    if not builder.flow:
        print(f"{strategy.name}: no visual flow")
        return EXIT_OK
    for step in builder.flow:
        deps = f" <- {', '.join(step.depends_on)}" if step.depends_on else ""
        print(f"#{step.order} {step.type.value:<9} {step.title}{deps}")
    if not generate:
        return EXIT_OK

    refreshed = await builder.generate_code()
    await builder.close()
    if refreshed is None:
        print(builder.error or "Code generation failed")
        return EXIT_ERROR
    print()
    print(refreshed.code or "(backend returned no code)")
    return EXIT_OK


# ─── Orders / backtests ───────────────────────────────────────────────────────

async def cmd_orders(desk: Desk, args: argparse.Namespace) -> int:
    desk.require_login()
    if args.action == "cancel":
        order = await orders_api.cancel_order(desk.client, args.order_id)
        print(f"{order.id or args.order_id}: {order.status or 'cancel requested'}")
        return EXIT_OK

    orders = await orders_api.list_orders(desk.client, limit=args.limit, status_filter=args.status)
    if not orders:
        print("No orders")
    for o in orders:
        price = f"@{o.price}" if o.price is not None else ""
        print(f"{o.id:<20} {o.status:<10} {o.transaction_type:<4} {o.quantity} {o.symbol}{price}")
    return EXIT_OK


async def cmd_backtest(desk: Desk, args: argparse.Namespace) -> int:
    desk.require_login()
    if args.action == "history":
        items = await backtesting_api.get_backtest_history(desk.client, args.limit)
        if not items:
            print("No backtests")
        for b in items:
            print(f"{b.id:<24} {b.symbol:<12} {b.from_date}..{b.to_date} "
                  f"return={b.total_return_pct:.2f}% trades={b.total_trades}")
        return EXIT_OK

    if args.file:
        code = Path(args.file).read_text()
        strategy_id = args.strategy_id
    elif args.strategy_id:
        strategy = await strategies_api.get_strategy(desk.client, args.strategy_id)
        code, strategy_id = strategy.code, strategy.id
    else:
        raise ValueError("either --file or --strategy-id is required")

    request = backtesting_api.BacktestRequest(
        strategy_code=code,
        symbol=args.symbol,
        exchange=args.exchange,
        from_date=args.from_date,
        to_date=args.to_date,
        initial_cash=args.cash,
        commission=args.commission,
        strategy_id=strategy_id,
    )
    result = await backtesting_api.run_backtest(desk.client, request, args.broker, args.credentials_id)
    print(f"Backtest {result.backtest_id} {result.symbol} {result.from_date}..{result.to_date}")
    print(f"  final value  {result.final_value:,.2f} (from {result.initial_cash:,.2f})")
    print(f"  return       {result.total_return_pct:.2f}%")
    print(f"  trades       {result.total_trades} (won {result.winning_trades}, lost {result.losing_trades})")
    if result.sharpe_ratio is not None:
        print(f"  sharpe       {result.sharpe_ratio:.2f}")
    if result.max_drawdown_pct is not None:
        print(f"  max drawdown {result.max_drawdown_pct:.2f}%")
    return EXIT_OK


# ─── Watch ────────────────────────────────────────────────────────────────────

def describe_change(sub: StreamSubscription) -> str:
    """One status line for the current local state of a subscription."""
    status = "connected" if sub.connected else "disconnected"
    if sub.finished:
        status = "finished"
    prefix = f"[{sub.kind.value}] {status}"
    if sub.last_error and not sub.connected:
        prefix += f" ({sub.last_error})"

    snap = sub.snapshot
    if sub.kind == ResourceKind.BACKTEST_PROGRESS:
        line = f"{prefix} {snap['status']} {snap['progress']:.0f}%"
        if snap.get("outcome"):
            line += f" outcome={snap['outcome']}"
        if snap.get("error_message"):
            line += f" error={snap['error_message']}"
        return line
    if sub.kind in (ResourceKind.HISTORICAL_DATA, ResourceKind.HISTORICAL_DATA_MULTI):
        parts = [f"{name}={len(points)}" for name, points in snap.items()]
        return f"{prefix} {' '.join(parts)} bars"
    return f"{prefix} {len(snap)} records"


def _record_lines(sub: StreamSubscription) -> List[str]:
    if sub.kind == ResourceKind.ORDERS:
        return [f"  {o.get('id')} {o.get('status')} {o.get('transaction_type')} "
                f"{o.get('quantity')} {o.get('symbol')}" for o in sub.snapshot]
    if sub.kind == ResourceKind.STRATEGY_STATUS:
        return [f"  {s.get('id')} {s.get('status')} {s.get('name', '')} "
                f"trades={s.get('total_trades', 0)} pnl={s.get('total_pnl', 0)}" for s in sub.snapshot]
    if sub.kind == ResourceKind.BACKTEST_JOBS:
        return [f"  {j.get('job_id')} {j.get('status')} {j.get('progress', 0)}%" for j in sub.snapshot]
    if sub.kind == ResourceKind.BACKTEST_HISTORY:
        return [f"  {b.get('id') or b.get('backtest_id')} {b.get('symbol', '')} "
                f"return={b.get('total_return_pct', 0)}%" for b in sub.snapshot]
    return []


def _printer(verbose: bool) -> Callable[[StreamSubscription], None]:
    last: Dict[str, str] = {}

    def _on_change(sub: StreamSubscription) -> None:
        line = describe_change(sub)
        if line == last.get("line"):
            return
        last["line"] = line
        print(line, flush=True)
        if verbose:
            for record in _record_lines(sub):
                print(record, flush=True)

    return _on_change


async def cmd_watch(desk: Desk, args: argparse.Namespace) -> int:
    desk.require_login()
    on_change = _printer(not args.quiet)
    config, sessions = desk.config, desk.sessions
    target = args.target

    if target == "orders":
        sub = watch_orders(config, sessions, args.strategy_id, on_change=on_change, auto_open=False)
    elif target == "strategies":
        sub = watch_strategy_status(config, sessions, args.strategy_id, on_change=on_change, auto_open=False)
    elif target == "jobs":
        sub = watch_backtest_jobs(config, sessions, args.limit, args.status, on_change=on_change, auto_open=False)
    elif target == "history":
        sub = watch_backtest_history(config, sessions, args.limit, on_change=on_change, auto_open=False)
    elif target == "backtest":
        sub = watch_backtest_progress(
            config, sessions, args.job_id, client=desk.client, on_change=on_change, auto_open=False
        )
    elif target == "data":
        intervals = [i.strip() for i in args.intervals.split(",") if i.strip()] if args.intervals else None
        sub = watch_historical_data(
            config, sessions, args.backtest_id,
            interval=None if intervals else args.interval,
            intervals=intervals,
            on_change=on_change,
            auto_open=False,
        )
    else:
        raise ValueError(f"unknown watch target {target}")

    if not sub.open():
        raise DeskError("Not logged in. Run `algodesk login` first.")
    try:
        await sub.wait()
    finally:
        sub.close()

    if sub.kind == ResourceKind.BACKTEST_PROGRESS and sub.snapshot.get("result"):
        _print_json(sub.snapshot["result"])
    if sub.finished or sub.last_error is None:
        return EXIT_OK
    print(sub.last_error)
    return EXIT_ERROR


COMMANDS: Dict[str, Callable[[Desk, argparse.Namespace], Awaitable[int]]] = {
    "login": cmd_login,
    "register": cmd_register,
    "reset-password": cmd_reset_password,
    "logout": cmd_logout,
    "whoami": cmd_whoami,
    "health": cmd_health,
    "strategies": cmd_strategies,
    "orders": cmd_orders,
    "backtest": cmd_backtest,
    "watch": cmd_watch,
}


# ─── CLI entry point ──────────────────────────────────────────────────────────

def _add_broker_args(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--broker", default=strategies_api.DEFAULT_BROKER, help="Broker type")
    parser.add_argument("--credentials-id", default=None, help="Broker credentials id")


def _parse_args(argv: Optional[list] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="algodesk", description="Algorithmic trading desk client")
    parser.add_argument("--env-file", default=None, help="Load environment from this .env file")
    parser.add_argument("--log-level", default=None, help="Console log level (default from ALGODESK_LOG_LEVEL)")
    sub = parser.add_subparsers(dest="command", required=True)

    p = sub.add_parser("login", help="Sign in with email and password")
    p.add_argument("--email", required=True)
    p.add_argument("--password", default=None, help="Prompted for when omitted")

    p = sub.add_parser("register", help="Create an account")
    p.add_argument("--name", required=True)
    p.add_argument("--email", required=True)
    p.add_argument("--password", default=None, help="Prompted for when omitted")

    p = sub.add_parser("reset-password", help="Send a password reset email")
    p.add_argument("--email", required=True)

    sub.add_parser("logout", help="Forget the stored session")
    sub.add_parser("whoami", help="Show the logged-in user")
    sub.add_parser("health", help="Check backend reachability")

    p = sub.add_parser("strategies", help="Manage strategies")
    actions = p.add_subparsers(dest="action", required=True)
    a = actions.add_parser("list")
    a.add_argument("--status", default=None, help="Filter by status")
    for name in ("show", "stop", "pause", "delete"):
        actions.add_parser(name).add_argument("strategy_id")
    for name in ("start", "resume"):
        a = actions.add_parser(name)
        a.add_argument("strategy_id")
        _add_broker_args(a)
    a = actions.add_parser("push", help="Save a local file as the strategy's code")
    a.add_argument("strategy_id")
    a.add_argument("file")
    a = actions.add_parser("flow", help="Show the visual builder flow")
    a.add_argument("strategy_id")
    a.add_argument("--generate", action="store_true", help="Generate code from the flow")

    p = sub.add_parser("orders", help="List or cancel orders")
    actions = p.add_subparsers(dest="action", required=True)
    a = actions.add_parser("list")
    a.add_argument("--limit", type=int, default=None)
    a.add_argument("--status", default=None)
    actions.add_parser("cancel").add_argument("order_id")

    p = sub.add_parser("backtest", help="Run backtests and list past runs")
    actions = p.add_subparsers(dest="action", required=True)
    a = actions.add_parser("run")
    a.add_argument("--strategy-id", default=None)
    a.add_argument("--file", default=None, help="Strategy code file (instead of a saved strategy)")
    a.add_argument("--symbol", required=True)
    a.add_argument("--exchange", default="NSE")
    a.add_argument("--from", dest="from_date", required=True, help="YYYY-MM-DD")
    a.add_argument("--to", dest="to_date", required=True, help="YYYY-MM-DD")
    a.add_argument("--cash", type=float, default=backtesting_api.DEFAULT_INITIAL_CASH)
    a.add_argument("--commission", type=float, default=backtesting_api.DEFAULT_COMMISSION)
    _add_broker_args(a)
    a = actions.add_parser("history")
    a.add_argument("--limit", type=int, default=50)

    p = sub.add_parser("watch", help="Follow a live stream until interrupted")
    p.add_argument("--quiet", action="store_true", help="Status lines only")
    targets = p.add_subparsers(dest="target", required=True)
    a = targets.add_parser("orders")
    a.add_argument("--strategy-id", default=None)
    a = targets.add_parser("strategies")
    a.add_argument("--strategy-id", default=None)
    a = targets.add_parser("jobs")
    a.add_argument("--limit", type=int, default=10)
    a.add_argument("--status", default=None)
    a = targets.add_parser("history")
    a.add_argument("--limit", type=int, default=50)
    targets.add_parser("backtest").add_argument("job_id")
    a = targets.add_parser("data")
    a.add_argument("backtest_id")
    a.add_argument("--interval", default="day")
    a.add_argument("--intervals", default=None, help="Comma separated, e.g. minute,day")

    return parser.parse_args(argv)


async def _run(args: argparse.Namespace, desk: Desk) -> int:
    async with desk.client:
        return await COMMANDS[args.command](desk, args)


def main(argv: Optional[list] = None) -> int:
    """Run one command. Returns the process exit code."""
    args = _parse_args(argv)
    try:
        config = load_config(env_file=args.env_file)
    except ConfigError as exc:
        print(f"Configuration error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    setup_logging(args.log_level or config.log_level)

    desk = Desk(config)
    try:
        return asyncio.run(_run(args, desk))
    except DeskError as exc:
        print(describe_error(exc), file=sys.stderr)
        return EXIT_ERROR
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return EXIT_ERROR
    except KeyboardInterrupt:
        logger.info("Interrupted")
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
