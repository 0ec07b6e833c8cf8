"""Command-line interface entry point for StockSync."""

from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
import threading
from typing import Any, Iterable
from urllib.parse import urlparse

import requests
import uvicorn
from dotenv import load_dotenv
from sqlalchemy.orm import Session, sessionmaker
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_fixed

from stocksync.browser import client_factory
from stocksync.config import AppConfig, load_config
from stocksync.dashboard import create_app
from stocksync.errors import ConfigError
from stocksync.ledger import LedgerEngine
from stocksync.logging_config import get_logger
from stocksync.pipeline import SyncLock, SyncPipeline
from stocksync.records import Portal
from stocksync.scheduler import SchedulerContext
from stocksync.storage import repo
from stocksync.storage.db import get_engine, init_db, make_session


LOGGER = get_logger(__name__)


def parse_args(argv: Iterable[str] | None = None) -> argparse.Namespace:
    """Parse CLI arguments for the application."""

    parser = argparse.ArgumentParser(
        description="Sync purchase orders and sales invoices from supplier and sales portals into inventory."
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=Path(os.getenv("STOCKSYNC_CONFIG", "config.yml")),
        help="Path to the YAML configuration file (default: config.yml).",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run one sync cycle and exit instead of waiting for the schedule.",
    )
    parser.add_argument(
        "--portal",
        choices=[portal.value for portal in Portal],
        help="Restrict the run to a single portal.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Maximum records per list view (0 or omitted: no limit).",
    )
    parser.add_argument(
        "--no-stock",
        action="store_true",
        help="Sync records without applying them to inventory.",
    )
    parser.add_argument(
        "--ledger-only",
        action="store_true",
        help="Apply pending records to inventory without opening a browser.",
    )
    parser.add_argument(
        "--rebuild-inventory",
        action="store_true",
        help="Recompute inventory quantities from the stock movement log and exit.",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Serve the JSON dashboard in a background thread.",
    )
    parser.add_argument("--host", default=None, help="Dashboard bind host (default from config).")
    parser.add_argument("--port", type=int, default=None, help="Dashboard port (default from config).")
    args = parser.parse_args(list(argv) if argv is not None else None)
    if args.limit is not None and args.limit < 0:
        parser.error("--limit must be zero or positive")
    return args


@retry(
    stop=stop_after_attempt(3),
    wait=wait_fixed(2),
    retry=retry_if_exception_type(requests.RequestException),
    reraise=True,
)
def _send_healthcheck(url: str, verify: bool) -> requests.Response:
    return requests.get(url, timeout=5, verify=verify)


def _ping_healthcheck(url: str | None) -> None:
    if not url:
        LOGGER.info("healthcheck: disabled")
        return
    host = urlparse(str(url)).netloc or urlparse(str(url)).path
    verify_env = os.getenv("HEALTHCHECK_VERIFY")
    verify = True if verify_env is None else verify_env.strip().lower() not in {"0", "false", "no"}
    try:
        response = _send_healthcheck(url, verify)
    except requests.RequestException as exc:
        LOGGER.warning("Healthcheck ping failed | host=%s error=%s", host, exc)
        return
    if response.status_code >= 400:
        LOGGER.warning("Healthcheck returned error | host=%s status=%s", host, response.status_code)
    else:
        LOGGER.info("healthcheck ok | host=%s status=%s", host, response.status_code)


def _start_dashboard_background(app: Any, host: str, port: int) -> tuple[uvicorn.Server, threading.Thread]:
    LOGGER.info("Starting dashboard thread | host=%s port=%s", host, port)
    config = uvicorn.Config(app, host=host, port=port, reload=False, log_config=None)
    server = uvicorn.Server(config)

    def run_dashboard() -> None:
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
        try:
            loop.run_until_complete(server.serve())
        finally:
            loop.close()

    thread = threading.Thread(target=run_dashboard, name="dashboard-server", daemon=True)
    thread.start()
    return server, thread


def _stop_dashboard_background(
    server: uvicorn.Server | None, thread: threading.Thread | None
) -> tuple[uvicorn.Server | None, threading.Thread | None]:
    if server is not None:
        server.should_exit = True
    if thread is not None:
        thread.join(timeout=5)
        LOGGER.info("Dashboard thread joined")
    return None, None


def _startup_maintenance(session_factory: sessionmaker[Session], retention_days: int) -> None:
    session = session_factory()
    try:
        stale = repo.mark_stale_runs(session)
        removed = repo.cleanup_sync_logs(session, days=retention_days)
        session.commit()
        if stale:
            LOGGER.warning("Stale runs closed | count=%d", stale)
        LOGGER.info("Sync log cleanup completed | removed=%d | retention_days=%d", removed, retention_days)
    except Exception as exc:  # pragma: no cover - best-effort housekeeping
        session.rollback()
        LOGGER.warning("Startup maintenance failed | error=%s", exc)
    finally:
        session.close()


def build_pipelines(
    config: AppConfig,
    session_factory: sessionmaker[Session],
    *,
    only: str | None = None,
) -> list[SyncPipeline]:
    portals = [portal for portal in config.enabled_portals() if only is None or portal.name.value == only]
    if only is not None and not portals:
        raise ConfigError(f"Portal {only!r} is not enabled")
    return [
        SyncPipeline(
            portal,
            session_factory,
            client_factory(portal, screenshot_dir=config.screenshot_dir),
            lock=SyncLock(),
        )
        for portal in portals
    ]


def _print_json(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


async def _async_main(argv: Iterable[str] | None = None) -> int:
    args = parse_args(argv)
    load_dotenv()
    config = load_config(args.config)
    LOGGER.info(
        "Parsed arguments | once=%s portal=%s limit=%s no_stock=%s ledger_only=%s rebuild=%s dashboard=%s",
        args.once,
        args.portal,
        args.limit,
        args.no_stock,
        args.ledger_only,
        args.rebuild_inventory,
        args.dashboard,
    )

    engine = get_engine(config.storage.sqlite_path, busy_timeout=config.storage.busy_timeout)
    init_db(engine)
    session_factory = make_session(engine)
    _startup_maintenance(session_factory, config.sync_log_retention_days)

    if args.rebuild_inventory:
        totals = LedgerEngine(session_factory).rebuild_inventory()
        _print_json({"skus": len(totals), "quantities": totals})
        return 0

    if args.ledger_only:
        result = LedgerEngine(session_factory, source=args.portal).apply_pending()
        _print_json(
            {
                "processed": result.processed,
                "skipped": result.skipped,
                "errors": [error.as_dict() for error in result.errors],
            }
        )
        return 1 if result.errors else 0

    pipelines = build_pipelines(config, session_factory, only=args.portal)
    context = SchedulerContext(
        pipelines,
        config.schedule,
        on_cycle_complete=lambda _summary: _ping_healthcheck(config.healthcheck_url),
    )
    context.bind_loop()

    dashboard_server = dashboard_thread = None
    if args.dashboard:
        host = args.host or config.dashboard.host
        port = args.port or config.dashboard.port
        dashboard_server, dashboard_thread = _start_dashboard_background(
            create_app(session_factory, context), host, port
        )
        print(f"Dashboard running at http://{host}:{port}")

    try:
        if args.once:
            summary = await context.run_now(limit=args.limit, process_stock=not args.no_stock)
            _print_json(summary)
            failed = any(item.get("status") == "FAILED" for item in summary["results"].values())
            if args.dashboard:
                print("Sync complete. Dashboard still live; press Ctrl+C to exit.")
                await asyncio.Event().wait()
            return 1 if failed else 0

        if config.schedule.enabled:
            context.start()
            next_fire = context.next_fire_time()
            LOGGER.info("Waiting for schedule | next_fire_time=%s", next_fire.isoformat() if next_fire else None)
        else:
            LOGGER.warning("Schedule disabled; only manual runs from the dashboard will sync")
        await asyncio.Event().wait()
        return 0
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        LOGGER.info("Shutdown signal received; stopping scheduler")
        return 0
    finally:
        context.stop(cancel_running=True)
        _stop_dashboard_background(dashboard_server, dashboard_thread)


def main() -> None:
    try:
        code = asyncio.run(_async_main())
    except ConfigError as exc:
        LOGGER.error("Configuration error: %s", exc)
        raise SystemExit(2) from exc
    except KeyboardInterrupt:  # pragma: no cover - interactive safety
        LOGGER.info("Interrupted by user")
        return
    raise SystemExit(code)


if __name__ == "__main__":
    main()
