#!/usr/bin/env python3
"""
enginewatch crisis monitor
==========================
Re-evaluates every managed engine on a fixed interval, recertifies registered
engines once a day, sends alerts for status changes and serves the JSON
status/override API.

Usage:
    enginewatch-monitor --config enginewatch.yaml
    enginewatch-monitor --once            # single evaluation pass, then exit

Signals:
    SIGTERM / SIGINT → graceful shutdown
"""
from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from dataclasses import replace
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Callable, Optional

from aiohttp import web

from enginewatch.alerts.alert_router import IncidentAlerter
from enginewatch.certification import CertificationAuthority, CertificationResult
from enginewatch.crisis import CrisisDetector, CrisisRouter, StatusTransition
from enginewatch.realtime import EngineEventBroadcaster
from enginewatch.registry import EngineRegistry, http_engine
from enginewatch.store import EngineStore, PersistenceError
from enginewatch.store.models import utcnow

from .api import create_app
from .config import WatchConfig

logger = logging.getLogger("enginewatch.monitor")


# ---------------------------------------------------------------------------
# Logging setup
# ---------------------------------------------------------------------------

def setup_logging(cfg: WatchConfig) -> None:
    """Rotating file (one per day, keep N days) + console."""
    log_dir = Path(cfg.log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    fmt = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    fh = TimedRotatingFileHandler(
        log_dir / "enginewatch.log",
        when="midnight",
        backupCount=cfg.log_retention_days,
        utc=True,
    )
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(fmt)

    ch = logging.StreamHandler(sys.stdout)
    ch.setFormatter(fmt)

    root = logging.getLogger("enginewatch")
    root.setLevel(getattr(logging, cfg.log_level.upper(), logging.INFO))
    root.addHandler(fh)
    root.addHandler(ch)


# ---------------------------------------------------------------------------
# Monitor
# ---------------------------------------------------------------------------

class CrisisMonitor:
    """Wires the store, registry and crisis components together and drives them."""

    def __init__(
        self,
        cfg: WatchConfig,
        store: Optional[EngineStore] = None,
        registry: Optional[EngineRegistry] = None,
        alerter: Optional[IncidentAlerter] = None,
        now_fn: Callable[[], datetime] = utcnow,
    ) -> None:
        self.cfg = cfg
        self.store = store or EngineStore(cfg.db_path)
        self.registry = registry or EngineRegistry()
        self.broadcaster = EngineEventBroadcaster(self.store, now_fn)
        self.detector = CrisisDetector(self.store, self.broadcaster, now_fn, cfg.metrics_window_min)
        self.certifier = CertificationAuthority(self.store, now_fn)
        self.router = CrisisRouter(self.store, self.registry, self.certifier, self.detector, now_fn)
        self.alerter = alerter or IncidentAlerter(cfg)
        self._running = True

    # --- seeding ---

    def seed(self) -> None:
        """Load configured policies into the store and register configured engines."""
        for policy in self.cfg.policies:
            self.store.upsert_crisis_policy(policy)
        for entry in self.cfg.engines:
            self.registry.register(http_engine(
                entry["id"], entry["name"], entry["job_types"], entry["url"],
                health_url=entry["health_url"], sub_types=entry["sub_types"], token=entry["token"],
                department=entry.get("department", ""),
                model_preference=entry.get("model_preference", "STANDARD"),
            ))
            known = {t.test_name for t in self.store.list_engine_tests(entry["id"])}
            for test in entry["tests"]:
                if test["name"] not in known:
                    self.certifier.register_test(entry["id"], test["name"], test["payload"])
        logger.info("Seeded %d policies, %d engines", len(self.cfg.policies), len(self.cfg.engines))

    def managed_engine_ids(self) -> list[str]:
        ids = {e.id for e in self.registry.all()}
        try:
            ids.update(p.engine_id for p in self.store.list_crisis_policies())
        except PersistenceError as exc:
            logger.error("Listing crisis policies failed: %s", exc)
        return sorted(ids)

    # --- cycles ---

    async def evaluate_once(self) -> list[StatusTransition]:
        engine_ids = await asyncio.to_thread(self.managed_engine_ids)
        results = await asyncio.gather(*(
            asyncio.to_thread(self.detector.update_engine_state_from_metrics, engine_id)
            for engine_id in engine_ids
        ))
        transitions = [t for t in results if t is not None]
        for t in transitions:
            await self.alerter.notify_transition(t)
        logger.debug("Evaluated %d engines, %d transitions", len(engine_ids), len(transitions))
        return transitions

    async def recertify_once(self) -> list[CertificationResult]:
        return await asyncio.to_thread(self.certifier.recertify_all_engines, self.registry.all())

    async def run(self) -> None:
        logger.info("Crisis monitor started — %d engines, every %.0fs",
                    len(self.managed_engine_ids()), self.cfg.eval_interval_s)
        while self._running:
            try:
                await self.evaluate_once()
            except Exception:
                logger.exception("Evaluation cycle failed")
            await asyncio.sleep(self.cfg.eval_interval_s)

    async def run_recertification(self) -> None:
        while self._running:
            try:
                await self.recertify_once()
            except Exception:
                logger.exception("Recertification cycle failed")
            await asyncio.sleep(self.cfg.recertify_interval_s)

    def stop(self) -> None:
        self._running = False
        logger.info("Crisis monitor stopped")


# ---------------------------------------------------------------------------
# Entrypoint
# ---------------------------------------------------------------------------

def load_config(path: Optional[str]) -> WatchConfig:
    if path and Path(path).exists():
        return WatchConfig.from_yaml(path)
    if path:
        logger.warning("Config %s not found, using environment", path)
    return WatchConfig.from_env()


async def main(cfg: WatchConfig, once: bool = False) -> None:
    monitor = CrisisMonitor(cfg)
    monitor.seed()

    if once:
        transitions = await monitor.evaluate_once()
        for t in transitions:
            print(f"{t.engine_id}: {t.label} | {t.reason}")
        return

    runner = web.AppRunner(create_app(monitor))
    await runner.setup()
    site = web.TCPSite(runner, cfg.api_host, cfg.api_port)
    await site.start()
    logger.info("Status API listening on %s:%d", cfg.api_host, cfg.api_port)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()

    def _shutdown(sig: int) -> None:
        logger.info("Received signal %d, shutting down…", sig)
        stop_event.set()

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, _shutdown, sig)

    tasks = [
        asyncio.create_task(monitor.run(), name="crisis-evaluation"),
        asyncio.create_task(monitor.run_recertification(), name="crisis-recertification"),
    ]
    await stop_event.wait()

    monitor.stop()
    for task in tasks:
        task.cancel()
    await asyncio.gather(*tasks, return_exceptions=True)
    await runner.cleanup()


def cli(argv: Optional[list[str]] = None) -> None:
    parser = argparse.ArgumentParser(prog="enginewatch-monitor", description=__doc__.split("\n")[1])
    parser.add_argument("--config", default=None, help="YAML config file")
    parser.add_argument("--once", action="store_true", help="run one evaluation pass and exit")
    parser.add_argument("--port", type=int, default=None, help="status API port")
    args = parser.parse_args(argv)

    cfg = load_config(args.config)
    if args.port is not None:
        cfg = replace(cfg, api_port=args.port)
    setup_logging(cfg)
    asyncio.run(main(cfg, once=args.once))


if __name__ == "__main__":
    cli()
