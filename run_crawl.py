from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import replace
from pathlib import Path
from typing import Dict

from crawler.cancellation import StopToken
from crawler.capabilities import build_default
from crawler.config import Config, load_config
from crawler.human import HumanSignals, write_marker
from crawler.loop import Scheduler
from crawler.models import CrawlOutcome, HumanKind

from extensions.logging import LoggingExtension
from extensions.output_paths import set_output_root


# ----------------------------
# CLI parsing
# ----------------------------

def _parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Adaptive job-board crawler: frontier -> planner -> visit -> advisor, per source, in cycles"
    )
    p.add_argument("--sources-csv", type=Path, default=None, help="CSV of sources (id,name,url,slug,type,enabled) to load before crawling")
    p.add_argument("--db", type=Path, default=None, help="SQLite database path (jobs, visited URLs, sources)")
    p.add_argument("--once", action="store_true", help="Run a single cycle and exit")
    p.add_argument("--visible", action="store_true", help="Headed browser; a lone source reuses one visible session")
    p.add_argument("--max-parallel", type=int, default=None, help="Sources crawled concurrently per batch")
    p.add_argument("--max-jobs", type=int, default=None, help="Per-source job cap per crawl")
    p.add_argument("--cycle-delay", type=float, default=None, help="Seconds between cycles")
    p.add_argument("--no-advisor", action="store_true", help="Disable the Ollama advisor (always CONTINUE)")
    p.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"], help="Console/file log level")

    sub = p.add_subparsers(dest="command")
    r = sub.add_parser("resolve", help="Tell a running crawler that a login wall or captcha was handled")
    r.add_argument("source_id", help="Source id shown in the wait prompt")
    r.add_argument("kind", choices=[k.value for k in HumanKind], help="What was resolved")
    return p.parse_args(argv)


def _apply_overrides(cfg: Config, args: argparse.Namespace) -> Config:
    changes = {}
    if args.db is not None:
        changes["db_path"] = args.db
    if args.sources_csv is not None:
        changes["sources_csv"] = args.sources_csv
    if args.max_parallel is not None:
        changes["max_parallel_sources"] = max(1, args.max_parallel)
    if args.max_jobs is not None:
        changes["max_jobs_per_source"] = max(1, args.max_jobs)
    if args.cycle_delay is not None:
        changes["cycle_delay_seconds"] = max(0.0, args.cycle_delay)
    if args.no_advisor:
        changes["advisor_enabled"] = False
    return replace(cfg, **changes) if changes else cfg


def _install_signal_handlers(stop: StopToken, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.request, sig.name)
        except (NotImplementedError, RuntimeError):
            # Windows event loops; fall back to the plain handler
            signal.signal(sig, lambda *_: stop.request("signal"))
    logger.debug("Signal handlers installed")


def _log_summary(logger: logging.Logger, results: Dict[str, CrawlOutcome]) -> None:
    if not results:
        logger.info("No sources crawled")
        return
    total = 0
    for source_id, out in sorted(results.items()):
        total += out.jobs_extracted
        logger.info("  %-24s jobs=%-5d pages=%-4d %s", source_id, out.jobs_extracted, out.pages_visited, out.reason)
    logger.info("Total jobs extracted: %d across %d sources", total, len(results))


# ----------------------------
# Main
# ----------------------------

async def main_async(argv=None) -> int:
    args = _parse_args(argv)
    cfg = _apply_overrides(load_config(), args)

    if args.command == "resolve":
        marker = write_marker(cfg.signals_dir, args.source_id, args.kind)
        print(f"Signalled {args.kind} resolved for {args.source_id} ({marker})")
        return 0

    level = getattr(logging, args.log_level)
    set_output_root(cfg.data_sources_dir)
    log_ext = LoggingExtension(
        global_level=level,
        log_file=cfg.log_file,
        event_buffer_size=cfg.event_buffer_size,
        root_dir=cfg.data_sources_dir,
    )
    logger = logging.getLogger("run_crawl")
    logger.setLevel(level)

    caps = build_default(cfg, events=log_ext.events)
    stop = StopToken(poll_s=cfg.stop_poll_interval_ms / 1000.0)
    signals = HumanSignals(cfg.signals_dir, poll_s=stop.poll_s)
    try:
        csv_path = cfg.sources_csv
        if args.sources_csv is not None or csv_path.exists():
            await caps.sources.load_csv(csv_path)

        _install_signal_handlers(stop, logger)
        logger.info(
            "Starting: parallel=%d max_jobs=%d cycle_delay=%.0fs advisor=%s visible=%s once=%s",
            cfg.max_parallel_sources, cfg.max_jobs_per_source, cfg.cycle_delay_seconds,
            "on" if cfg.advisor_enabled else "off", args.visible, args.once,
        )
        scheduler = Scheduler.from_config(cfg, caps, signals, visible=args.visible, log_ext=log_ext)
        results = await scheduler.run(stop, once=args.once)
        _log_summary(logger, results)
        return 0
    finally:
        await caps.aclose()
        log_ext.close()


def main() -> None:
    raise SystemExit(asyncio.run(main_async()))


if __name__ == "__main__":
    main()
