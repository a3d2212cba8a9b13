from __future__ import annotations

import argparse
import json
import logging
import os
import sys
import time
from typing import Any, Iterable

from .config import load_config
from .errors import ConfigurationError, PollingError
from .models import RawItem
from .scheduler import CycleReport, Scheduler, build_scheduler


logger = logging.getLogger("pte")


def build_arg_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="pte", description="Polling trigger engine (dedupe + lifecycle)")
    p.add_argument("--config", required=True, help="Path to JSON config file")
    p.add_argument(
        "--log-level",
        default=None,
        help="Log level (DEBUG/INFO/WARNING/ERROR). Defaults to env PTE_LOG_LEVEL or INFO",
    )
    p.add_argument(
        "--status-interval",
        type=int,
        default=None,
        help="Daemon heartbeat interval seconds. Defaults to env PTE_STATUS_INTERVAL_SECONDS or 10. Set 0 to disable.",
    )

    sub = p.add_subparsers(dest="command", required=True)
    for name, help_text in (
        ("test", "Fetch a sample of items without touching the persisted marker"),
        ("enable", "Establish the baseline marker (no backlog is emitted)"),
        ("disable", "Delete the persisted marker"),
        ("run", "Run one poll cycle and print new items as JSON lines"),
        ("daemon", "Run poll cycles forever with the configured interval"),
    ):
        cmd = sub.add_parser(name, help=help_text)
        cmd.add_argument(
            "--trigger",
            action="append",
            default=None,
            help="Trigger name from config (repeatable). Defaults to all configured triggers",
        )
    return p


def _resolve_log_level(value: str | None) -> int:
    v = (value or "").strip().upper()
    if not v:
        return logging.INFO
    level = logging.getLevelNamesMapping().get(v)
    if isinstance(level, int):
        return level
    return logging.INFO


def _resolve_status_interval(value: int | None) -> int:
    if value is None:
        try:
            value = int(os.environ.get("PTE_STATUS_INTERVAL_SECONDS") or 10)
        except ValueError:
            value = 10
    return max(0, int(value))


def _emit(name: str, items: Iterable[RawItem], out: Any) -> None:
    for it in items:
        record = {"trigger": name, **it.to_json_dict()}
        out.write(json.dumps(record, ensure_ascii=False, default=str) + "\n")
    out.flush()


def _emit_cycle(report: CycleReport, out: Any) -> None:
    for r in report.triggers:
        _emit(r.name, r.items, out)


def _selected(scheduler: Scheduler, names: list[str] | None) -> list[str]:
    if not names:
        return [b.name for b in scheduler.bindings]
    for n in names:
        scheduler.binding(n)
    return list(names)


def _run_daemon(scheduler: Scheduler, *, poll_interval_seconds: int, status_interval: int, out: Any) -> int:
    cycle_id = 0
    last_summary_logged_at = 0.0
    next_heartbeat_at = time.monotonic() + status_interval if status_interval > 0 else float("inf")
    acc = {"items_emitted": 0, "errors": 0, "skipped": 0}

    while True:
        cycle_id += 1
        try:
            report = scheduler.run_once()
        except Exception:  # noqa: BLE001
            logger.exception("cycle crashed: id=%d", cycle_id)
            time.sleep(5)
            continue

        _emit_cycle(report, out)
        now = time.monotonic()
        acc["items_emitted"] += report.items_emitted
        acc["errors"] += report.errors
        acc["skipped"] += report.skipped

        should_log_cycle = (
            status_interval <= 0
            or report.items_emitted > 0
            or report.errors > 0
            or (now - last_summary_logged_at) >= max(1, status_interval)
        )
        if should_log_cycle:
            logger.info(
                "cycle summary: id=%d duration_ms=%d items_emitted=%d errors=%d skipped=%d",
                cycle_id,
                report.duration_ms,
                acc["items_emitted"],
                acc["errors"],
                acc["skipped"],
            )
            acc = {k: 0 for k in acc}
            last_summary_logged_at = now

        sleep_end = time.monotonic() + max(1, poll_interval_seconds)
        while True:
            now = time.monotonic()
            if now >= sleep_end:
                break
            if status_interval > 0 and now >= next_heartbeat_at:
                logger.info(
                    "daemon alive: cycles=%d next_poll_in=%ds last_duration_ms=%d last_errors=%d",
                    cycle_id,
                    max(0, int(sleep_end - now)),
                    report.duration_ms,
                    report.errors,
                )
                next_heartbeat_at = now + status_interval
            if status_interval > 0:
                time.sleep(min(sleep_end - now, max(0.2, next_heartbeat_at - now)))
            else:
                time.sleep(min(sleep_end - now, 1.0))


def main(argv: list[str] | None = None, *, out: Any = None) -> int:
    args = build_arg_parser().parse_args(argv)
    out = out or sys.stdout
    logging.basicConfig(
        level=_resolve_log_level(args.log_level or os.environ.get("PTE_LOG_LEVEL")),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    try:
        config = load_config(args.config)
        scheduler = build_scheduler(config)
        names = _selected(scheduler, args.trigger)
    except ConfigurationError as e:
        logger.error("configuration error: %s", e)
        return 2
    except PollingError as e:
        logger.error("startup failed: %s: %s", type(e).__name__, e)
        return 1

    logger.info("pte start: command=%s config=%s triggers=%s", args.command, args.config, ",".join(names) or "<none>")
    if not names:
        logger.warning("no triggers configured; nothing will be polled")

    if args.command == "daemon":
        if args.trigger:
            scheduler.bindings = tuple(b for b in scheduler.bindings if b.name in names)
        return _run_daemon(
            scheduler,
            poll_interval_seconds=config.poll_interval_seconds,
            status_interval=_resolve_status_interval(args.status_interval),
            out=out,
        )

    failures = 0
    for name in names:
        try:
            if args.command == "test":
                _emit(name, scheduler.test(name), out)
            elif args.command == "enable":
                result = scheduler.enable(name)
                logger.info("enabled: trigger=%s baseline_items=%d", name, result.fetched)
            elif args.command == "disable":
                scheduler.disable(name)
                logger.info("disabled: trigger=%s", name)
        except PollingError as e:
            failures += 1
            logger.error("%s failed: trigger=%s error=%s: %s", args.command, name, type(e).__name__, e)

    if args.command == "run":
        scheduler.bindings = tuple(b for b in scheduler.bindings if b.name in names)
        report = scheduler.run_once()
        _emit_cycle(report, out)
        failures += report.errors
        logger.info(
            "run done: duration_ms=%d triggers=%d items_emitted=%d errors=%d skipped=%d",
            report.duration_ms,
            len(report.triggers),
            report.items_emitted,
            report.errors,
            report.skipped,
        )

    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())
