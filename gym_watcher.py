#!/usr/bin/env python3
"""Polling folder watcher for Gym Passport attendance exports.

Monitors the downloads directory for new "Corporate Employees" CSV exports. When
a new export appears and its size is stable (the browser download finished), the
dispatch runs: admin audit copy, one queued email job per employee, completion
marker next to the export. Results are written to the outputs directory and
optionally sent to Slack.

Usage:
    python3 gym_watcher.py                       # defaults (30-min poll)
    python3 gym_watcher.py --poll-interval 600   # every 10 minutes
    python3 gym_watcher.py --dry-run             # detect files but don't dispatch
"""

from __future__ import annotations

import argparse
import hashlib
import json
import logging
import signal
import sys
import time
from dataclasses import replace
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from gym_dispatch import (
    STATUS_FAILED,
    DispatchConfig,
    LocalObjectStore,
    SesMailer,
    SqsJobQueue,
    is_already_processed,
    run_dispatch,
    send_alert,
)
from gym_engine import (
    DEFAULT_EXPORT_KEYWORDS,
    DEFAULT_INPUTS_DIR,
    DEFAULT_OUTPUTS_DIR,
    GymEngineError,
    matches_export_name,
    write_tier_summary_workbook,
)

DEFAULT_POLL_INTERVAL = 1800  # 30 minutes

WATCHER_STATE_DIR = Path("outputs") / "watcher_state"
PROCESSED_LEDGER = WATCHER_STATE_DIR / "processed_files.json"
DISPATCH_LOG_DIRNAME = "gym_dispatch_log"

logger = logging.getLogger("gym_watcher")


# ---------------------------------------------------------------------------
# Graceful shutdown
# ---------------------------------------------------------------------------
_shutdown_requested = False


def _handle_signal(signum: int, frame: Any) -> None:
    global _shutdown_requested
    _shutdown_requested = True
    logger.info("Shutdown signal received (signal %d). Will exit after current cycle.", signum)


# ---------------------------------------------------------------------------
# Ledger: tracks which files have already been processed
# ---------------------------------------------------------------------------
def _load_ledger() -> Dict[str, Any]:
    if not PROCESSED_LEDGER.exists():
        return {"processed": {}}
    try:
        with PROCESSED_LEDGER.open("r", encoding="utf-8") as f:
            data = json.load(f)
        if "processed" not in data:
            data["processed"] = {}
        return data
    except (json.JSONDecodeError, OSError):
        logger.warning("Ledger file corrupt or unreadable; starting fresh.")
        return {"processed": {}}


def _save_ledger(ledger: Dict[str, Any]) -> None:
    PROCESSED_LEDGER.parent.mkdir(parents=True, exist_ok=True)
    tmp = PROCESSED_LEDGER.with_suffix(".tmp")
    with tmp.open("w", encoding="utf-8") as f:
        json.dump(ledger, f, indent=2, sort_keys=True)
    tmp.replace(PROCESSED_LEDGER)


def _file_sha256(path: Path) -> str:
    h = hashlib.sha256()
    with path.open("rb") as f:
        for chunk in iter(lambda: f.read(1 << 16), b""):
            h.update(chunk)
    return h.hexdigest()


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# ---------------------------------------------------------------------------
# File discovery
# ---------------------------------------------------------------------------
def _find_export_candidates(inputs_dir: Path) -> List[Path]:
    """Return attendance exports sorted newest-first by modification time."""
    if not inputs_dir.exists():
        return []
    candidates = [
        p
        for p in inputs_dir.iterdir()
        if p.is_file()
        and matches_export_name(p.name, DEFAULT_EXPORT_KEYWORDS)
        and not p.name.startswith("Processed_")
    ]
    candidates.sort(key=lambda p: p.stat().st_mtime, reverse=True)
    return candidates


_pending_files: Dict[str, int] = {}  # path -> file size on first sighting


def _is_file_stable(path: Path) -> bool:
    """Return True when the file size hasn't changed since the previous poll.

    On first sighting the file is recorded and we return False (wait one more
    cycle). On the next poll, if the size matches we consider it fully downloaded.
    """
    path_key = str(path)
    try:
        current_size = path.stat().st_size
    except OSError:
        _pending_files.pop(path_key, None)
        return False

    if current_size == 0:
        return False

    previous_size = _pending_files.get(path_key)
    if previous_size is None:
        _pending_files[path_key] = current_size
        logger.info("New file detected: %s (%d bytes). Waiting one cycle to confirm stability.", path.name, current_size)
        return False

    if current_size != previous_size:
        _pending_files[path_key] = current_size
        logger.info("File %s still downloading (%d -> %d bytes). Waiting another cycle.", path.name, previous_size, current_size)
        return False

    _pending_files.pop(path_key, None)
    logger.info("File %s is stable (%d bytes). Ready to process.", path.name, current_size)
    return True


# ---------------------------------------------------------------------------
# Dispatch run execution
# ---------------------------------------------------------------------------
def write_run_record(outputs_dir: Path, record: Dict[str, Any]) -> Path:
    log_dir = outputs_dir / DISPATCH_LOG_DIRNAME
    log_dir.mkdir(parents=True, exist_ok=True)
    path = log_dir / f"{record['run_id']}_run_record.json"
    with path.open("w", encoding="utf-8") as handle:
        json.dump(record, handle, indent=2, sort_keys=True, default=str)
    return path


def _execute_dispatch_run(
    export_file: Path,
    outputs_dir: Path,
    config: DispatchConfig,
    mailer: Any,
    queue: Any,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Dispatch one export and keep local copies of what was sent."""
    store = LocalObjectStore(export_file.parent)
    record, result = run_dispatch(
        export_file.name,
        store,
        mailer,
        queue,
        config,
        run_logger=logger,
        today=today,
    )
    record["trigger"] = "watcher"
    record["usage_file_sha256"] = _file_sha256(export_file)

    if result is not None:
        log_dir = outputs_dir / DISPATCH_LOG_DIRNAME
        log_dir.mkdir(parents=True, exist_ok=True)
        csv_path = log_dir / f"{record['run_id']}_Processed_{export_file.name}"
        csv_path.write_bytes(result.csv_bytes)
        record["processed_csv"] = str(csv_path)
        summary_path = log_dir / f"{record['run_id']}_Tier_Summary.xlsx"
        try:
            write_tier_summary_workbook(result, summary_path, config.pipeline.base_fee, logger)
            record["tier_summary_workbook"] = str(summary_path)
        except OSError as exc:
            logger.warning("Could not write tier summary workbook: %s", exc)

    alert_error = send_alert(config.alert_webhook, record)
    if alert_error:
        logger.warning(alert_error)
        record["alert_error"] = alert_error

    record["run_record"] = str(write_run_record(outputs_dir, record))
    return record


def poll_once(
    inputs_dir: Path,
    outputs_dir: Path,
    config: DispatchConfig,
    mailer: Any,
    queue: Any,
    ledger: Dict[str, Any],
    dry_run: bool = False,
    today: Optional[date] = None,
) -> List[Dict[str, Any]]:
    """One poll cycle. Returns the run records created during this cycle."""
    records: List[Dict[str, Any]] = []
    store = LocalObjectStore(inputs_dir)
    failed = ledger.setdefault("failed", {})

    for export_file in _find_export_candidates(inputs_dir):
        file_key = export_file.name

        entry = ledger["processed"].get(file_key)
        if entry is not None and entry.get("status") != STATUS_FAILED:
            continue

        if is_already_processed(store, file_key, config.marker_suffix):
            logger.info("Marker exists for %s; already dispatched.", file_key)
            ledger["processed"][file_key] = {
                "note": "marker_present",
                "detected_at_utc": _utc_stamp(),
            }
            _save_ledger(ledger)
            continue

        if not _is_file_stable(export_file):
            continue

        file_hash = _file_sha256(export_file)
        hash_already_processed = any(
            other.get("sha256") == file_hash and other.get("status") != STATUS_FAILED
            for name, other in ledger["processed"].items()
            if name != file_key
        )
        if hash_already_processed:
            logger.warning(
                "File %s has same hash as a previously processed file; skipping (possible re-download).",
                export_file.name,
            )
            ledger["processed"][file_key] = {
                "sha256": file_hash,
                "skipped_duplicate_hash": True,
                "detected_at_utc": _utc_stamp(),
            }
            _save_ledger(ledger)
            continue

        if dry_run:
            logger.info("[DRY RUN] Would dispatch: %s (sha256: %s)", export_file.name, file_hash[:16])
            ledger["processed"][file_key] = {
                "sha256": file_hash,
                "dry_run": True,
                "detected_at_utc": _utc_stamp(),
            }
            _save_ledger(ledger)
            continue

        record = _execute_dispatch_run(
            export_file=export_file,
            outputs_dir=outputs_dir,
            config=config,
            mailer=mailer,
            queue=queue,
            today=today,
        )
        records.append(record)

        if record.get("status") == STATUS_FAILED:
            # No marker was written, so the export stays eligible for the next stable poll.
            previous_attempts = failed.get(file_key, {}).get("attempts", 0)
            ledger["processed"].pop(file_key, None)
            failed[file_key] = {
                "sha256": file_hash,
                "run_id": record.get("run_id"),
                "error": record.get("error", ""),
                "attempts": previous_attempts + 1,
                "failed_at_utc": record.get("completed_at_utc") or record.get("created_at_utc"),
            }
            logger.warning("Dispatch failed for %s; it will be retried on a later poll.", file_key)
        else:
            failed.pop(file_key, None)
            ledger["processed"][file_key] = {
                "sha256": file_hash,
                "run_id": record.get("run_id"),
                "status": record.get("status"),
                "billing_period": record.get("billing_period"),
                "processed_at_utc": record.get("completed_at_utc") or record.get("created_at_utc"),
            }
        _save_ledger(ledger)

    ledger["last_poll_utc"] = _utc_stamp()
    _save_ledger(ledger)
    return records


# ---------------------------------------------------------------------------
# Core polling loop
# ---------------------------------------------------------------------------
def run_watcher(
    inputs_dir: Path,
    outputs_dir: Path,
    config: DispatchConfig,
    poll_interval: int,
    mailer: Any,
    queue: Any,
    dry_run: bool = False,
    once: bool = False,
) -> None:
    """Poll inputs_dir for new attendance exports and dispatch them when found."""
    ledger = _load_ledger()

    logger.info("=" * 60)
    logger.info("GYM PASSPORT WATCHER STARTED")
    logger.info("  Inputs:        %s", inputs_dir)
    logger.info("  Outputs:       %s", outputs_dir)
    logger.info("  Admin email:   %s", config.admin_email)
    logger.info("  Window mode:   %s", config.pipeline.window_mode)
    logger.info("  Poll interval: %d seconds (%d minutes)", poll_interval, poll_interval // 60)
    logger.info("  Slack:         %s", "configured" if config.alert_webhook else "not configured")
    logger.info("  Dry run:       %s", dry_run)
    logger.info("  Ledger:        %s", PROCESSED_LEDGER)
    logger.info("  Processed so far: %d file(s)", len(ledger["processed"]))
    logger.info("=" * 60)

    while not _shutdown_requested:
        try:
            poll_once(inputs_dir, outputs_dir, config, mailer, queue, ledger, dry_run=dry_run)
        except Exception:
            logger.exception("Error during poll cycle; will retry next cycle.")

        if _shutdown_requested or once:
            break

        logger.debug("Sleeping %d seconds until next poll...", poll_interval)
        wake_at = time.monotonic() + poll_interval
        while time.monotonic() < wake_at:
            if _shutdown_requested:
                break
            time.sleep(min(5, wake_at - time.monotonic()))

    logger.info("Watcher stopped.")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------
def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Poll for new Gym Passport exports and dispatch deduction emails automatically."
    )
    parser.add_argument(
        "--inputs-dir",
        default=str(DEFAULT_INPUTS_DIR),
        help="Directory to watch for Corporate Employees CSV exports.",
    )
    parser.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Output directory for processed CSVs, tier summaries and run records.",
    )
    parser.add_argument(
        "--poll-interval",
        type=int,
        default=DEFAULT_POLL_INTERVAL,
        help="Seconds between folder checks (default: 1800 = 30 minutes).",
    )
    parser.add_argument(
        "--slack-webhook",
        default="",
        help="Slack webhook URL for run alerts (overrides ALERT_WEBHOOK_URL env var).",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Detect files but don't actually dispatch.",
    )
    parser.add_argument(
        "--once",
        action="store_true",
        help="Run a single poll cycle and exit.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    parser.add_argument(
        "--reset-ledger",
        action="store_true",
        help="Clear the processed-files ledger and start fresh.",
    )
    return parser


def main(argv: Optional[list[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s [watcher] %(message)s",
    )

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)

    if args.reset_ledger and PROCESSED_LEDGER.exists():
        PROCESSED_LEDGER.unlink()
        logger.info("Ledger cleared.")

    inputs_dir = Path(args.inputs_dir).resolve()
    outputs_dir = Path(args.outputs_dir).resolve()

    if not inputs_dir.exists():
        logger.error("Inputs directory does not exist: %s", inputs_dir)
        return 2

    try:
        config = DispatchConfig.from_env()
        if args.slack_webhook:
            config = replace(config, alert_webhook=args.slack_webhook)
        mailer = None if args.dry_run else SesMailer()
        queue = None if args.dry_run else SqsJobQueue(config.queue_url)
        run_watcher(
            inputs_dir=inputs_dir,
            outputs_dir=outputs_dir,
            config=config,
            poll_interval=args.poll_interval,
            mailer=mailer,
            queue=queue,
            dry_run=args.dry_run,
            once=args.once,
        )
    except GymEngineError as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Watcher crashed.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
