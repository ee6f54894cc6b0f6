#!/usr/bin/env python3
"""Gym Passport Dashboard: read-only monitoring for dispatch runs.

Displays run records and tier summaries produced by the folder watcher.
No uploads, no manual triggers.

    streamlit run gym_dashboard.py
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd
import streamlit as st
from openpyxl import load_workbook

from gym_engine import CURRENCY, DEFAULT_OUTPUTS_DIR, TIER_SUMMARY_SHEET
from gym_watcher import DISPATCH_LOG_DIRNAME, PROCESSED_LEDGER

DISPATCH_LOG_DIR = DEFAULT_OUTPUTS_DIR / DISPATCH_LOG_DIRNAME
WATCHER_LOG = Path("logs") / "watcher_stderr.log"

logger = logging.getLogger("gym_dashboard")


# ---------------------------------------------------------------------------
# Data loaders
# ---------------------------------------------------------------------------
def load_run_records(log_dir: Path = DISPATCH_LOG_DIR) -> List[Dict[str, Any]]:
    """Load all run record JSONs, newest first."""
    if not log_dir.exists():
        return []
    records = []
    for path in sorted(log_dir.glob("*_run_record.json"), reverse=True):
        try:
            with path.open("r", encoding="utf-8") as f:
                records.append(json.load(f))
        except (json.JSONDecodeError, OSError):
            logger.warning("Skipping unreadable run record %s", path)
    return records


def read_tier_summary(workbook_path: Path) -> List[Dict[str, Any]]:
    """Rows of the Tier Summary sheet, or [] when the workbook is missing or unreadable."""
    if not workbook_path.exists():
        return []
    try:
        wb = load_workbook(workbook_path, data_only=True, read_only=True)
    except Exception:
        return []
    try:
        if TIER_SUMMARY_SHEET not in wb.sheetnames:
            return []
        rows = list(wb[TIER_SUMMARY_SHEET].iter_rows(values_only=True))
    finally:
        wb.close()
    if not rows:
        return []
    headers = [str(h) for h in rows[0]]
    out: List[Dict[str, Any]] = []
    for values in rows[1:]:
        row = {headers[idx]: values[idx] for idx in range(min(len(headers), len(values)))}
        if any(v is not None and str(v).strip() for v in row.values()):
            out.append(row)
    return out


def _load_watcher_ledger() -> Dict[str, Any]:
    if not PROCESSED_LEDGER.exists():
        return {}
    try:
        with PROCESSED_LEDGER.open("r", encoding="utf-8") as f:
            return json.load(f)
    except (json.JSONDecodeError, OSError):
        return {}


def _watcher_recent_log(lines: int = 25) -> str:
    if not WATCHER_LOG.exists():
        return "No log file found."
    try:
        all_lines = WATCHER_LOG.read_text(encoding="utf-8", errors="replace").splitlines()
        return "\n".join(all_lines[-lines:]) if all_lines else "Log file is empty."
    except OSError as exc:
        return f"Could not read log: {exc}"


# ---------------------------------------------------------------------------
# UI
# ---------------------------------------------------------------------------
def _render_status_banner(record: Dict[str, Any]) -> None:
    status = str(record.get("status", "")).lower()
    period = record.get("billing_period") or "Unknown period"
    if status == "completed":
        st.success(f"**{period}**: audit copy sent, all jobs queued, marker written", icon="✅")
    elif status == "degraded":
        st.warning(f"**{period}**: dispatched with problems. {record.get('error', '')}", icon="⚠️")
    elif status == "failed":
        st.error(f"**{period}**: run failed. {record.get('error', '')}", icon="\U0001f6a8")
    else:
        st.info(f"**{period}**: status unknown")


def _render_run_metrics(record: Dict[str, Any]) -> None:
    col1, col2, col3, col4 = st.columns(4)
    col1.metric("Rows Kept", f"{record.get('rows_out', 0)} / {record.get('rows_in', 0)}")
    col2.metric("Jobs Queued", f"{record.get('jobs_queued', 0)}")
    col3.metric("Jobs Failed", f"{record.get('jobs_failed', 0)}")
    col4.metric("Total Deductions", f"{CURRENCY} {int(record.get('total_deduction', 0) or 0):,}")


def _render_downloads(record: Dict[str, Any], key_prefix: str) -> None:
    cols = st.columns(3)
    downloads = [
        ("Processed CSV", record.get("processed_csv", ""), "text/csv"),
        (
            "Tier Summary",
            record.get("tier_summary_workbook", ""),
            "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        ),
        ("Run Record", record.get("run_record", ""), "application/json"),
    ]
    for col, (label, path_str, mime) in zip(cols, downloads):
        if not path_str:
            continue
        path = Path(path_str)
        if not path.is_file():
            continue
        with col:
            st.download_button(
                label,
                data=path.read_bytes(),
                file_name=path.name,
                mime=mime,
                key=f"{key_prefix}_{label}",
                use_container_width=True,
            )


def _render_run(record: Dict[str, Any], key_prefix: str) -> None:
    _render_status_banner(record)
    _render_run_metrics(record)

    summary_rows = read_tier_summary(Path(record.get("tier_summary_workbook", "") or "missing.xlsx"))
    st.markdown("### Tier Summary")
    if summary_rows:
        st.dataframe(pd.DataFrame(summary_rows), use_container_width=True, hide_index=True)
    else:
        st.info("Tier summary not available for this run.")

    if record.get("status") == "failed" and record.get("traceback"):
        with st.expander("Traceback"):
            st.code(record["traceback"])

    st.markdown("### Downloads")
    _render_downloads(record, key_prefix)


def page_latest_run() -> None:
    records = load_run_records()
    if not records:
        st.info("No dispatch runs found yet. The watcher will create outputs here once an export is detected.")
        return
    _render_run(records[0], key_prefix="latest")


def page_run_history() -> None:
    records = load_run_records()
    if not records:
        st.info("No run history found.")
        return

    table_rows = [
        {
            "Run ID": r.get("run_id", ""),
            "Status": r.get("status", ""),
            "Billing Period": r.get("billing_period", ""),
            "Export": r.get("input_key", ""),
            "Rows Kept": r.get("rows_out", 0),
            "Jobs Queued": r.get("jobs_queued", 0),
            "Jobs Failed": r.get("jobs_failed", 0),
            "Marker": "yes" if r.get("marker_written") else "no",
            "Created (UTC)": r.get("created_at_utc", ""),
        }
        for r in records
    ]
    st.dataframe(pd.DataFrame(table_rows), use_container_width=True, hide_index=True)

    if len(records) > 1:
        st.markdown("---")
        selected_id = st.selectbox("View details for a specific run", options=[r.get("run_id") for r in records])
        selected = next((r for r in records if r.get("run_id") == selected_id), None)
        if selected:
            _render_run(selected, key_prefix=f"history_{selected_id}")


def page_watcher_status() -> None:
    ledger = _load_watcher_ledger()
    last_poll = ledger.get("last_poll_utc")
    if last_poll:
        st.success(f"Last poll: {last_poll}", icon="✅")
    else:
        st.warning("The watcher has not polled yet.", icon="⚠️")

    st.markdown("---")
    st.markdown("### Processed Files")
    processed = ledger.get("processed", {})
    if not processed:
        st.info("No files have been processed yet.")
    else:
        rows = []
        for filename, info in processed.items():
            rows.append({
                "File": filename,
                "Status": info.get("status", info.get("note", "processed")),
                "Billing Period": info.get("billing_period", ""),
                "Run ID": info.get("run_id", ""),
                "Processed At": info.get("processed_at_utc", info.get("detected_at_utc", "")),
            })
        st.dataframe(pd.DataFrame(rows), use_container_width=True, hide_index=True)

    failed = ledger.get("failed", {})
    if failed:
        st.markdown("### Awaiting Retry")
        st.dataframe(
            pd.DataFrame([
                {
                    "File": filename,
                    "Attempts": info.get("attempts", 1),
                    "Last Error": info.get("error", ""),
                    "Failed At": info.get("failed_at_utc", ""),
                }
                for filename, info in failed.items()
            ]),
            use_container_width=True,
            hide_index=True,
        )

    st.markdown("---")
    st.markdown("### Recent Watcher Log")
    st.code(_watcher_recent_log(30), language="log")


def main() -> None:
    st.set_page_config(
        page_title="Gym Passport Dashboard",
        page_icon="\U0001f3cb",
        layout="wide",
    )

    st.title("Gym Passport Dashboard")
    st.caption("Monthly check-in deductions: what was sent, to whom, and whether it finished.")

    tab_latest, tab_history, tab_watcher = st.tabs([
        "Latest Run",
        "Run History",
        "Watcher Status",
    ])

    with tab_latest:
        page_latest_run()

    with tab_history:
        page_run_history()

    with tab_watcher:
        page_watcher_status()


if __name__ == "__main__":
    main()
