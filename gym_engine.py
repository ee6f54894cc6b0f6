#!/usr/bin/env python3
"""Build the monthly Gym Passport deduction sheet from a portal attendance export.

Pipeline (pure, no network):
1. Read the attendance CSV exported from the Gym Passport portal.
2. Resolve inconsistently spelled headers to canonical fields (identity, email,
   created date, subscription status, check-ins).
3. Keep rows inside the billing window with an active subscription.
4. Map each employee's check-in count to one of five deduction tiers.
5. Write the sorted sheet:
   - ./outputs/Processed_{export name}.csv
   - ./outputs/{export stem}_Tier_Summary.xlsx

The dispatcher (gym_dispatch.py) reuses ``run_pipeline`` for the emailed audit copy.
"""

from __future__ import annotations

import argparse
import io
import logging
import os
import re
import sys
from dataclasses import dataclass, replace
from decimal import Decimal, ROUND_HALF_UP
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

try:
    import pandas as pd
except ImportError as exc:  # pragma: no cover - import guard for runtime setup
    raise SystemExit(
        "Missing dependency: pandas. Install with: python3 -m pip install pandas openpyxl"
    ) from exc

try:
    import xlsxwriter  # noqa: F401
except ImportError as exc:  # pragma: no cover - import guard for runtime setup
    raise SystemExit(
        "Missing dependency: xlsxwriter. Install with: python3 -m pip install xlsxwriter"
    ) from exc


class GymEngineError(Exception):
    """Raised when input data or configuration is invalid."""


DEFAULT_INPUTS_DIR = Path("cypress") / "downloads"
DEFAULT_OUTPUTS_DIR = Path("outputs")
DEFAULT_EXPORT_KEYWORDS = ("corporate", "employees")
DEFAULT_BASE_FEE = 5500
CURRENCY = "Rs"

CHECK_INS_COLUMN = "Check Ins"
AMOUNT_COLUMN = "Amount to be Deducted"

DEFAULT_EXCLUDED_HEADERS = (
    "User Image",
    "Phone",
    "Password",
    "Created At",
    "Edit",
    "Send Email",
)

WINDOW_NONE = "none"
WINDOW_PREVIOUS_MONTH = "previous_month"
WINDOW_THROUGH_PREVIOUS_MONTH = "through_previous_month"
WINDOW_MODES = (WINDOW_NONE, WINDOW_PREVIOUS_MONTH, WINDOW_THROUGH_PREVIOUS_MONTH)

ACTIVE_STATUS = "active"

# Canonical field -> accepted header spellings, compared via normalize_header().
FIELD_ALIASES: Dict[str, Tuple[str, ...]] = {
    "identity": ("username", "name"),
    "created_at": ("createdat", "created"),
    "subscription_status": ("subscriptionstatus", "status"),
    "check_ins": ("checkins",),
}

TIER_SUMMARY_SHEET = "Tier Summary"
DETAIL_SHEET = "Deductions"


@dataclass(frozen=True)
class Tier:
    """One check-in band. ``covered_pct`` is the share of the fee the company pays."""

    min_check_ins: int
    covered_pct: int
    label: str
    subject: str
    body: str


TIERS: Tuple[Tier, ...] = (
    Tier(
        16,
        100,
        "fully covered",
        "Great job! Your Gym Passport fee is fully covered",
        "Hi {name},\n"
        "You completed 16 or more check-ins through Gym Passport this month.\n"
        "The full subscription fee of {currency} {base_fee} is covered by the company, "
        "so nothing will be deducted from your salary.\n"
        "Keep up the momentum!\n"
        "Best regards,\nFitness Team",
    ),
    Tier(
        12,
        75,
        "mostly covered",
        "Well done! 75% of your Gym Passport fee is covered",
        "Hi {name},\n"
        "You made 12 to 15 check-ins through Gym Passport this month.\n"
        "{currency} {covered} (75%) of your subscription fee is covered by the company. "
        "The remaining {currency} {amount} will be deducted from your salary.\n"
        "Stay consistent and keep moving!\n"
        "Best regards,\nFitness Team",
    ),
    Tier(
        8,
        50,
        "half covered",
        "Keep it up! 50% of your Gym Passport fee is covered",
        "Hi {name},\n"
        "You made 8 to 11 check-ins through Gym Passport this month.\n"
        "{currency} {covered} (50%) of your subscription fee is covered by the company. "
        "The remaining {currency} {amount} will be deducted from your salary.\n"
        "Let's aim higher next month!\n"
        "Best regards,\nFitness Team",
    ),
    Tier(
        4,
        25,
        "quarter covered",
        "Progress made! 25% of your Gym Passport fee is covered",
        "Hi {name},\n"
        "You made 4 to 7 check-ins through Gym Passport this month.\n"
        "{currency} {covered} (25%) of your subscription fee is covered by the company. "
        "The remaining {currency} {amount} will be deducted from your salary.\n"
        "Keep striving for more next month!\n"
        "Best regards,\nFitness Team",
    ),
    Tier(
        0,
        0,
        "not covered",
        "Let's refocus on fitness next month",
        "Hi {name},\n"
        "You made fewer than 4 check-ins through Gym Passport this month.\n"
        "Under the wellness policy none of the subscription fee is covered, and the full "
        "{currency} {amount} will be deducted from your salary.\n"
        "You can unsubscribe from Gym Passport during the first 3 days of the upcoming month.\n"
        "Every check-in counts!\n"
        "Best regards,\nFitness Team",
    ),
)


@dataclass(frozen=True)
class TierResult:
    """Message and deduction for one employee."""

    tier: Tier
    subject: str
    body: str
    amount: int


@dataclass(frozen=True)
class PipelineConfig:
    """Business rules for one pipeline run."""

    base_fee: int = DEFAULT_BASE_FEE
    window_mode: str = WINDOW_PREVIOUS_MONTH
    require_active: bool = True
    excluded_headers: Tuple[str, ...] = DEFAULT_EXCLUDED_HEADERS
    replace_emails: bool = False
    replacement_email: str = ""

    def validate(self) -> None:
        if self.window_mode not in WINDOW_MODES:
            raise GymEngineError(
                f"Unknown date window mode '{self.window_mode}'. Expected one of {list(WINDOW_MODES)}."
            )
        if self.base_fee < 0:
            raise GymEngineError(f"Base fee must not be negative: {self.base_fee}")
        if self.replace_emails and not self.replacement_email.strip():
            raise GymEngineError("Email replacement is enabled but no replacement address is configured.")


@dataclass(frozen=True)
class FilterConfig:
    """Inclusive billing window plus the active-subscription switch."""

    window_start: Optional[date]
    window_end: Optional[date]
    require_active: bool

    @property
    def has_window(self) -> bool:
        return self.window_start is not None or self.window_end is not None


@dataclass(frozen=True)
class HeaderMap:
    """Raw header names resolved once per export."""

    headers: Tuple[str, ...]
    email_column: Optional[str]
    columns: Dict[str, Tuple[str, ...]]


@dataclass(frozen=True)
class AttendanceRecord:
    """One employee row after header normalization.

    ``passthrough`` keeps every raw column except the check-in synonyms, in
    first-seen header order. ``amount`` is set by ``annotate_tier``.
    """

    identity: str
    email: str
    created_at: Optional[date]
    subscription_status: str
    check_ins: int
    passthrough: Tuple[Tuple[str, str], ...]
    email_column: Optional[str] = None
    amount: Optional[int] = None

    def as_row(self) -> Dict[str, str]:
        """Output-shaped mapping: passthrough columns plus the canonical computed fields."""
        row = dict(self.passthrough)
        row[CHECK_INS_COLUMN] = str(self.check_ins)
        row[AMOUNT_COLUMN] = "" if self.amount is None else str(self.amount)
        return row


@dataclass(frozen=True)
class PipelineResult:
    """Assembled output of one pipeline run."""

    source_name: str
    headers: Tuple[str, ...]
    records: Tuple[AttendanceRecord, ...]
    rows_in: int
    filter_config: FilterConfig
    csv_bytes: bytes

    @property
    def rows_out(self) -> int:
        return len(self.records)

    @property
    def total_amount(self) -> int:
        return sum(record.amount or 0 for record in self.records)


def normalize_header(header: Any) -> str:
    """Fold case and drop separators so 'Check Ins', 'check-ins' and 'Checkins' compare equal."""
    return re.sub(r"[^a-z0-9]+", "", str(header).strip().lower())


def is_missing(value: Any) -> bool:
    """Null-like check that works across pandas/numpy/native types."""
    if value is None:
        return True
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


def key(value: Any) -> str:
    """Trimmed string form of a cell, empty for missing values."""
    if is_missing(value):
        return ""
    return str(value).strip()


def parse_check_ins(value: Any) -> int:
    """Leading base-10 integer of a check-in cell; 0 when absent, non-numeric or negative."""
    match = re.match(r"[+-]?\d+", key(value))
    if not match:
        return 0
    return max(int(match.group(0)), 0)


def parse_date(value: Any) -> Optional[date]:
    """Parse the date portion of a portal timestamp (ISO, M/D/YYYY, or pandas-readable)."""
    if is_missing(value):
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value

    s = str(value).strip()
    if not s:
        return None
    # Portal timestamps look like "2024-05-10 10:00:00"; the time is not needed.
    s = s.split(" ", 1)[0]

    iso = re.fullmatch(r"(\d{4})-(\d{1,2})-(\d{1,2})", s)
    if iso:
        try:
            return date(int(iso.group(1)), int(iso.group(2)), int(iso.group(3)))
        except ValueError:
            return None

    mdy = re.fullmatch(r"(\d{1,2})/(\d{1,2})/(\d{4})", s)
    if mdy:
        try:
            return date(int(mdy.group(3)), int(mdy.group(1)), int(mdy.group(2)))
        except ValueError:
            return None

    # pandas fills missing parts with defaults ("2024" -> Jan 1), so require year, month and day.
    if not re.search(r"\d{4}", s) or len(re.findall(r"\d+|[A-Za-z]{3,}", s)) < 3:
        return None
    parsed = pd.to_datetime(s, errors="coerce")
    if pd.isna(parsed):
        return None
    return parsed.date()


def month_end(day: date) -> date:
    """Return last calendar day for the month containing the provided date."""
    if day.month == 12:
        first_next = date(day.year + 1, 1, 1)
    else:
        first_next = date(day.year, day.month + 1, 1)
    return first_next - timedelta(days=1)


def previous_month(today: date) -> Tuple[date, date]:
    """First and last day of the calendar month before ``today``."""
    last = date(today.year, today.month, 1) - timedelta(days=1)
    return date(last.year, last.month, 1), last


def billing_window(mode: str, today: date) -> Tuple[Optional[date], Optional[date]]:
    """Inclusive (start, end) window for a window mode, computed from the run date."""
    if mode == WINDOW_NONE:
        return None, None
    first, last = previous_month(today)
    if mode == WINDOW_PREVIOUS_MONTH:
        return first, last
    if mode == WINDOW_THROUGH_PREVIOUS_MONTH:
        return None, last
    raise GymEngineError(f"Unknown date window mode '{mode}'.")


def build_filter_config(config: PipelineConfig, today: date) -> FilterConfig:
    start, end = billing_window(config.window_mode, today)
    return FilterConfig(window_start=start, window_end=end, require_active=config.require_active)


def map_headers(headers: Sequence[str]) -> HeaderMap:
    """Resolve raw headers to canonical fields using FIELD_ALIASES."""
    headers = tuple(str(h) for h in headers)
    normalized = [normalize_header(h) for h in headers]

    columns: Dict[str, Tuple[str, ...]] = {}
    for canonical, spellings in FIELD_ALIASES.items():
        matched: List[str] = []
        for spelling in spellings:
            for header, norm in zip(headers, normalized):
                if norm == spelling and header not in matched:
                    matched.append(header)
        columns[canonical] = tuple(matched)

    email_column = next((h for h in headers if "email" in h.lower()), None)
    return HeaderMap(headers=headers, email_column=email_column, columns=columns)


def first_value(row: Dict[str, Any], columns: Iterable[str]) -> str:
    """Return the first non-empty value found under the given columns."""
    for column in columns:
        value = key(row.get(column))
        if value:
            return value
    return ""


def normalize_record(header_map: HeaderMap, row: Dict[str, Any]) -> AttendanceRecord:
    """Build an AttendanceRecord from one raw CSV row."""
    check_in_columns = set(header_map.columns["check_ins"])
    passthrough = tuple(
        (h, "" if is_missing(row.get(h)) else str(row.get(h)))
        for h in dict.fromkeys(header_map.headers)
        if h not in check_in_columns
    )
    created_raw = first_value(row, header_map.columns["created_at"])
    return AttendanceRecord(
        identity=first_value(row, header_map.columns["identity"]),
        email=key(row.get(header_map.email_column)) if header_map.email_column else "",
        created_at=parse_date(created_raw) if created_raw else None,
        subscription_status=first_value(row, header_map.columns["subscription_status"]),
        check_ins=parse_check_ins(first_value(row, header_map.columns["check_ins"])),
        passthrough=passthrough,
        email_column=header_map.email_column,
    )


def keep_record(record: AttendanceRecord, filter_config: FilterConfig) -> bool:
    """True when the record is inside the billing window and (optionally) active."""
    if filter_config.has_window:
        if record.created_at is None:
            return False
        if filter_config.window_start is not None and record.created_at < filter_config.window_start:
            return False
        if filter_config.window_end is not None and record.created_at > filter_config.window_end:
            return False
    if filter_config.require_active and record.subscription_status.lower() != ACTIVE_STATUS:
        return False
    return True


def select_tier(check_ins: int) -> Tier:
    """First tier whose lower bound the check-in count reaches."""
    for tier in TIERS:
        if check_ins >= tier.min_check_ins:
            return tier
    return TIERS[-1]


def fee_share(base_fee: int, pct: int) -> int:
    """Whole-currency share of the base fee, half-up rounded."""
    share = Decimal(base_fee) * Decimal(pct) / Decimal(100)
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def tier_for_check_ins(check_ins: int, name: str = "", base_fee: int = DEFAULT_BASE_FEE) -> TierResult:
    """Map a check-in count to its deduction tier, subject line and message body."""
    tier = select_tier(max(int(check_ins), 0))
    amount = base_fee - fee_share(base_fee, tier.covered_pct)
    covered = base_fee - amount
    body = tier.body.format(
        name=name,
        currency=CURRENCY,
        base_fee=base_fee,
        covered=covered,
        amount=amount,
    )
    return TierResult(tier=tier, subject=tier.subject, body=body, amount=amount)


def annotate_tier(record: AttendanceRecord, base_fee: int) -> AttendanceRecord:
    return replace(record, amount=tier_for_check_ins(record.check_ins, record.identity, base_fee).amount)


def with_replacement_email(record: AttendanceRecord, address: str) -> AttendanceRecord:
    """Point a resolved recipient at the substitute address (non-production runs)."""
    if not record.email:
        return record
    passthrough = tuple(
        (column, address if column == record.email_column else value)
        for column, value in record.passthrough
    )
    return replace(record, email=address, passthrough=passthrough)


def sort_key(record: AttendanceRecord) -> Tuple[int, str]:
    """Check-ins descending, then identity case-insensitive ascending."""
    return (-record.check_ins, record.identity.lower())


def output_headers(header_map: HeaderMap, excluded: Iterable[str]) -> List[str]:
    """Source header order minus exclusions and check-in synonyms, plus computed columns."""
    excluded_keys = {str(h).strip().lower() for h in excluded}
    check_in_columns = set(header_map.columns["check_ins"])

    ordered: List[str] = []
    for header in header_map.headers:
        if header.strip().lower() in excluded_keys or header == AMOUNT_COLUMN:
            continue
        if header in check_in_columns and header != CHECK_INS_COLUMN:
            continue
        if header not in ordered:
            ordered.append(header)
    if CHECK_INS_COLUMN not in ordered:
        ordered.append(CHECK_INS_COLUMN)
    ordered.append(AMOUNT_COLUMN)
    return ordered


def render_csv(records: Sequence[AttendanceRecord], headers: Sequence[str]) -> bytes:
    """Serialize records as UTF-8 CSV. No records still yields the header line."""
    frame = pd.DataFrame([record.as_row() for record in records], columns=list(headers), dtype=object)
    return frame.to_csv(index=False, lineterminator="\n").encode("utf-8")


def read_attendance_csv(data: bytes, source_name: str = "") -> Tuple[List[str], List[Dict[str, Any]]]:
    """Parse export bytes into (header order, raw rows) with every cell kept as text.

    The header line is read as data so duplicate or blank names stay verbatim
    instead of becoming "Email.1" / "Unnamed: 3". For a repeated header the
    first column's value wins.
    """
    try:
        frame = pd.read_csv(
            io.BytesIO(data),
            header=None,
            dtype=str,
            keep_default_na=False,
            index_col=False,
            encoding="utf-8-sig",
        )
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as exc:
        raise GymEngineError(f"Could not parse attendance export {source_name or '<bytes>'}: {exc}") from exc

    headers = ["" if is_missing(value) else str(value) for value in frame.iloc[0].tolist()]
    rows: List[Dict[str, Any]] = []
    for values in frame.iloc[1:].itertuples(index=False, name=None):
        row: Dict[str, Any] = {}
        for header, value in zip(headers, values):
            row.setdefault(header, value)
        rows.append(row)
    return headers, rows


def run_pipeline(
    data: bytes,
    config: PipelineConfig,
    today: Optional[date] = None,
    source_name: str = "",
    logger: Optional[logging.Logger] = None,
) -> PipelineResult:
    """Normalize, filter, tier and assemble one attendance export."""
    logger = logger or logging.getLogger("gym_engine")
    config.validate()

    headers, rows = read_attendance_csv(data, source_name)
    header_map = map_headers(headers)
    filter_config = build_filter_config(config, today or date.today())

    if filter_config.has_window:
        logger.info(
            "Billing window: %s to %s",
            filter_config.window_start.isoformat() if filter_config.window_start else "(open)",
            filter_config.window_end.isoformat() if filter_config.window_end else "(open)",
        )
    else:
        logger.info("No billing window configured; filtering on subscription status only.")
    if header_map.email_column is None:
        logger.warning("No email column found in %s; nobody will be notified.", source_name or "export")

    kept: List[AttendanceRecord] = []
    for row in rows:
        record = normalize_record(header_map, row)
        if not keep_record(record, filter_config):
            continue
        record = annotate_tier(record, config.base_fee)
        if config.replace_emails:
            record = with_replacement_email(record, config.replacement_email)
        logger.debug("User: %s, Check-ins: %d, Deduction: %d", record.identity, record.check_ins, record.amount)
        kept.append(record)

    kept.sort(key=sort_key)
    logger.info("Kept %d of %d row(s) from %s", len(kept), len(rows), source_name or "export")

    out_headers = output_headers(header_map, config.excluded_headers)
    return PipelineResult(
        source_name=source_name,
        headers=tuple(out_headers),
        records=tuple(kept),
        rows_in=len(rows),
        filter_config=filter_config,
        csv_bytes=render_csv(kept, out_headers),
    )


def summarize_tiers(records: Sequence[AttendanceRecord], base_fee: int) -> List[Dict[str, Any]]:
    """One row per tier with head count and deduction totals, plus a TOTAL row."""
    summary: List[Dict[str, Any]] = []
    for idx, tier in enumerate(TIERS):
        upper = TIERS[idx - 1].min_check_ins - 1 if idx > 0 else None
        members = [r for r in records if select_tier(r.check_ins) is tier]
        amount = tier_for_check_ins(tier.min_check_ins, base_fee=base_fee).amount
        summary.append(
            {
                "Tier": tier.label,
                "Check Ins": f"{tier.min_check_ins}+" if upper is None else f"{tier.min_check_ins}-{upper}",
                "Employees": len(members),
                "Deduction per Employee": amount,
                "Total Deduction": amount * len(members),
            }
        )
    summary.append(
        {
            "Tier": "TOTAL",
            "Check Ins": "",
            "Employees": len(records),
            "Deduction per Employee": "",
            "Total Deduction": sum(r.amount or 0 for r in records),
        }
    )
    return summary


def write_tier_summary_workbook(
    result: PipelineResult,
    output_path: Path,
    base_fee: int,
    logger: logging.Logger,
) -> None:
    """Write the tier summary and the detail rows to an Excel workbook."""
    summary_df = pd.DataFrame(summarize_tiers(result.records, base_fee))
    detail_df = pd.read_csv(io.BytesIO(result.csv_bytes), dtype=str, keep_default_na=False)
    for col_name in (CHECK_INS_COLUMN, AMOUNT_COLUMN):
        detail_df[col_name] = pd.to_numeric(detail_df[col_name], errors="coerce").fillna(0)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    with pd.ExcelWriter(output_path, engine="xlsxwriter") as writer:
        summary_df.to_excel(writer, index=False, sheet_name=TIER_SUMMARY_SHEET)
        detail_df.to_excel(writer, index=False, sheet_name=DETAIL_SHEET)

        workbook = writer.book
        fmt_int = workbook.add_format({"num_format": "0"})
        fmt_money = workbook.add_format({"num_format": "#,##0"})

        summary_ws = writer.sheets[TIER_SUMMARY_SHEET]
        for col_idx, col_name in enumerate(summary_df.columns):
            col_fmt = fmt_money if col_name in {"Deduction per Employee", "Total Deduction"} else None
            summary_ws.set_column(col_idx, col_idx, 22, col_fmt)

        detail_ws = writer.sheets[DETAIL_SHEET]
        for col_idx, col_name in enumerate(detail_df.columns):
            col_fmt = None
            if col_name == CHECK_INS_COLUMN:
                col_fmt = fmt_int
            elif col_name == AMOUNT_COLUMN:
                col_fmt = fmt_money
            detail_ws.set_column(col_idx, col_idx, 20, col_fmt)

    logger.info("Wrote tier summary workbook: %s", output_path)


def matches_export_name(name: str, keywords: Sequence[str] = DEFAULT_EXPORT_KEYWORDS) -> bool:
    """True for CSV names containing every keyword, e.g. 'Corporate Employees (3).csv'."""
    lowered = name.lower()
    return lowered.endswith(".csv") and all(word.lower() in lowered for word in keywords)


def detect_export_file(inputs_dir: Path, keywords: Sequence[str], logger: logging.Logger) -> Path:
    """Find the newest attendance export in inputs_dir."""
    if not inputs_dir.exists() or not inputs_dir.is_dir():
        raise GymEngineError(f"Inputs folder not found: {inputs_dir}")

    candidates = [
        path
        for path in inputs_dir.iterdir()
        if path.is_file()
        and matches_export_name(path.name, keywords)
        and not path.name.startswith("Processed_")
    ]
    if not candidates:
        raise GymEngineError(
            f"No attendance export found in {inputs_dir} matching keywords {list(keywords)}."
        )

    newest = max(candidates, key=lambda p: p.stat().st_mtime)
    logger.info("Selected attendance export: %s", newest.name)
    return newest


def run_local_export(
    input_path: Path,
    outputs_dir: Path,
    config: PipelineConfig,
    logger: logging.Logger,
    today: Optional[date] = None,
) -> Tuple[Path, Path, PipelineResult]:
    """Post-process a downloaded export into the processed CSV and tier summary workbook."""
    if not input_path.exists():
        raise GymEngineError(f"Attendance export not found: {input_path}")

    logger.info("Loading attendance export %s", input_path.name)
    result = run_pipeline(
        input_path.read_bytes(),
        config,
        today=today,
        source_name=input_path.name,
        logger=logger,
    )
    if config.replace_emails:
        logger.info("Email replacement enabled: every recipient set to %s", config.replacement_email)

    outputs_dir.mkdir(parents=True, exist_ok=True)
    csv_path = outputs_dir / f"Processed_{input_path.name}"
    csv_path.write_bytes(result.csv_bytes)
    logger.info("Wrote processed CSV: %s (%d row(s))", csv_path, result.rows_out)

    summary_path = outputs_dir / f"{input_path.stem}_Tier_Summary.xlsx"
    write_tier_summary_workbook(result, summary_path, config.base_fee, logger)
    return csv_path, summary_path, result


def build_parser() -> argparse.ArgumentParser:
    """CLI parser."""
    parser = argparse.ArgumentParser(
        description="Filter a Gym Passport attendance export and compute monthly salary deductions."
    )
    parser.add_argument(
        "--input",
        default="",
        help="Attendance export CSV. When omitted the newest matching export in --inputs-dir is used.",
    )
    parser.add_argument(
        "--inputs-dir",
        default=str(DEFAULT_INPUTS_DIR),
        help="Directory holding downloaded portal exports.",
    )
    parser.add_argument(
        "--outputs-dir",
        default=str(DEFAULT_OUTPUTS_DIR),
        help="Output directory for the processed CSV and tier summary workbook.",
    )
    parser.add_argument(
        "--window-mode",
        default=WINDOW_THROUGH_PREVIOUS_MONTH,
        choices=list(WINDOW_MODES),
        help="Billing window applied to the Created At column.",
    )
    parser.add_argument(
        "--include-inactive",
        action="store_true",
        help="Keep rows whose subscription status is not 'active'.",
    )
    parser.add_argument(
        "--base-fee",
        type=int,
        default=int(os.getenv("BASE_FEE", DEFAULT_BASE_FEE)),
        help=f"Monthly subscription fee in {CURRENCY} (default: {DEFAULT_BASE_FEE}).",
    )
    email_mode = parser.add_mutually_exclusive_group()
    email_mode.add_argument(
        "--replace-emails",
        action="store_true",
        help="Overwrite every recipient address with --replacement-email (staging runs only).",
    )
    email_mode.add_argument(
        "--keep-emails",
        action="store_true",
        help="Keep original recipient addresses (default).",
    )
    parser.add_argument(
        "--replacement-email",
        default=os.getenv("REPLACEMENT_EMAIL", ""),
        help="Substitute address used with --replace-emails (or set REPLACEMENT_EMAIL).",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level.",
    )
    return parser


def main(argv: Optional[Iterable[str]] = None) -> int:
    """Program entrypoint."""
    parser = build_parser()
    args = parser.parse_args(list(argv) if argv is not None else None)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="%(asctime)s %(levelname)s %(message)s",
    )
    logger = logging.getLogger("gym_engine")

    config = PipelineConfig(
        base_fee=args.base_fee,
        window_mode=args.window_mode,
        require_active=not args.include_inactive,
        replace_emails=args.replace_emails,
        replacement_email=args.replacement_email,
    )

    try:
        if args.input:
            input_path = Path(args.input).resolve()
        else:
            input_path = detect_export_file(Path(args.inputs_dir).resolve(), DEFAULT_EXPORT_KEYWORDS, logger)
        run_local_export(
            input_path=input_path,
            outputs_dir=Path(args.outputs_dir).resolve(),
            config=config,
            logger=logger,
        )
    except GymEngineError as exc:
        logger.error("%s", exc)
        return 2
    except Exception:
        logger.exception("Unexpected failure while processing the attendance export.")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
