#!/usr/bin/env python3
"""Distribute a processed Gym Passport sheet and mark the export as done.

One run per attendance export:
1. Fetch the export from the object store and run the gym_engine pipeline.
2. Email the assembled CSV to the admin address (audit copy, always sent).
3. Queue one notification job per employee with an email address.
4. Write ``<export key>.emails_sent_marker`` so triggers can skip re-runs.

Entry points:
- ``lambda_handler``: S3 (optionally SNS-wrapped) object-created events.
- ``run_dispatch``: collaborator-agnostic run used by the Lambda and the folder watcher.
"""

from __future__ import annotations

import json
import logging
import os
import traceback
import urllib.error
import urllib.request
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from email.mime.multipart import MIMEMultipart
from email.mime.text import MIMEText
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple
from urllib.parse import unquote_plus
from uuid import uuid4

from gym_engine import (
    DEFAULT_BASE_FEE,
    DEFAULT_EXCLUDED_HEADERS,
    WINDOW_PREVIOUS_MONTH,
    AttendanceRecord,
    GymEngineError,
    PipelineConfig,
    PipelineResult,
    run_pipeline,
    tier_for_check_ins,
)

DEFAULT_MARKER_SUFFIX = "emails_sent_marker"
MARKER_BODY = b"sent"

ADMIN_SUBJECT = "Filtered active users CSV: {name}"
ADMIN_BODY = (
    "Attached is the filtered Gym Passport attendance sheet for {period}.\n"
    "It contains {rows} employee(s) with an active subscription and their salary deductions "
    "(total {total}).\n\n"
    "Stay healthy and keep moving!"
)

STATUS_COMPLETED = "completed"
STATUS_DEGRADED = "degraded"
STATUS_FAILED = "failed"
STATUS_SKIPPED = "skipped"

logger = logging.getLogger("gym_dispatch")


def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(microsecond=0)


def new_run_id() -> str:
    return f"{now_utc().strftime('%Y%m%dT%H%M%SZ')}-{uuid4().hex[:8]}"


TRUE_VALUES = ("true", "1", "yes")
FALSE_VALUES = ("false", "0", "no")


def _env_flag(name: str, value: Optional[str], default: bool) -> bool:
    """Parse a boolean switch; unknown spellings are a configuration error."""
    if value is None or not value.strip():
        return default
    lowered = value.strip().lower()
    if lowered in TRUE_VALUES:
        return True
    if lowered in FALSE_VALUES:
        return False
    raise GymEngineError(
        f"{name} must be one of {list(TRUE_VALUES + FALSE_VALUES)}, got '{value}'."
    )


@dataclass(frozen=True)
class DispatchConfig:
    """Everything a dispatch run needs, built once at process start."""

    admin_email: str
    queue_url: str
    sender_email: str = ""
    pipeline: PipelineConfig = field(default_factory=PipelineConfig)
    marker_suffix: str = DEFAULT_MARKER_SUFFIX
    alert_webhook: str = ""

    @property
    def from_address(self) -> str:
        return self.sender_email or self.admin_email

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "DispatchConfig":
        """Read configuration from environment variables (Lambda settings)."""
        env = os.environ if environ is None else environ

        admin_email = (env.get("TARGET_EMAIL") or env.get("ADMIN_EMAIL") or env.get("SOURCE_EMAIL") or "").strip()
        if not admin_email:
            raise GymEngineError("Admin address not configured. Set TARGET_EMAIL (or SOURCE_EMAIL).")
        queue_url = (env.get("EMAIL_QUEUE_URL") or "").strip()
        if not queue_url:
            raise GymEngineError("Job queue not configured. Set EMAIL_QUEUE_URL.")

        base_fee_raw = (env.get("BASE_FEE") or "").strip()
        try:
            base_fee = int(base_fee_raw) if base_fee_raw else DEFAULT_BASE_FEE
        except ValueError as exc:
            raise GymEngineError(f"BASE_FEE must be an integer, got '{base_fee_raw}'.") from exc

        excluded_raw = env.get("EXCLUDED_HEADERS")
        if excluded_raw is None or not excluded_raw.strip():
            excluded = DEFAULT_EXCLUDED_HEADERS
        else:
            excluded = tuple(h.strip() for h in excluded_raw.split(",") if h.strip())

        pipeline = PipelineConfig(
            base_fee=base_fee,
            window_mode=(env.get("DATE_WINDOW_MODE") or WINDOW_PREVIOUS_MONTH).strip().lower(),
            require_active=_env_flag("REQUIRE_ACTIVE", env.get("REQUIRE_ACTIVE"), True),
            excluded_headers=excluded,
            replace_emails=_env_flag("REPLACE_EMAILS", env.get("REPLACE_EMAILS"), False),
            replacement_email=(env.get("REPLACEMENT_EMAIL") or "").strip(),
        )
        pipeline.validate()

        return cls(
            admin_email=admin_email,
            queue_url=queue_url,
            sender_email=(env.get("SOURCE_EMAIL") or "").strip(),
            pipeline=pipeline,
            marker_suffix=(env.get("MARKER_SUFFIX") or DEFAULT_MARKER_SUFFIX).strip(),
            alert_webhook=(env.get("ALERT_WEBHOOK_URL") or "").strip(),
        )


# ---------------------------------------------------------------------------
# Collaborators
# ---------------------------------------------------------------------------
def create_aws_client(service: str, region: Optional[str] = None) -> Any:
    """Create a boto3 client for S3, SES or SQS."""
    try:
        import boto3
    except ImportError as error:
        raise GymEngineError(
            f"AWS dispatch requires boto3 for {service}, but it is not installed. "
            "Install boto3 or run the engine CLI for local processing."
        ) from error
    session_kwargs: Dict[str, str] = {}
    if region:
        session_kwargs["region_name"] = region
    session = boto3.session.Session(**session_kwargs)
    return session.client(service)


def _aws_error_code(error: Exception) -> str:
    response = getattr(error, "response", None) or {}
    return str(response.get("Error", {}).get("Code", ""))


class S3ObjectStore:
    """Object store backed by one S3 bucket."""

    def __init__(self, bucket: str, client: Any = None) -> None:
        self.bucket = bucket
        self.client = client if client is not None else create_aws_client("s3")

    def describe(self, object_key: str) -> str:
        return f"s3://{self.bucket}/{object_key}"

    def get_bytes(self, object_key: str) -> bytes:
        try:
            response = self.client.get_object(Bucket=self.bucket, Key=object_key)
            return response["Body"].read()
        except Exception as error:
            raise GymEngineError(f"Failed to read {self.describe(object_key)}: {error}") from error

    def put_bytes(self, object_key: str, data: bytes) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=object_key, Body=data)
        except Exception as error:
            raise GymEngineError(f"Failed to write {self.describe(object_key)}: {error}") from error

    def exists(self, object_key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=object_key)
        except Exception as error:
            if _aws_error_code(error) in {"404", "NoSuchKey", "NotFound"}:
                return False
            raise GymEngineError(f"Failed to check {self.describe(object_key)}: {error}") from error
        return True


class LocalObjectStore:
    """Object store over a local directory; keys are relative paths."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def describe(self, object_key: str) -> str:
        return str(self.root / object_key)

    def get_bytes(self, object_key: str) -> bytes:
        path = self.root / object_key
        if not path.is_file():
            raise GymEngineError(f"Attendance export not found: {path}")
        return path.read_bytes()

    def put_bytes(self, object_key: str, data: bytes) -> None:
        path = self.root / object_key
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)

    def exists(self, object_key: str) -> bool:
        return (self.root / object_key).is_file()


def build_admin_message(
    sender: str,
    recipient: str,
    subject: str,
    body: str,
    attachment_name: str,
    attachment: bytes,
) -> MIMEMultipart:
    """Multipart message with a plain-text note and the CSV attached."""
    message = MIMEMultipart("mixed")
    message["From"] = sender
    message["To"] = recipient
    message["Subject"] = subject
    message.attach(MIMEText(body, "plain", "utf-8"))

    csv_part = MIMEText(attachment.decode("utf-8"), "csv", "utf-8")
    csv_part.add_header("Content-Disposition", "attachment", filename=attachment_name)
    message.attach(csv_part)
    return message


class SesMailer:
    """Sends the admin audit copy through SES raw email."""

    def __init__(self, client: Any = None) -> None:
        self.client = client if client is not None else create_aws_client("ses")

    def send_audit_copy(
        self,
        sender: str,
        recipient: str,
        subject: str,
        body: str,
        attachment_name: str,
        attachment: bytes,
    ) -> None:
        message = build_admin_message(sender, recipient, subject, body, attachment_name, attachment)
        self.client.send_raw_email(
            Source=sender,
            Destinations=[recipient],
            RawMessage={"Data": message.as_bytes()},
        )


class SqsJobQueue:
    """Per-employee notification jobs as JSON SQS messages."""

    def __init__(self, queue_url: str, client: Any = None) -> None:
        self.queue_url = queue_url
        self.client = client if client is not None else create_aws_client("sqs")

    def submit(self, job: Dict[str, Any]) -> None:
        self.client.send_message(QueueUrl=self.queue_url, MessageBody=json.dumps(job))


# ---------------------------------------------------------------------------
# Idempotency marker
# ---------------------------------------------------------------------------
def marker_key(input_key: str, suffix: str = DEFAULT_MARKER_SUFFIX) -> str:
    return f"{input_key}.{suffix}"


def is_marker_key(object_key: str, suffix: str = DEFAULT_MARKER_SUFFIX) -> bool:
    return object_key.endswith(f".{suffix}")


def is_already_processed(store: Any, input_key: str, suffix: str = DEFAULT_MARKER_SUFFIX) -> bool:
    """True when the completion marker for input_key exists."""
    return store.exists(marker_key(input_key, suffix))


# ---------------------------------------------------------------------------
# Dispatch run
# ---------------------------------------------------------------------------
def build_job(record: AttendanceRecord, base_fee: int) -> Dict[str, Any]:
    """Queue payload consumed by the mailer."""
    tier = tier_for_check_ins(record.check_ins, record.identity, base_fee)
    return {
        "email": record.email,
        "identity": record.identity,
        "subject": tier.subject,
        "body": tier.body,
        "checkIns": record.check_ins,
    }


def _billing_period(result: PipelineResult) -> str:
    start = result.filter_config.window_start
    end = result.filter_config.window_end
    if start and end:
        return f"{start.isoformat()} to {end.isoformat()}"
    if end:
        return f"through {end.isoformat()}"
    return "all dates"


def run_dispatch(
    input_key: str,
    store: Any,
    mailer: Any,
    queue: Any,
    config: DispatchConfig,
    run_logger: Optional[logging.Logger] = None,
    today: Optional[date] = None,
) -> Tuple[Dict[str, Any], Optional[PipelineResult]]:
    """Run the pipeline for one export and distribute it. Never raises.

    Returns the run record (status completed / degraded / failed with counts and
    the first error message) and the pipeline result when the input was readable.
    """
    log = run_logger or logger
    attachment_name = input_key.rsplit("/", 1)[-1]
    record: Dict[str, Any] = {
        "run_id": new_run_id(),
        "created_at_utc": now_utc().strftime("%Y-%m-%dT%H:%M:%SZ"),
        "status": "running",
        "input_key": input_key,
        "input_location": store.describe(input_key),
        "admin_email": config.admin_email,
        "rows_in": 0,
        "rows_out": 0,
        "total_deduction": 0,
        "admin_email_sent": False,
        "jobs_queued": 0,
        "jobs_failed": 0,
        "jobs_skipped_no_email": 0,
        "marker_key": marker_key(input_key, config.marker_suffix),
        "marker_written": False,
        "error": "",
    }

    log.info("=" * 60)
    log.info("DISPATCH RUN STARTING  [%s]", record["run_id"])
    log.info("Input: %s", record["input_location"])
    log.info("=" * 60)

    def fail(message: str) -> Tuple[Dict[str, Any], Optional[PipelineResult]]:
        record.update({
            "status": STATUS_FAILED,
            "completed_at_utc": now_utc().strftime("%Y-%m-%dT%H:%M:%SZ"),
            "error": message,
            "traceback": traceback.format_exc(),
        })
        log.error("DISPATCH RUN FAILED  [%s] %s\n%s", record["run_id"], message, record["traceback"])
        return record, result

    result: Optional[PipelineResult] = None
    try:
        data = store.get_bytes(input_key)
        result = run_pipeline(data, config.pipeline, today=today, source_name=attachment_name, logger=log)
    except Exception as exc:
        return fail(f"Input error: {exc}")

    record.update({
        "rows_in": result.rows_in,
        "rows_out": result.rows_out,
        "total_deduction": result.total_amount,
        "billing_period": _billing_period(result),
    })

    try:
        mailer.send_audit_copy(
            sender=config.from_address,
            recipient=config.admin_email,
            subject=ADMIN_SUBJECT.format(name=attachment_name),
            body=ADMIN_BODY.format(
                period=record["billing_period"],
                rows=result.rows_out,
                total=result.total_amount,
            ),
            attachment_name=attachment_name,
            attachment=result.csv_bytes,
        )
    except Exception as exc:
        return fail(f"Admin email failed: {exc}")
    record["admin_email_sent"] = True
    log.info("Filtered CSV sent to admin %s.", config.admin_email)

    for attendee in result.records:
        if not attendee.email:
            record["jobs_skipped_no_email"] += 1
            continue
        try:
            queue.submit(build_job(attendee, config.pipeline.base_fee))
        except Exception as exc:
            record["jobs_failed"] += 1
            if not record["error"]:
                record["error"] = f"Failed to queue email for {attendee.email}: {exc}"
            log.error("Failed to queue email for %s: %s", attendee.email, exc)
            continue
        record["jobs_queued"] += 1
        log.info("Queued email job for: %s", attendee.email)

    try:
        store.put_bytes(record["marker_key"], MARKER_BODY)
        record["marker_written"] = True
        log.info("Marker file created: %s", record["marker_key"])
    except Exception as exc:
        log.error("Marker write failed for %s: %s", record["marker_key"], exc)
        if not record["error"]:
            record["error"] = f"Marker write failed: {exc}"

    degraded = record["jobs_failed"] > 0 or not record["marker_written"]
    record.update({
        "status": STATUS_DEGRADED if degraded else STATUS_COMPLETED,
        "completed_at_utc": now_utc().strftime("%Y-%m-%dT%H:%M:%SZ"),
    })

    log.info("=" * 60)
    log.info("DISPATCH RUN %s  [%s]", record["status"].upper(), record["run_id"])
    log.info(
        "Rows kept: %d of %d | jobs queued: %d, failed: %d, no email: %d | marker: %s",
        record["rows_out"],
        record["rows_in"],
        record["jobs_queued"],
        record["jobs_failed"],
        record["jobs_skipped_no_email"],
        "written" if record["marker_written"] else "MISSING",
    )
    log.info("=" * 60)
    return record, result


# ---------------------------------------------------------------------------
# Operator alert
# ---------------------------------------------------------------------------
def send_alert(webhook_url: str, record: Dict[str, Any]) -> Optional[str]:
    """Post a run summary to a Slack webhook. Returns an error message or None."""
    if not webhook_url or not webhook_url.strip():
        return None
    status = record.get("status", "")
    status_emoji = {
        STATUS_COMPLETED: "✅",
        STATUS_DEGRADED: "⚠️",
        STATUS_FAILED: "\U0001f6a8",
    }.get(status, "❓")
    text = (
        f"{status_emoji} *Gym Passport dispatch* run `{record.get('run_id', 'N/A')}`\n"
        f"*Status:* {status.upper()}\n"
        f"*Export:* {record.get('input_location', record.get('input_key', 'N/A'))}\n"
        f"*Billing period:* {record.get('billing_period') or 'Unknown'}\n"
        f"*Rows kept:* {record.get('rows_out', 0)} of {record.get('rows_in', 0)}\n"
        f"*Jobs:* {record.get('jobs_queued', 0)} queued, {record.get('jobs_failed', 0)} failed\n"
        f"*Marker:* {'written' if record.get('marker_written') else 'missing'}"
    )
    if record.get("error"):
        text += f"\n*First error:* {record['error']}"
    try:
        # Request() rejects scheme-less URLs with ValueError; read() timeouts are plain OSError.
        req = urllib.request.Request(
            webhook_url.strip(),
            data=json.dumps({"text": text}).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="POST",
        )
        urllib.request.urlopen(req, timeout=15).read()
        return None
    except (urllib.error.URLError, ValueError, OSError) as exc:
        return f"Slack notification failed: {exc}"


# ---------------------------------------------------------------------------
# Lambda trigger
# ---------------------------------------------------------------------------
def parse_trigger_event(event: Dict[str, Any]) -> Tuple[str, str]:
    """Return (bucket, key) from an S3 event, optionally wrapped in an SNS envelope."""
    try:
        first = event["Records"][0]
        if "Sns" in first:
            first = json.loads(first["Sns"]["Message"])["Records"][0]
        bucket = first["s3"]["bucket"]["name"]
        object_key = unquote_plus(first["s3"]["object"]["key"])
    except (KeyError, IndexError, TypeError, ValueError) as exc:
        raise GymEngineError(f"Unrecognized trigger event: {exc}") from exc
    return bucket, object_key


def handle_trigger(
    event: Dict[str, Any],
    config: DispatchConfig,
    store_for_bucket: Any,
    mailer: Any,
    queue: Any,
    today: Optional[date] = None,
) -> Dict[str, Any]:
    """Resolve the event, skip already-processed exports, dispatch the rest."""
    bucket, object_key = parse_trigger_event(event)
    logger.info("Processing S3 bucket: %s, key: %s", bucket, object_key)
    store = store_for_bucket(bucket)

    if is_marker_key(object_key, config.marker_suffix):
        logger.info("Ignoring marker object %s.", object_key)
        return {"status": STATUS_SKIPPED, "input_key": object_key, "reason": "marker object"}
    if is_already_processed(store, object_key, config.marker_suffix):
        logger.warning("Marker exists for %s; emails were already sent. Skipping.", object_key)
        return {"status": STATUS_SKIPPED, "input_key": object_key, "reason": "already processed"}

    record, _ = run_dispatch(object_key, store, mailer, queue, config, today=today)
    alert_error = send_alert(config.alert_webhook, record)
    if alert_error:
        logger.warning(alert_error)
        record["alert_error"] = alert_error
    return record


def _response(status_code: int, payload: Dict[str, Any]) -> Dict[str, Any]:
    body = {k: v for k, v in payload.items() if k != "traceback"}
    return {"statusCode": status_code, "body": json.dumps(body, default=str)}


def lambda_handler(event: Dict[str, Any], context: Any) -> Dict[str, Any]:
    """AWS Lambda entrypoint."""
    logging.getLogger().setLevel(os.getenv("LOG_LEVEL", "INFO").upper())
    logger.info("Received event: %s", json.dumps(event, default=str))
    try:
        config = DispatchConfig.from_env()
        record = handle_trigger(
            event,
            config,
            store_for_bucket=S3ObjectStore,
            mailer=SesMailer(),
            queue=SqsJobQueue(config.queue_url),
        )
    except GymEngineError as exc:
        logger.error("%s", exc)
        return _response(500, {"status": STATUS_FAILED, "error": str(exc)})

    status_code = 500 if record.get("status") == STATUS_FAILED else 200
    return _response(status_code, record)
