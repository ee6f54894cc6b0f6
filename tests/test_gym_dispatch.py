"""Tests for gym_dispatch: distribution, marker handling and triggers."""

import email
import io
import json
import urllib.error
from dataclasses import replace
from datetime import date

import pytest
from botocore.exceptions import ClientError

import gym_dispatch
from gym_dispatch import (
    MARKER_BODY,
    STATUS_COMPLETED,
    STATUS_DEGRADED,
    STATUS_FAILED,
    STATUS_SKIPPED,
    DispatchConfig,
    S3ObjectStore,
    SesMailer,
    SqsJobQueue,
    build_admin_message,
    handle_trigger,
    is_marker_key,
    lambda_handler,
    marker_key,
    parse_trigger_event,
    run_dispatch,
    send_alert,
)
from gym_engine import WINDOW_NONE, WINDOW_PREVIOUS_MONTH, GymEngineError, PipelineConfig

TODAY = date(2024, 6, 15)
KEY = "exports/Corporate Employees.csv"


def make_config(**pipeline_overrides):
    pipeline = PipelineConfig(**{"window_mode": WINDOW_PREVIOUS_MONTH, **pipeline_overrides})
    return DispatchConfig(admin_email="admin@x.com", queue_url="https://sqs/queue", pipeline=pipeline)


def s3_event(bucket, object_key):
    return {"Records": [{"s3": {"bucket": {"name": bucket}, "object": {"key": object_key}}}]}


class FakeS3Client:
    def __init__(self, objects=None, head_error_code="404"):
        self.objects = dict(objects or {})
        self.head_error_code = head_error_code

    def get_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": "NoSuchKey", "Message": "missing"}}, "GetObject")
        return {"Body": io.BytesIO(self.objects[Key])}

    def put_object(self, Bucket, Key, Body):
        self.objects[Key] = Body

    def head_object(self, Bucket, Key):
        if Key not in self.objects:
            raise ClientError({"Error": {"Code": self.head_error_code, "Message": "head"}}, "HeadObject")
        return {}


class RecordingClient:
    def __init__(self):
        self.calls = []

    def send_raw_email(self, **kwargs):
        self.calls.append(("send_raw_email", kwargs))

    def send_message(self, **kwargs):
        self.calls.append(("send_message", kwargs))


class TestRunDispatch:
    """One export through pipeline, admin email, job queue and marker."""

    def test_completed_run(self, store, mailer, queue, export_bytes):
        """Audit copy first, one job per recipient, marker last."""
        store.objects[KEY] = export_bytes([
            ("Alice", "alice@x.com", "Active", "15", "2024-05-10 10:00:00"),
            ("Bob", "bob@x.com", "active", "2", "2024-05-20"),
            ("Old", "old@x.com", "Active", "20", "2024-03-01"),
        ])

        record, result = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_COMPLETED
        assert record["rows_in"] == 3
        assert record["rows_out"] == 2
        assert record["jobs_queued"] == 2
        assert record["error"] == ""
        assert record["billing_period"] == "2024-05-01 to 2024-05-31"
        assert len(mailer.sent) == 1
        sent = mailer.sent[0]
        assert sent["recipient"] == "admin@x.com"
        assert sent["attachment"] == result.csv_bytes
        assert sent["attachment_name"] == "Corporate Employees.csv"
        assert [job["email"] for job in queue.jobs] == ["alice@x.com", "bob@x.com"]
        assert queue.jobs[0]["checkIns"] == 15
        assert "1375" in queue.jobs[0]["body"]
        assert store.objects[marker_key(KEY)] == MARKER_BODY
        assert record["marker_written"] is True

    def test_zero_surviving_rows_still_sends_admin_copy(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Bob", "bob@x.com", "inactive", "3", "2024-05-02")])

        record, result = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_COMPLETED
        assert result.rows_out == 0
        assert len(mailer.sent) == 1
        assert mailer.sent[0]["attachment"].count(b"\n") == 1
        assert queue.jobs == []
        assert marker_key(KEY) in store.objects

    def test_admin_email_failure_stops_run(self, store, mailer, queue, export_bytes):
        """No jobs and no marker when the audit copy cannot be sent."""
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        mailer.fail = True

        record, _ = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_FAILED
        assert "Admin email failed" in record["error"]
        assert "traceback" in record
        assert queue.jobs == []
        assert marker_key(KEY) not in store.objects

    def test_job_failure_continues_and_degrades(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([
            ("Alice", "alice@x.com", "Active", "15", "2024-05-10"),
            ("Bob", "bob@x.com", "Active", "2", "2024-05-11"),
            ("Cara", "cara@x.com", "Active", "9", "2024-05-12"),
        ])
        queue.reject = {"alice@x.com", "cara@x.com"}

        record, _ = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_DEGRADED
        assert record["jobs_failed"] == 2
        assert record["jobs_queued"] == 1
        assert "alice@x.com" in record["error"]
        assert record["marker_written"] is True

    def test_marker_failure_degrades(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        store.fail_writes = True

        record, _ = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_DEGRADED
        assert record["marker_written"] is False
        assert record["jobs_queued"] == 1
        assert record["error"].startswith("Marker write failed")

    def test_missing_input_fails(self, store, mailer, queue):
        record, result = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_FAILED
        assert record["error"].startswith("Input error")
        assert result is None
        assert mailer.sent == []

    def test_rows_without_email_are_skipped(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([
            ("Alice", "alice@x.com", "Active", "15", "2024-05-10"),
            ("Nomail", "", "Active", "4", "2024-05-10"),
        ])

        record, result = run_dispatch(KEY, store, mailer, queue, make_config(), today=TODAY)

        assert record["status"] == STATUS_COMPLETED
        assert result.rows_out == 2
        assert record["jobs_skipped_no_email"] == 1
        assert len(queue.jobs) == 1

    def test_replacement_email_reaches_jobs(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        config = make_config(replace_emails=True, replacement_email="qa@x.com")

        run_dispatch(KEY, store, mailer, queue, config, today=TODAY)

        assert [job["email"] for job in queue.jobs] == ["qa@x.com"]
        assert b"alice@x.com" not in mailer.sent[0]["attachment"]


class TestDispatchConfig:
    """Environment-driven configuration."""

    BASE_ENV = {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "https://sqs/queue"}

    def test_defaults(self):
        config = DispatchConfig.from_env(dict(self.BASE_ENV))
        assert config.admin_email == "admin@x.com"
        assert config.pipeline.base_fee == 5500
        assert config.pipeline.window_mode == WINDOW_PREVIOUS_MONTH
        assert config.pipeline.require_active is True
        assert config.pipeline.replace_emails is False

    def test_replace_emails_only_on_true(self):
        env = dict(self.BASE_ENV, REPLACE_EMAILS="false", REPLACEMENT_EMAIL="qa@x.com")
        assert DispatchConfig.from_env(env).pipeline.replace_emails is False
        env["REPLACE_EMAILS"] = "TRUE"
        assert DispatchConfig.from_env(env).pipeline.replace_emails is True

    def test_source_email_fallback(self):
        config = DispatchConfig.from_env({"SOURCE_EMAIL": "ops@x.com", "EMAIL_QUEUE_URL": "q"})
        assert config.admin_email == "ops@x.com"
        assert config.from_address == "ops@x.com"

    def test_overrides(self):
        env = dict(
            self.BASE_ENV,
            BASE_FEE="6000",
            DATE_WINDOW_MODE="None",
            REQUIRE_ACTIVE="false",
            EXCLUDED_HEADERS="Phone, Password",
        )
        config = DispatchConfig.from_env(env)
        assert config.pipeline.base_fee == 6000
        assert config.pipeline.window_mode == WINDOW_NONE
        assert config.pipeline.require_active is False
        assert config.pipeline.excluded_headers == ("Phone", "Password")

    @pytest.mark.parametrize(
        "env",
        [
            {"EMAIL_QUEUE_URL": "q"},
            {"TARGET_EMAIL": "admin@x.com"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "BASE_FEE": "lots"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "DATE_WINDOW_MODE": "weekly"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "REPLACE_EMAILS": "true"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "REQUIRE_ACTIVE": "on"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "REQUIRE_ACTIVE": "ture"},
            {"TARGET_EMAIL": "admin@x.com", "EMAIL_QUEUE_URL": "q", "REPLACE_EMAILS": "enabled"},
        ],
    )
    def test_invalid_configuration(self, env):
        with pytest.raises(GymEngineError):
            DispatchConfig.from_env(env)

    @pytest.mark.parametrize(
        "raw, expected",
        [("1", True), ("yes", True), ("True", True), ("0", False), ("no", False), ("FALSE", False), ("", True)],
    )
    def test_require_active_spellings(self, raw, expected):
        """Common boolean spellings are honoured; blank keeps the default."""
        env = dict(self.BASE_ENV, REQUIRE_ACTIVE=raw)
        assert DispatchConfig.from_env(env).pipeline.require_active is expected


class TestCollaborators:
    """boto3-backed store, mailer and queue with stub clients."""

    def test_s3_store_round_trip(self):
        client = FakeS3Client({"a.csv": b"Username\n"})
        s3 = S3ObjectStore("bucket", client=client)
        assert s3.get_bytes("a.csv") == b"Username\n"
        s3.put_bytes("a.csv.emails_sent_marker", MARKER_BODY)
        assert s3.exists("a.csv.emails_sent_marker")
        assert not s3.exists("b.csv")
        assert s3.describe("a.csv") == "s3://bucket/a.csv"

    def test_s3_store_errors(self):
        s3 = S3ObjectStore("bucket", client=FakeS3Client(head_error_code="403"))
        with pytest.raises(GymEngineError):
            s3.get_bytes("missing.csv")
        with pytest.raises(GymEngineError):
            s3.exists("missing.csv")

    def test_admin_message_attaches_csv(self):
        data = b"Username,Amount to be Deducted\nAlice,1375\n"
        message = build_admin_message("ops@x.com", "admin@x.com", "Subject", "Body", "export.csv", data)
        parsed = email.message_from_bytes(message.as_bytes())
        parts = parsed.get_payload()
        assert parsed["To"] == "admin@x.com"
        assert len(parts) == 2
        assert parts[1].get_filename() == "export.csv"
        assert parts[1].get_content_type() == "text/csv"
        assert parts[1].get_payload(decode=True) == data

    def test_ses_mailer_sends_raw_email(self):
        client = RecordingClient()
        SesMailer(client=client).send_audit_copy(
            sender="ops@x.com",
            recipient="admin@x.com",
            subject="s",
            body="b",
            attachment_name="x.csv",
            attachment=b"a\n",
        )
        name, kwargs = client.calls[0]
        assert name == "send_raw_email"
        assert kwargs["Destinations"] == ["admin@x.com"]
        assert kwargs["Source"] == "ops@x.com"
        assert isinstance(kwargs["RawMessage"]["Data"], bytes)

    def test_sqs_queue_serializes_job(self):
        client = RecordingClient()
        SqsJobQueue("https://sqs/queue", client=client).submit({"email": "a@x.com", "checkIns": 3})
        name, kwargs = client.calls[0]
        assert name == "send_message"
        assert kwargs["QueueUrl"] == "https://sqs/queue"
        assert json.loads(kwargs["MessageBody"]) == {"email": "a@x.com", "checkIns": 3}


class TestTriggers:
    """Event parsing, marker skips and the Lambda entrypoint."""

    def test_parse_plain_event_decodes_key(self):
        assert parse_trigger_event(s3_event("b", "exports/Corporate+Employees%281%29.csv")) == (
            "b",
            "exports/Corporate Employees(1).csv",
        )

    def test_parse_sns_wrapped_event(self):
        inner = s3_event("b", "a.csv")
        event = {"Records": [{"Sns": {"Message": json.dumps(inner)}}]}
        assert parse_trigger_event(event) == ("b", "a.csv")

    def test_parse_bad_event(self):
        with pytest.raises(GymEngineError):
            parse_trigger_event({"Records": []})

    def test_marker_key_helpers(self):
        assert marker_key("a.csv") == "a.csv.emails_sent_marker"
        assert is_marker_key("a.csv.emails_sent_marker")
        assert not is_marker_key("a.csv")

    def test_already_processed_export_is_skipped(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        store.objects[marker_key(KEY)] = MARKER_BODY

        outcome = handle_trigger(s3_event("b", KEY), make_config(), lambda bucket: store, mailer, queue, today=TODAY)

        assert outcome["status"] == STATUS_SKIPPED
        assert mailer.sent == []
        assert queue.jobs == []

    def test_marker_object_event_is_ignored(self, store, mailer, queue):
        outcome = handle_trigger(
            s3_event("b", marker_key(KEY)), make_config(), lambda bucket: store, mailer, queue, today=TODAY
        )
        assert outcome["status"] == STATUS_SKIPPED
        assert outcome["reason"] == "marker object"

    def test_second_trigger_after_success_is_skipped(self, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        event = s3_event("b", KEY)

        first = handle_trigger(event, make_config(), lambda bucket: store, mailer, queue, today=TODAY)
        second = handle_trigger(event, make_config(), lambda bucket: store, mailer, queue, today=TODAY)

        assert first["status"] == STATUS_COMPLETED
        assert second["status"] == STATUS_SKIPPED
        assert len(mailer.sent) == 1
        assert len(queue.jobs) == 1

    def test_lambda_handler_without_configuration(self, monkeypatch):
        for name in ("TARGET_EMAIL", "ADMIN_EMAIL", "SOURCE_EMAIL", "EMAIL_QUEUE_URL"):
            monkeypatch.delenv(name, raising=False)
        response = lambda_handler(s3_event("b", KEY), None)
        assert response["statusCode"] == 500
        assert json.loads(response["body"])["status"] == STATUS_FAILED

    def test_lambda_handler_dispatches(self, monkeypatch, store, mailer, queue, export_bytes):
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2020-01-10")])
        monkeypatch.setenv("TARGET_EMAIL", "admin@x.com")
        monkeypatch.setenv("EMAIL_QUEUE_URL", "https://sqs/queue")
        monkeypatch.setenv("DATE_WINDOW_MODE", "none")
        monkeypatch.delenv("ALERT_WEBHOOK_URL", raising=False)
        monkeypatch.setattr(gym_dispatch, "S3ObjectStore", lambda bucket: store)
        monkeypatch.setattr(gym_dispatch, "SesMailer", lambda: mailer)
        monkeypatch.setattr(gym_dispatch, "SqsJobQueue", lambda url: queue)

        response = lambda_handler(s3_event("b", KEY), None)

        body = json.loads(response["body"])
        assert response["statusCode"] == 200
        assert body["status"] == STATUS_COMPLETED
        assert body["jobs_queued"] == 1
        assert "traceback" not in body


class TestSendAlert:
    def test_no_webhook(self):
        assert send_alert("", {"status": STATUS_COMPLETED}) is None

    def test_webhook_failure_is_reported(self, monkeypatch):
        def refuse(request, timeout):
            raise urllib.error.URLError("connection refused")

        monkeypatch.setattr(gym_dispatch.urllib.request, "urlopen", refuse)
        error = send_alert("https://hooks.example/T0", {"status": STATUS_FAILED, "error": "boom"})
        assert error.startswith("Slack notification failed")

    def test_webhook_without_scheme_is_reported(self):
        error = send_alert("hooks.example/T0", {"status": STATUS_COMPLETED})
        assert error.startswith("Slack notification failed")

    def test_webhook_timeout_is_reported(self, monkeypatch):
        class SlowResponse:
            def read(self):
                raise TimeoutError("The read operation timed out")

        monkeypatch.setattr(gym_dispatch.urllib.request, "urlopen", lambda request, timeout: SlowResponse())
        error = send_alert("https://hooks.example/T0", {"status": STATUS_COMPLETED})
        assert "timed out" in error

    def test_bad_webhook_does_not_break_trigger(self, store, mailer, queue, export_bytes):
        """A finished dispatch still returns its record when the alert cannot be posted."""
        store.objects[KEY] = export_bytes([("Alice", "alice@x.com", "Active", "15", "2024-05-10")])
        config = replace(make_config(), alert_webhook="hooks.example/T0")

        outcome = handle_trigger(s3_event("b", KEY), config, lambda bucket: store, mailer, queue, today=TODAY)

        assert outcome["status"] == STATUS_COMPLETED
        assert outcome["alert_error"].startswith("Slack notification failed")
        assert outcome["marker_written"] is True
