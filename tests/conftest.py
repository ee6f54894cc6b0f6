"""Shared in-memory collaborators for dispatch and watcher tests."""

import csv
import io

import pytest

from gym_engine import GymEngineError


class MemoryStore:
    """Object store over a dict; ``fail_writes`` makes put_bytes raise."""

    def __init__(self, objects=None):
        self.objects = dict(objects or {})
        self.fail_writes = False

    def describe(self, object_key):
        return f"memory://{object_key}"

    def get_bytes(self, object_key):
        if object_key not in self.objects:
            raise GymEngineError(f"Attendance export not found: {object_key}")
        return self.objects[object_key]

    def put_bytes(self, object_key, data):
        if self.fail_writes:
            raise GymEngineError("store is read-only")
        self.objects[object_key] = data

    def exists(self, object_key):
        return object_key in self.objects


class RecordingMailer:
    def __init__(self):
        self.sent = []
        self.fail = False

    def send_audit_copy(self, **kwargs):
        if self.fail:
            raise RuntimeError("SES throttled")
        self.sent.append(kwargs)


class RecordingQueue:
    def __init__(self):
        self.jobs = []
        self.reject = set()

    def submit(self, job):
        if job["email"] in self.reject:
            raise RuntimeError("queue unavailable")
        self.jobs.append(job)


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def mailer():
    return RecordingMailer()


@pytest.fixture
def queue():
    return RecordingQueue()


@pytest.fixture
def export_bytes():
    """Build a portal export from (name, email, status, check_ins, created) tuples."""

    def _build(rows):
        buf = io.StringIO()
        writer = csv.writer(buf, lineterminator="\n")
        writer.writerow(["User Image", "Username", "Email", "Phone", "Subscription Status", "Check Ins", "Created At"])
        for name, email, status, check_ins, created in rows:
            writer.writerow(["img.png", name, email, "0300", status, check_ins, created])
        return buf.getvalue().encode("utf-8")

    return _build
