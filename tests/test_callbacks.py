import requests

from sandbox.core.models import Job, JobState, LimitPolicy
from sandbox.services.callbacks import WebhookNotifier
from sandbox.services.dispatcher import Dispatcher

from conftest import make_settings

POLICY = LimitPolicy(cpu_ms=1000, wall_ms=1000, memory_mb=64, max_output_bytes=1024, max_processes=4)


class FakeResponse:
    def __init__(self, status_code):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} error")


class FakeSession:
    def __init__(self, status_code=200, exc=None):
        self.status_code = status_code
        self.exc = exc
        self.posts = []
        self.closed = False

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        if self.exc is not None:
            raise self.exc
        return FakeResponse(self.status_code)

    def close(self):
        self.closed = True


def test_terminal_jobs_are_posted(tmp_path, registry):
    session = FakeSession()
    notifier = WebhookNotifier(timeout_s=2.5, session=session)
    d = Dispatcher(make_settings(tmp_path), registry=registry, notifier=notifier)
    with d:
        with_cb = d.submit("python", "print('cb')", callback_url="http://hooks.local/done")
        without = d.submit("python", "print('quiet')")
        d.wait(with_cb, 30)
        d.wait(without, 30)
    assert session.closed
    assert len(session.posts) == 1
    url, body, timeout = session.posts[0]
    assert url == "http://hooks.local/done"
    assert timeout == 2.5
    assert body["jobId"] == with_cb
    assert body["state"] == "COMPLETED"
    assert body["stdout"] == "cb\n"


def test_delivery_failures_are_contained():
    job = Job(job_id="j", language="python", source="x", policy=POLICY, state=JobState.CANCELLED)
    st = job.snapshot()
    assert WebhookNotifier(session=FakeSession(status_code=500)).deliver("http://x", st) is False
    assert WebhookNotifier(session=FakeSession(exc=requests.ConnectionError("down"))).deliver("http://x", st) is False
    assert WebhookNotifier(session=FakeSession()).deliver("http://x", st) is True
