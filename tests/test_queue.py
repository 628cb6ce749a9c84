import threading

import pytest

from sandbox.core.errors import DispatcherClosed, QueueSaturated
from sandbox.core.models import Job, LimitPolicy
from sandbox.services.job_queue import JobQueue

POLICY = LimitPolicy(cpu_ms=1000, wall_ms=1000, memory_mb=64, max_output_bytes=1024, max_processes=4)


def _job(jid):
    return Job(job_id=jid, language="python", source="pass", policy=POLICY)


def test_fifo_order():
    q = JobQueue(3)
    for jid in ("a", "b", "c"):
        q.offer(_job(jid))
    assert len(q) == 3
    assert [q.take(0).job_id for _ in range(3)] == ["a", "b", "c"]


def test_full_queue_rejects_without_blocking():
    q = JobQueue(1)
    q.offer(_job("a"))
    with pytest.raises(QueueSaturated) as ei:
        q.offer(_job("b"))
    assert ei.value.retryable
    assert len(q) == 1


def test_remove_and_drain():
    q = JobQueue(4)
    for jid in ("a", "b", "c"):
        q.offer(_job(jid))
    assert q.remove("b")
    assert not q.remove("b")
    assert [j.job_id for j in q.drain()] == ["a", "c"]
    assert len(q) == 0


def test_take_times_out_and_close_wakes_consumers():
    q = JobQueue(2)
    assert q.take(0.05) is None

    got = []
    t = threading.Thread(target=lambda: got.append(q.take()))
    t.start()
    q.close()
    t.join(2)
    assert not t.is_alive()
    assert got == [None]
    with pytest.raises(DispatcherClosed) as ei:
        q.offer(_job("late"))
    assert ei.value.retryable
    assert len(q) == 0
