import pytest

from clipstream_core.pipeline.states import Stage
from clipstream_core.pipeline.types import ProcessingJob
from clipstream_core.queue import InMemoryJobQueue, SqliteJobQueue


@pytest.fixture(params=["memory", "sqlite"])
def queue(request, tmp_path):
    if request.param == "memory":
        return InMemoryJobQueue()
    return SqliteJobQueue(str(tmp_path / "queue.db"))


def _job(video_id: str, enqueued_at: float = 0.0, not_before: float = 0.0):
    return ProcessingJob(
        video_id=video_id,
        stage=Stage.TRANSCODE,
        attempt=0,
        enqueued_at=enqueued_at,
        not_before=not_before,
        payload_key=f"raw-uploads/{video_id}",
    )


def test_one_job_per_video(queue):
    assert queue.enqueue(_job("video-1"))
    assert not queue.enqueue(_job("video-1", enqueued_at=5.0))
    assert queue.has_job("video-1")
    assert queue.get("video-1").enqueued_at == 0.0
    assert queue.stats(now=0.0).depth == 1


def test_dequeue_respects_not_before_and_order(queue):
    queue.enqueue(_job("later", enqueued_at=1.0, not_before=50.0))
    queue.enqueue(_job("second", enqueued_at=2.0))
    queue.enqueue(_job("first", enqueued_at=1.0))

    first = queue.dequeue(now=10.0, visibility_timeout=30.0)
    second = queue.dequeue(now=10.0, visibility_timeout=30.0)
    assert first.job.video_id == "first"
    assert second.job.video_id == "second"
    assert queue.dequeue(now=10.0, visibility_timeout=30.0) is None
    assert queue.ack(first.receipt)
    assert queue.ack(second.receipt)
    assert queue.dequeue(now=50.0, visibility_timeout=30.0).job.video_id == "later"


def test_unacknowledged_job_is_redelivered(queue):
    queue.enqueue(_job("video-1"))
    first = queue.dequeue(now=0.0, visibility_timeout=30.0)
    assert first.deliveries == 1
    assert queue.is_in_flight("video-1", now=10.0)
    assert queue.dequeue(now=10.0, visibility_timeout=30.0) is None

    second = queue.dequeue(now=31.0, visibility_timeout=30.0)
    assert second is not None
    assert second.deliveries == 2
    assert second.receipt != first.receipt
    # The stale receipt no longer acknowledges anything.
    assert not queue.ack(first.receipt)
    assert queue.ack(second.receipt)
    assert not queue.has_job("video-1")


def test_release_reschedules_with_attempt(queue):
    queue.enqueue(_job("video-1"))
    leased = queue.dequeue(now=0.0, visibility_timeout=30.0)
    assert queue.release(leased.receipt, not_before=20.0, attempt=2)
    assert not queue.is_in_flight("video-1", now=1.0)
    assert queue.dequeue(now=10.0, visibility_timeout=30.0) is None

    job = queue.get("video-1")
    assert job.attempt == 2
    assert job.not_before == 20.0
    again = queue.dequeue(now=20.0, visibility_timeout=30.0)
    assert again.job.attempt == 2


def test_remove_skips_in_flight_jobs(queue):
    queue.enqueue(_job("video-1"))
    queue.enqueue(_job("video-2"))
    queue.dequeue(now=0.0, visibility_timeout=30.0)
    assert not queue.remove("video-1", now=1.0)
    assert queue.remove("video-2", now=1.0)
    assert not queue.has_job("video-2")


def test_requeue_in_flight_makes_jobs_ready(queue):
    queue.enqueue(_job("video-1"))
    queue.enqueue(_job("video-2"))
    queue.dequeue(now=0.0, visibility_timeout=300.0)
    assert queue.requeue_in_flight() == 1
    assert not queue.is_in_flight("video-1", now=1.0)
    assert queue.stats(now=1.0).ready == 2


def test_stats_counts_each_bucket(queue):
    queue.enqueue(_job("ready"))
    queue.enqueue(_job("delayed", not_before=100.0))
    queue.enqueue(_job("flight", enqueued_at=-1.0))
    leased = queue.dequeue(now=0.0, visibility_timeout=30.0)
    assert leased.job.video_id == "flight"

    stats = queue.stats(now=1.0)
    assert stats.depth == 3
    assert stats.ready == 1
    assert stats.delayed == 1
    assert stats.in_flight == 1


def test_sqlite_queue_survives_reopen(tmp_path):
    path = str(tmp_path / "queue.db")
    SqliteJobQueue(path).enqueue(_job("video-1"))
    reopened = SqliteJobQueue(path)
    leased = reopened.dequeue(now=0.0, visibility_timeout=30.0)
    assert leased.job == _job("video-1")
