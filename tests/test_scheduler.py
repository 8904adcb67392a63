import threading

import pytest

from tubeline.errors import InternalError, Overloaded, RateLimited
from tubeline.scheduler import JobScheduler, JobState
from tubeline.validation import validate

SPEC = validate({"url": "dQw4w9WgXcQ", "type": "audio", "quality": "192k"})


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.mark.parametrize("extra", [1, 5])
def test_concurrent_admissions_never_exceed_max(extra):
    max_concurrent = 4
    scheduler = JobScheduler(max_concurrent=max_concurrent, bucket_capacity=100, refill_per_second=1.0)
    attempts = max_concurrent + extra
    barrier = threading.Barrier(attempts)
    admitted, overloaded = [], []
    lock = threading.Lock()

    def attempt():
        barrier.wait()
        try:
            job = scheduler.admit(SPEC, "client")
        except Overloaded:
            with lock:
                overloaded.append(1)
        else:
            with lock:
                admitted.append(job)

    threads = [threading.Thread(target=attempt) for _ in range(attempts)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(admitted) == max_concurrent
    assert len(overloaded) == extra
    assert len({job.id for job in admitted}) == max_concurrent
    assert scheduler.in_flight() == max_concurrent


def test_rate_limited_retry_after_permits_one_more():
    clock = FakeClock()
    scheduler = JobScheduler(max_concurrent=10, bucket_capacity=2, refill_per_second=0.5, clock=clock)
    scheduler.admit(SPEC, "1.2.3.4")
    scheduler.admit(SPEC, "1.2.3.4")

    with pytest.raises(RateLimited) as excinfo:
        scheduler.admit(SPEC, "1.2.3.4")
    assert excinfo.value.retry_after == pytest.approx(2.0)

    clock.advance(excinfo.value.retry_after)
    scheduler.admit(SPEC, "1.2.3.4")
    with pytest.raises(RateLimited):
        scheduler.admit(SPEC, "1.2.3.4")


def test_rate_limit_is_per_client():
    scheduler = JobScheduler(max_concurrent=10, bucket_capacity=1, refill_per_second=0.01, clock=FakeClock())
    scheduler.admit(SPEC, "a")
    with pytest.raises(RateLimited):
        scheduler.admit(SPEC, "a")
    scheduler.admit(SPEC, "b")


def test_rate_limit_checked_before_global_capacity():
    scheduler = JobScheduler(max_concurrent=1, bucket_capacity=1, refill_per_second=0.01, clock=FakeClock())
    scheduler.admit(SPEC, "a")
    with pytest.raises(RateLimited):
        scheduler.admit(SPEC, "a")
    with pytest.raises(Overloaded):
        scheduler.admit(SPEC, "b")


def test_overloaded_rejection_does_not_spend_a_token():
    scheduler = JobScheduler(
        max_concurrent=1, bucket_capacity=1, refill_per_second=0.01, overload_retry_after=3, clock=FakeClock()
    )
    first = scheduler.admit(SPEC, "a")
    with pytest.raises(Overloaded) as excinfo:
        scheduler.admit(SPEC, "b")
    assert excinfo.value.retry_after == 3
    first.advance(JobState.RESOLVING)
    first.fail("boom")
    scheduler.complete(first)
    scheduler.admit(SPEC, "b")


def test_complete_frees_slot_exactly_once():
    scheduler = JobScheduler(max_concurrent=2, bucket_capacity=10, refill_per_second=1.0)
    job = scheduler.admit(SPEC, "a")
    other = scheduler.admit(SPEC, "a")
    job.advance(JobState.RESOLVING)
    job.advance(JobState.STREAMING)
    job.advance(JobState.COMPLETED)
    scheduler.complete(job)
    scheduler.complete(job)
    assert scheduler.in_flight() == 1
    assert scheduler.get(other.id) is other
    snapshot = scheduler.snapshot()
    assert snapshot["completed"] == 1
    assert snapshot["admitted"] == 2


def test_complete_marks_unfinished_job_failed():
    scheduler = JobScheduler(max_concurrent=1, bucket_capacity=10, refill_per_second=1.0)
    job = scheduler.admit(SPEC, "a")
    scheduler.complete(job)
    assert job.state == JobState.FAILED
    assert job.finished_at is not None
    assert scheduler.get(job.id) is job
    assert scheduler.snapshot()["failed"] == 1


def test_illegal_transition_raises():
    scheduler = JobScheduler(max_concurrent=1, bucket_capacity=10, refill_per_second=1.0)
    job = scheduler.admit(SPEC, "a")
    with pytest.raises(InternalError):
        job.advance(JobState.STREAMING)
    job.fail("x")
    assert not job.fail("again")
    with pytest.raises(InternalError):
        job.advance(JobState.COMPLETED)


def test_history_is_bounded():
    scheduler = JobScheduler(max_concurrent=1, bucket_capacity=100, refill_per_second=1.0, history_size=2)
    jobs = []
    for _ in range(3):
        job = scheduler.admit(SPEC, "a")
        scheduler.complete(job)
        jobs.append(job)
    assert scheduler.get(jobs[0].id) is None
    assert scheduler.get(jobs[2].id) is jobs[2]
