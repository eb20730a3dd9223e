"""Tests for the in-memory job store."""

from datetime import datetime, timedelta, timezone

import pytest

from common.errors import InvalidTransition, JobNotFound
from common.job_schema import JobStatus, job_status_view
from common.job_store import JobStore
from common.region_schema import OutputTarget, StorageRedactRequest, StorageRedactResponse


class FakeClock:
    def __init__(self):
        self.now = datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


def _request(index=0):
    return StorageRedactRequest.model_validate(
        {
            "input": {"bucket": "src", "key": f"in-{index}.png"},
            "output": {"bucket": "dst", "key": f"out-{index}.webp"},
            "regions": [
                {"coordinates": {"x": 0, "y": 0, "width": 4, "height": 4},
                 "operation": {"type": "fill", "color": "#000000"}}
            ],
        }
    )


def _result(index=0):
    return StorageRedactResponse(
        ok=True,
        output=OutputTarget(bucket="dst", key=f"out-{index}.webp", format="webp"),
        processing_time_ms=12.5,
        etag='"abc"',
    )


def _assert_progress_consistent(job):
    progress = job.progress
    assert progress.completed + progress.failed + progress.pending == progress.total
    all_terminal = all(item.status.is_terminal for item in job.items)
    if all_terminal:
        expected = JobStatus.FAILED if progress.failed else JobStatus.COMPLETED
        assert job.status == expected
    else:
        assert not job.status.is_terminal


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store(clock):
    return JobStore(clock=clock)


def test_create_job(store, clock):
    job = store.create_job([_request(0), _request(1)], webhook_url="https://hooks.example.com/x")

    assert job.status == JobStatus.PENDING
    assert job.progress.total == 2
    assert job.progress.pending == 2
    assert [item.id for item in job.items] == [f"{job.id}-0", f"{job.id}-1"]
    assert job.created_at == clock.now
    assert job.webhook_url == "https://hooks.example.com/x"
    assert store.get_job(job.id) == job


def test_create_job_needs_items(store):
    with pytest.raises(ValueError):
        store.create_job([])


def test_successful_job_lifecycle(store, clock):
    job = store.create_job([_request(0), _request(1)])
    first, second = job.items

    clock.advance(seconds=1)
    store.start_item(job.id, first.id)
    snapshot = store.get_job(job.id)
    assert snapshot.status == JobStatus.PROCESSING
    assert snapshot.started_at == clock.now
    assert snapshot.items[0].started_at == clock.now

    store.complete_item(job.id, first.id, _result(0))
    store.start_item(job.id, second.id)
    clock.advance(seconds=1)
    store.complete_item(job.id, second.id, _result(1))

    done = store.get_job(job.id)
    assert done.status == JobStatus.COMPLETED
    assert (done.progress.completed, done.progress.failed, done.progress.pending) == (2, 0, 0)
    assert done.completed_at == clock.now
    assert done.items[1].result.etag == '"abc"'
    _assert_progress_consistent(done)


def test_partial_failure_fails_job(store):
    job = store.create_job([_request(i) for i in range(3)])

    for index, item in enumerate(job.items):
        store.start_item(job.id, item.id)
        if index == 1:
            store.fail_item(job.id, item.id, "Object not found: src/in-1.png")
        else:
            store.complete_item(job.id, item.id, _result(index))
        _assert_progress_consistent(store.get_job(job.id))

    final = store.get_job(job.id)
    assert final.status == JobStatus.FAILED
    assert (final.progress.total, final.progress.completed, final.progress.failed) == (3, 2, 1)
    assert final.items[1].error == "Object not found: src/in-1.png"


def test_item_can_fail_before_starting(store):
    job = store.create_job([_request()])
    store.fail_item(job.id, job.items[0].id, "cancelled")

    assert store.get_job(job.id).status == JobStatus.FAILED


def test_no_back_transitions(store):
    job = store.create_job([_request()])
    item_id = job.items[0].id

    with pytest.raises(InvalidTransition):
        store.complete_item(job.id, item_id, _result())

    store.start_item(job.id, item_id)
    with pytest.raises(InvalidTransition):
        store.start_item(job.id, item_id)

    store.complete_item(job.id, item_id, _result())
    for transition in (
        lambda: store.start_item(job.id, item_id),
        lambda: store.fail_item(job.id, item_id, "late"),
        lambda: store.complete_item(job.id, item_id, _result()),
    ):
        with pytest.raises(InvalidTransition):
            transition()

    assert store.get_job(job.id).items[0].status == JobStatus.COMPLETED


def test_unknown_ids(store):
    job = store.create_job([_request()])

    with pytest.raises(JobNotFound):
        store.start_item("missing", job.items[0].id)
    with pytest.raises(JobNotFound):
        store.start_item(job.id, "missing")
    assert store.get_job("missing") is None


def test_snapshots_are_isolated(store):
    job = store.create_job([_request()])

    snapshot = store.get_job(job.id)
    snapshot.items[0].status = JobStatus.COMPLETED
    snapshot.progress.completed = 1

    fresh = store.get_job(job.id)
    assert fresh.items[0].status == JobStatus.PENDING
    assert fresh.progress.completed == 0


def test_expired_jobs_evicted_on_create(store, clock):
    old = store.create_job([_request()])
    clock.advance(hours=24, seconds=1)
    new = store.create_job([_request()])

    assert store.get_job(old.id) is None
    assert store.get_job(new.id) is not None


def test_job_at_exact_ttl_is_kept(store, clock):
    job = store.create_job([_request()])
    clock.advance(hours=24)

    assert store.evict() == 0
    assert store.get_job(job.id) is not None


def test_capacity_evicts_oldest_first(clock):
    store = JobStore(max_jobs=2, clock=clock)
    ids = []
    for _ in range(3):
        ids.append(store.create_job([_request()]).id)
        clock.advance(seconds=1)

    assert store.job_count() == 2
    assert store.get_job(ids[0]) is None
    assert {job.id for job in store.list_jobs()} == set(ids[1:])


def test_delete_job(store):
    job = store.create_job([_request()])

    assert store.delete_job(job.id) is True
    assert store.delete_job(job.id) is False


def test_invalid_capacity():
    with pytest.raises(ValueError):
        JobStore(max_jobs=0)


def test_status_view(store):
    job = store.create_job([_request(0), _request(1)])
    store.start_item(job.id, job.items[0].id)
    store.complete_item(job.id, job.items[0].id, _result(0))

    view = job_status_view(store.get_job(job.id))

    assert view.job_id == job.id
    assert view.status == JobStatus.PROCESSING
    assert view.progress.model_dump() == {"total": 2, "completed": 1, "failed": 0, "pending": 1}
    assert view.items[0].output.key == "out-0.webp"
    assert view.items[0].processing_time_ms == 12.5
    assert view.items[1].output is None
    assert view.items[1].input.key == "in-1.png"
