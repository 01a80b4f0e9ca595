"""
Scheduler Test Fixtures.

Base fixtures:
  - Empty job store (temporary SQLite file)
  - Mocked clock at a fixed instant
  - Recording cache and in-memory item repository

Per-test fixtures:
  - Enqueue factory
  - Controllable handlers for executor and worker tests
"""

import tempfile
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Callable, Generator, Optional

import pytest

from dilemma.scheduler import (
    Executor,
    ItemPlanner,
    Job,
    JobHandler,
    JobType,
    PersistenceAdapter,
    QueueManager,
    RecoveryManager,
    RetryPolicy,
    ScheduledItem,
)
from dilemma.scheduler.ports import VoteStats


# Fixed time for deterministic tests: 2026-03-10 10:00 UTC (11:00 in Paris)
FIXED_DATETIME = datetime(2026, 3, 10, 10, 0, 0, tzinfo=timezone.utc)


class MockClock:
    """
    Mock clock for deterministic time control.

    - Starts at a fixed instant
    - Advances only when explicitly ticked
    """

    def __init__(self, start_time: datetime = FIXED_DATETIME):
        self._current = start_time
        self._lock = threading.Lock()

    def now(self) -> datetime:
        with self._lock:
            return self._current

    def tick(self, seconds: float = 1) -> None:
        """Advance time by specified seconds."""
        with self._lock:
            self._current += timedelta(seconds=seconds)

    def set(self, time: datetime) -> None:
        """Set time to specific value."""
        with self._lock:
            self._current = time


class RecordingCache:
    """Cache double that records every call and can be told to fail."""

    def __init__(self):
        self.calls: list[tuple] = []
        self.values: dict = {}
        self.fail_with: Optional[Exception] = None

    def _maybe_fail(self) -> None:
        if self.fail_with is not None:
            raise self.fail_with

    def invalidate(self, *keys: str) -> None:
        self._maybe_fail()
        self.calls.append(("invalidate", keys))
        for key in keys:
            self.values.pop(key, None)

    def invalidate_pattern(self, pattern: str) -> None:
        self._maybe_fail()
        self.calls.append(("invalidate_pattern", pattern))

    def set(self, key: str, value, ttl_seconds: Optional[int] = None) -> None:
        self._maybe_fail()
        self.calls.append(("set", key, value, ttl_seconds))
        self.values[key] = value

    def ops(self) -> list[str]:
        return [call[0] for call in self.calls]


class InMemoryRepository:
    """Item repository double backed by a dict."""

    def __init__(self):
        self.items: dict[str, ScheduledItem] = {}
        self.votes: dict[str, tuple[int, int]] = {}

    def add(self, item_id: str, publish_at: datetime, reveal_at: datetime) -> ScheduledItem:
        item = ScheduledItem(item_id, publish_at, reveal_at)
        self.items[item_id] = item
        return item

    def list_future_items(self, now: datetime) -> list[ScheduledItem]:
        return sorted(
            (item for item in self.items.values() if item.publish_at > now),
            key=lambda item: item.publish_at,
        )

    def compute_stats(self, item_id: str) -> VoteStats:
        total, votes_a = self.votes.get(item_id, (0, 0))
        return VoteStats.from_counts(total, votes_a)


class ControlledHandler(JobHandler):
    """
    Handler whose outcome is set by the test.

    Fails the first `fail_times` invocations, then succeeds. An optional
    gate blocks execution until the test releases it.
    """

    def __init__(self, fail_times: int = 0, error: str = "boom"):
        self.fail_times = fail_times
        self.error = error
        self.payloads: list = []
        self.started = threading.Event()
        self.gate: Optional[threading.Event] = None
        self._lock = threading.Lock()

    def execute(self, payload) -> None:
        with self._lock:
            self.payloads.append(payload)
            call_number = len(self.payloads)

        self.started.set()
        if self.gate is not None:
            self.gate.wait(timeout=5)

        if call_number <= self.fail_times:
            raise RuntimeError(self.error)

    @property
    def call_count(self) -> int:
        with self._lock:
            return len(self.payloads)


# =============================================================================
# Database Fixtures
# =============================================================================


@pytest.fixture
def temp_db_path() -> Generator[str, None, None]:
    """Create a temporary database file."""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = f.name

    yield db_path

    Path(db_path).unlink(missing_ok=True)
    # Also cleanup WAL and SHM files
    Path(f"{db_path}-wal").unlink(missing_ok=True)
    Path(f"{db_path}-shm").unlink(missing_ok=True)


@pytest.fixture
def persistence(temp_db_path: str) -> Generator[PersistenceAdapter, None, None]:
    """Create a fresh PersistenceAdapter with empty database."""
    adapter = PersistenceAdapter(temp_db_path)
    yield adapter
    adapter.close()


@pytest.fixture
def in_memory_persistence() -> Generator[PersistenceAdapter, None, None]:
    """Create an in-memory PersistenceAdapter for fast tests."""
    adapter = PersistenceAdapter(":memory:")
    yield adapter
    adapter.close()


# =============================================================================
# Component Fixtures
# =============================================================================


@pytest.fixture
def mock_clock() -> MockClock:
    """Create a mock clock at fixed time."""
    return MockClock()


@pytest.fixture
def retry_policy() -> RetryPolicy:
    """Default policy: 3 attempts, 2s base, no jitter."""
    return RetryPolicy()


@pytest.fixture
def queue_manager(
    persistence: PersistenceAdapter,
    mock_clock: MockClock,
    retry_policy: RetryPolicy,
) -> QueueManager:
    """Create a QueueManager with the test database and clock."""
    return QueueManager(persistence, clock=mock_clock, retry_policy=retry_policy)


@pytest.fixture
def planner(queue_manager: QueueManager, mock_clock: MockClock) -> ItemPlanner:
    return ItemPlanner(queue_manager, clock=mock_clock, timezone_name="Europe/Paris")


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def recovery_manager(
    queue_manager: QueueManager,
    planner: ItemPlanner,
    repository: InMemoryRepository,
) -> RecoveryManager:
    return RecoveryManager(queue_manager, planner, repository)


@pytest.fixture
def cache() -> RecordingCache:
    return RecordingCache()


@pytest.fixture
def controlled_handler() -> ControlledHandler:
    return ControlledHandler()


@pytest.fixture
def inline_executor(controlled_handler: ControlledHandler) -> Executor:
    """Executor running every job type through the controlled handler, inline."""
    return Executor(
        handlers={job_type: controlled_handler for job_type in JobType},
        timeout_seconds=None,
    )


# =============================================================================
# Job Factory Fixtures
# =============================================================================


@pytest.fixture
def enqueue_job(queue_manager: QueueManager) -> Callable:
    """
    Factory fixture for enqueuing jobs.

    Returns a function that enqueues a publish or reveal job for an item.
    """

    def _enqueue(
        item_id: str = "item-1",
        job_type: JobType = JobType.PUBLISH,
        delay_seconds: float = 60,
        max_attempts: int = 3,
    ) -> Job:
        if job_type == JobType.REVEAL:
            job = Job.reveal(item_id, max_attempts=max_attempts)
        else:
            job = Job.publish(item_id, max_attempts=max_attempts)
        return queue_manager.enqueue(job, delay_seconds)

    return _enqueue


@pytest.fixture
def claim_one(queue_manager: QueueManager) -> Callable:
    """Claim exactly one due job, failing the test if none is due."""

    def _claim(worker_id: str = "test-worker") -> Job:
        jobs = queue_manager.claim_due(1, worker_id=worker_id)
        assert len(jobs) == 1, "expected one due job"
        return jobs[0]

    return _claim
