"""Fleet runs: chunked, concurrent, retried per-vehicle computations."""

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait as wait_futures
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Callable, Dict, List, Optional, Sequence

from tenacity import (Retrying, before_sleep_log, retry_if_not_exception_type,
                      stop_after_attempt)

from .computation import CancellationToken, VehicleDayComputation
from .config import (FLEET_CHUNK_SIZE, FLEET_MAX_WORKERS, FLEET_RUNS_RETAINED, LOCK_EXPIRE_SECONDS,
                     LOCK_RELEASE_AFTER_SECONDS, LOCK_WAIT_SECONDS, UNIT_BACKOFF_SECONDS,
                     UNIT_MAX_ATTEMPTS, UNIT_TIMEOUT_SECONDS)
from .errors import (ComputationCancelled, UnorderedSamplesError, VehicleLockedError,
                     VehicleNotFoundError)
from .locks import LockProvider, vehicle_lock

logger = logging.getLogger(__name__)

NON_RETRYABLE = (VehicleNotFoundError, ComputationCancelled, UnorderedSamplesError)


class UnitOutcome(str, Enum):
    SUCCEEDED = "succeeded"
    SKIPPED = "skipped"
    FAILED = "failed"
    CANCELLED = "cancelled"


class Batch:
    """One chunk of vehicles; tracks progress and fires its callbacks once."""

    def __init__(self, batch_id: str, vehicle_ids: Sequence[int],
                 callbacks: Sequence[Callable[["Batch"], None]] = ()):
        self.batch_id = batch_id
        self.vehicle_ids = list(vehicle_ids)
        self.total = len(self.vehicle_ids)
        self.processed = 0
        self.skipped = 0
        self.failed = 0
        self.cancelled = 0
        self.failed_vehicle_ids: List[int] = []
        self.started_at = time.monotonic()
        self.finished_at: Optional[float] = None
        self._callbacks = list(callbacks)
        self._lock = threading.Lock()
        self._fired = False

    @property
    def pending(self) -> int:
        return self.total - self.processed - self.failed - self.cancelled

    @property
    def finished(self) -> bool:
        return self.pending == 0

    def record(self, vehicle_id: int, outcome: UnitOutcome):
        with self._lock:
            if outcome is UnitOutcome.FAILED:
                self.failed += 1
                self.failed_vehicle_ids.append(vehicle_id)
            elif outcome is UnitOutcome.CANCELLED:
                self.cancelled += 1
            else:
                self.processed += 1
                if outcome is UnitOutcome.SKIPPED:
                    self.skipped += 1
            fire = self.pending == 0 and not self._fired
            if fire:
                self._fired = True
                self.finished_at = time.monotonic()
        if fire:
            self._complete()

    def _complete(self):
        logger.info("Batch %s finished in %.1fs: total=%d processed=%d failed=%d cancelled=%d",
                    self.batch_id, self.finished_at - self.started_at, self.total,
                    self.processed, self.failed, self.cancelled)
        for callback in self._callbacks:
            try:
                callback(self)
            except Exception:
                logger.exception("Completion callback for batch %s failed", self.batch_id)

    def progress(self) -> Dict:
        with self._lock:
            return {
                "batch_id": self.batch_id,
                "total": self.total,
                "processed": self.processed,
                "skipped": self.skipped,
                "failed": self.failed,
                "cancelled": self.cancelled,
                "pending": self.pending,
                "finished": self.pending == 0,
            }


class FleetRun:
    def __init__(self, run_id: str, day: date, chunk_size: int, token: CancellationToken):
        self.run_id = run_id
        self.date = day
        self.chunk_size = chunk_size
        self.token = token
        self.batches: List[Batch] = []
        self.futures: List[Future] = []

    @property
    def done(self) -> bool:
        return all(batch.finished for batch in self.batches)

    @property
    def status(self) -> str:
        if self.token.cancelled:
            return "cancelled"
        return "completed" if self.done else "running"

    def cancel(self):
        logger.info("Cancelling fleet run %s", self.run_id)
        self.token.cancel()

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until every unit has finished; returns False on timeout."""
        _, not_done = wait_futures(self.futures, timeout=timeout)
        return not not_done

    def progress(self) -> Dict:
        batches = [batch.progress() for batch in self.batches]
        return {
            "run_id": self.run_id,
            "date": self.date.isoformat(),
            "chunk_size": self.chunk_size,
            "status": self.status,
            "total": sum(b["total"] for b in batches),
            "processed": sum(b["processed"] for b in batches),
            "failed": sum(b["failed"] for b in batches),
            "cancelled": sum(b["cancelled"] for b in batches),
            "pending": sum(b["pending"] for b in batches),
            "batches": batches,
        }


class BatchOrchestrator:
    """Fans a date's computation out over the fleet.

    ``sleep`` replaces the retry backoff sleep; by default the wait is the
    run's cancellation token, so cancelling a run also cuts backoffs short.
    """

    def __init__(self, directory, computation: VehicleDayComputation,
                 lock_provider: LockProvider,
                 max_workers: int = FLEET_MAX_WORKERS,
                 default_chunk_size: int = FLEET_CHUNK_SIZE,
                 max_attempts: int = UNIT_MAX_ATTEMPTS,
                 backoff_seconds: Sequence[float] = UNIT_BACKOFF_SECONDS,
                 unit_timeout_seconds: Optional[float] = UNIT_TIMEOUT_SECONDS,
                 lock_expire_seconds: float = LOCK_EXPIRE_SECONDS,
                 lock_release_after_seconds: float = LOCK_RELEASE_AFTER_SECONDS,
                 lock_wait_seconds: float = LOCK_WAIT_SECONDS,
                 sleep: Optional[Callable[[float], None]] = None,
                 clock: Callable[[], datetime] = datetime.now,
                 on_batch_complete: Optional[Callable[[Batch], None]] = None,
                 max_retained_runs: int = FLEET_RUNS_RETAINED):
        self.directory = directory
        self.computation = computation
        self.lock_provider = lock_provider
        self.default_chunk_size = default_chunk_size
        self.max_attempts = max_attempts
        self.backoff_seconds = list(backoff_seconds)
        self.unit_timeout_seconds = unit_timeout_seconds
        self.lock_expire_seconds = lock_expire_seconds
        self.lock_release_after_seconds = lock_release_after_seconds
        self.lock_wait_seconds = lock_wait_seconds
        self.sleep = sleep
        self.clock = clock
        self.on_batch_complete = on_batch_complete
        self.max_retained_runs = max_retained_runs
        self.executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="fleet-unit")
        self.runs: Dict[str, FleetRun] = {}
        self._runs_lock = threading.Lock()

    def dispatch_fleet_computation(self, day: Optional[date] = None,
                                   chunk_size: Optional[int] = None) -> FleetRun:
        chunk_size = chunk_size or self.default_chunk_size
        if chunk_size <= 0:
            raise ValueError("chunk_size must be positive")
        if day is None:
            day = self.clock().date() - timedelta(days=1)

        vehicle_ids = list(self.directory.vehicle_ids())
        run = FleetRun(uuid.uuid4().hex, day, chunk_size, CancellationToken())
        callbacks = [self.on_batch_complete] if self.on_batch_complete else []
        with self._runs_lock:
            self._evict_finished_runs()
            self.runs[run.run_id] = run

        for start in range(0, len(vehicle_ids), chunk_size):
            chunk = vehicle_ids[start:start + chunk_size]
            batch = Batch(f"{run.run_id}-{len(run.batches) + 1}", chunk, callbacks)
            run.batches.append(batch)
            for vehicle_id in chunk:
                run.futures.append(self.executor.submit(self._run_unit, run, batch, vehicle_id))

        logger.info("Fleet run %s for %s: %d vehicles in %d batches",
                    run.run_id, day, len(vehicle_ids), len(run.batches))
        return run

    def _evict_finished_runs(self):
        """Forget the oldest finished runs once more than ``max_retained_runs`` are kept."""
        excess = len(self.runs) + 1 - self.max_retained_runs
        if excess <= 0:
            return
        for run_id in [run_id for run_id, run in self.runs.items() if run.done][:excess]:
            logger.debug("Forgetting finished fleet run %s", run_id)
            del self.runs[run_id]

    def get_run(self, run_id: str) -> Optional[FleetRun]:
        return self.runs.get(run_id)

    def cancel(self, run_id: str) -> bool:
        run = self.runs.get(run_id)
        if run is None:
            return False
        run.cancel()
        return True

    def shutdown(self, wait: bool = True):
        for run in self.runs.values():
            run.cancel()
        self.executor.shutdown(wait=wait)

    def _backoff(self, retry_state) -> float:
        if isinstance(retry_state.outcome.exception(), VehicleLockedError):
            return self.lock_release_after_seconds
        if not self.backoff_seconds:
            return 0.0
        index = min(retry_state.attempt_number - 1, len(self.backoff_seconds) - 1)
        return self.backoff_seconds[index]

    def _attempt(self, run: FleetRun, vehicle_id: int):
        token = run.token.with_timeout(self.unit_timeout_seconds)
        token.raise_if_cancelled()
        with vehicle_lock(self.lock_provider, vehicle_id,
                          self.lock_expire_seconds, self.lock_wait_seconds):
            self.computation.run(vehicle_id, run.date, token)

    def _run_unit(self, run: FleetRun, batch: Batch, vehicle_id: int):
        if run.token.cancelled:
            batch.record(vehicle_id, UnitOutcome.CANCELLED)
            return

        attempts = 0
        retrying = Retrying(
            stop=stop_after_attempt(self.max_attempts),
            wait=self._backoff,
            retry=retry_if_not_exception_type(NON_RETRYABLE),
            sleep=self.sleep or run.token.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True
        )
        try:
            for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    self._attempt(run, vehicle_id)
        except VehicleNotFoundError:
            logger.warning("Vehicle %s not found; skipped in batch %s", vehicle_id, batch.batch_id)
            batch.record(vehicle_id, UnitOutcome.SKIPPED)
        except ComputationCancelled:
            logger.info("Vehicle %s cancelled in batch %s", vehicle_id, batch.batch_id)
            batch.record(vehicle_id, UnitOutcome.CANCELLED)
        except Exception:
            logger.error("Vehicle %s failed permanently for %s after %d attempt(s) in batch %s",
                         vehicle_id, run.date, attempts, batch.batch_id, exc_info=True)
            batch.record(vehicle_id, UnitOutcome.FAILED)
        else:
            batch.record(vehicle_id, UnitOutcome.SUCCEEDED)
