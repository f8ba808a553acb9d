import queue
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor

from invoice_pipeline.database.models import JobRecord
from invoice_pipeline.jobs.state_machine import JobOutcome, JobStateMachine
from invoice_pipeline.logging.logger import Log

JobAction = Callable[[JobRecord], JobOutcome | None]


class Dispatcher:
    """Runs submit/poll steps on a bounded thread pool.

    The pool size is the extraction tier's concurrency cap. Terminal outcomes
    are published on a queue that the worker loop drains.
    """

    def __init__(self, state_machine: JobStateMachine, max_workers: int) -> None:
        self._state_machine = state_machine
        self._max_workers = max_workers
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="job")
        self._completions: queue.Queue[JobOutcome] = queue.Queue()
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()

    @property
    def free_slots(self) -> int:
        with self._lock:
            return max(self._max_workers - len(self._in_flight), 0)

    def submit(self, job: JobRecord) -> bool:
        return self._dispatch(job, self._state_machine.submit)

    def poll(self, job: JobRecord) -> bool:
        return self._dispatch(job, self._state_machine.poll)

    def drain(self) -> list[JobOutcome]:
        """Every outcome published since the last drain."""
        outcomes = []
        while True:
            try:
                outcomes.append(self._completions.get_nowait())
            except queue.Empty:
                return outcomes

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)

    def _dispatch(self, job: JobRecord, action: JobAction) -> bool:
        with self._lock:
            if job.id in self._in_flight:
                return False
            self._in_flight.add(job.id)
        future = self._executor.submit(action, job)
        future.add_done_callback(lambda done: self._on_done(job, done))
        return True

    def _on_done(self, job: JobRecord, future: Future[JobOutcome | None]) -> None:
        with self._lock:
            self._in_flight.discard(job.id)
        try:
            outcome = future.result()
        except Exception as exc:
            # The lease on the row expires and the job is picked up again.
            Log.error(f"Job {job.id} step crashed: {exc}")
            return
        if outcome is not None:
            self._completions.put(outcome)
