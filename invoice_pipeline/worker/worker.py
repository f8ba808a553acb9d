import time
from collections.abc import Callable

from invoice_pipeline.cleanup.scheduler import CleanupScheduler
from invoice_pipeline.config.settings import Settings
from invoice_pipeline.credits.ledger import CreditLedger
from invoice_pipeline.database.connection import get_connection
from invoice_pipeline.database.repositories.job_repository import JobRepository
from invoice_pipeline.jobs.state_machine import JobStateMachine
from invoice_pipeline.logging.logger import Log
from invoice_pipeline.sessions.manager import SessionManager
from invoice_pipeline.worker.dispatcher import Dispatcher

MAINTENANCE_INTERVAL_SECONDS = 60


class _Every:
    """Monotonic-clock interval gate. Due immediately on first check."""

    def __init__(self, seconds: float) -> None:
        self._seconds = seconds
        self._last: float | None = None

    def due(self) -> bool:
        now = time.monotonic()
        if self._last is None or now - self._last >= self._seconds:
            self._last = now
            return True
        return False


class Worker:
    """Tick loop: drain outcomes -> periodic duties -> claim -> dispatch -> sleep."""

    def __init__(
        self,
        job_repo: JobRepository,
        state_machine: JobStateMachine,
        session_manager: SessionManager,
        scheduler: CleanupScheduler,
        ledger: CreditLedger,
        dispatcher: Dispatcher,
        settings: Settings,
    ) -> None:
        self._job_repo = job_repo
        self._state_machine = state_machine
        self._session_manager = session_manager
        self._scheduler = scheduler
        self._ledger = ledger
        self._dispatcher = dispatcher
        self._settings = settings
        self._periodic: list[tuple[str, _Every, Callable[[], object]]] = [
            (
                "cleanup refresh",
                _Every(settings.cleanup_refresh_minutes * 60),
                scheduler.reschedule_all,
            ),
            (
                "cleanup sweep",
                _Every(settings.cleanup_sweep_interval_hours * 3600),
                scheduler.sweep,
            ),
            ("stalled submissions", _Every(MAINTENANCE_INTERVAL_SECONDS), self._fail_stalled),
            (
                "ready sessions",
                _Every(MAINTENANCE_INTERVAL_SECONDS),
                session_manager.resume_ready_sessions,
            ),
            (
                "ledger reconciliation",
                _Every(settings.reconciliation_interval_minutes * 60),
                ledger.reconcile_all,
            ),
        ]

    def run(self, max_ticks: int | None = None) -> None:
        """Main loop. Runs forever until interrupted.

        If max_ticks is set, stop after that many ticks (for testing).
        """
        Log.info(f"Worker started, {self._dispatcher.free_slots} extraction slot(s)")
        ticks = 0
        try:
            while max_ticks is None or ticks < max_ticks:
                busy = self.tick()
                ticks += 1
                if not busy:
                    time.sleep(self._settings.worker_tick_seconds)
        except KeyboardInterrupt:
            Log.info("Worker shutting down gracefully")
        finally:
            self._dispatcher.shutdown()

    def tick(self) -> bool:
        """One pass of the loop. Returns True if any job was dispatched."""
        self._drain_outcomes()
        self._run_periodic()
        self._guard("scheduled cleanup", self._scheduler.run_due)
        return self._claim_and_dispatch() > 0

    def _drain_outcomes(self) -> None:
        for outcome in self._dispatcher.drain():
            try:
                self._session_manager.on_job_terminal(outcome)
            except Exception as exc:
                # resume_ready_sessions picks the session up again.
                Log.error(f"Session {outcome.session_id} hand-off failed: {exc}")

    def _run_periodic(self) -> None:
        for name, gate, task in self._periodic:
            if gate.due():
                self._guard(name, task)

    def _guard(self, name: str, task: Callable[[], object]) -> None:
        try:
            task()
        except Exception as exc:
            Log.warning(f"{name} failed, will retry: {exc}")

    def _fail_stalled(self) -> None:
        for outcome in self._state_machine.fail_stalled_submissions():
            self._session_manager.on_job_terminal(outcome)

    def _claim_and_dispatch(self) -> int:
        """Claim due polls first, then queued jobs, up to the free pool slots."""
        free = self._dispatcher.free_slots
        if free == 0:
            return 0
        try:
            with get_connection() as conn:
                polls = self._job_repo.claim_due_polls(conn, free)
                queued = self._job_repo.claim_queued(conn, free - len(polls))
        except Exception as exc:
            Log.warning(f"Database error, will retry: {exc}")
            return 0

        dispatched = 0
        for job in polls:
            dispatched += self._dispatcher.poll(job)
        for job in queued:
            dispatched += self._dispatcher.submit(job)
        return dispatched
