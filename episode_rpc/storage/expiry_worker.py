"""Background approval expiry sweeper using stdlib threading primitives."""
import logging
import threading
from datetime import datetime, timezone
from typing import Callable, Optional


logger = logging.getLogger(__name__)


class ApprovalExpiryWorker:
    """Daemon thread that periodically expires approvals past their period end.

    - A single daemon Thread is used; it does not block process exit.
    - Sweep exceptions are caught and counted; the worker keeps running.
    - All counter mutations are protected by a Lock for thread-safe reads.
    """

    def __init__(
        self,
        sweep_fn: Callable[[datetime], int],
        interval: float = 60.0,
    ) -> None:
        self._sweep_fn = sweep_fn
        self._interval = interval
        self._thread: Optional[threading.Thread] = None
        self._lock = threading.Lock()
        self._stop_event = threading.Event()

        # Stats
        self._sweeps_run: int = 0
        self._sweeps_failed: int = 0
        self._approvals_expired: int = 0
        self._last_error: Optional[str] = None
        self._last_sweep_at: Optional[datetime] = None
        self._last_heartbeat: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def start(self) -> None:
        """Start the worker thread. Idempotent: no-op if already running."""
        with self._lock:
            if self._thread is not None and self._thread.is_alive():
                return
            self._stop_event.clear()
            self._thread = threading.Thread(
                target=self._run, daemon=True, name="ApprovalExpiryWorker"
            )
            self._thread.start()

    def stop(self, timeout: float = 5.0) -> None:
        """Signal the worker to stop and wait up to *timeout* seconds. Idempotent."""
        with self._lock:
            thread = self._thread
        if thread is None or not thread.is_alive():
            return
        self._stop_event.set()
        thread.join(timeout=timeout)
        with self._lock:
            if not thread.is_alive():
                self._thread = None

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None and self._thread.is_alive()

    def run_once(self, now: Optional[datetime] = None) -> int:
        """Run one sweep on the calling thread; returns approvals expired.

        Failures are recorded in the stats and re-raised.
        """
        now = now or datetime.now(timezone.utc)
        try:
            expired = self._sweep_fn(now)
        except Exception as exc:
            with self._lock:
                self._sweeps_failed += 1
                self._last_error = str(exc)
            raise
        with self._lock:
            self._sweeps_run += 1
            self._approvals_expired += expired
            self._last_sweep_at = now
        return expired

    def get_status(self) -> dict:
        """Return a thread-safe snapshot of worker health."""
        with self._lock:
            return {
                "worker_running": self._thread is not None and self._thread.is_alive(),
                "interval": self._interval,
                "sweeps_run": self._sweeps_run,
                "sweeps_failed": self._sweeps_failed,
                "approvals_expired": self._approvals_expired,
                "last_error": self._last_error,
                "last_sweep_at": self._last_sweep_at,
                "last_heartbeat": self._last_heartbeat,
            }

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _run(self) -> None:
        """Main worker loop; runs on the worker thread."""
        logger.info(
            "expiry_worker_started",
            extra={"thread_name": threading.current_thread().name, "interval": self._interval},
        )
        while not self._stop_event.is_set():
            with self._lock:
                self._last_heartbeat = datetime.now(timezone.utc)
            try:
                expired = self.run_once()
                if expired:
                    logger.info("expiry_sweep_completed", extra={"approvals_expired": expired})
            except Exception as exc:
                logger.error("expiry_sweep_failed", extra={"error": str(exc)})
            self._stop_event.wait(self._interval)

        with self._lock:
            sweeps, failed = self._sweeps_run, self._sweeps_failed
        logger.info("expiry_worker_stopped", extra={"sweeps_run": sweeps, "sweeps_failed": failed})
