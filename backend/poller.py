"""Payer-side polling of a payment link's status.

PIX payments settle asynchronously, so the checkout keeps reading the
status endpoint until the link is paid. A poll run ends in exactly one
of three outcomes: ``paid``, ``stopped`` (the payer left) or ``timeout``.
Only the first outcome reached fires its callback.
"""
import threading
import time
from typing import Callable, Optional

import requests
import structlog

from config import POLL_INTERVAL_SECONDS, POLL_TIMEOUT_SECONDS

logger = structlog.get_logger(__name__)

PAID = "paid"
STOPPED = "stopped"
TIMEOUT = "timeout"


def http_status_fetcher(base_url: str, link_id: str, session: requests.Session, timeout: float = 5):
    """Build a fetch callable for StatusPoller. The caller owns and closes the session."""
    url = "%s/api/v1/links/%s/status" % (base_url.rstrip("/"), link_id)

    def fetch() -> dict:
        response = session.get(url, timeout=timeout)
        response.raise_for_status()
        return response.json()

    return fetch


class PollHandle:
    def __init__(self, on_paid: Callable[[dict], None], on_timeout: Optional[Callable[[], None]] = None):
        self._on_paid = on_paid
        self._on_timeout = on_timeout
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._done = threading.Event()
        self._outcome = None
        self.last_status = None
        self.thread = None

    @property
    def outcome(self) -> Optional[str]:
        return self._outcome

    @property
    def done(self) -> bool:
        return self._done.is_set()

    def _finish(self, outcome: str, status: Optional[dict] = None) -> bool:
        with self._lock:
            if self._outcome is not None:
                return False
            self._outcome = outcome
        self._stop_event.set()
        try:
            if outcome == PAID:
                self._on_paid(status or {})
            elif outcome == TIMEOUT and self._on_timeout is not None:
                self._on_timeout()
        finally:
            self._done.set()
        return True

    def stop(self) -> bool:
        """Cancel polling. Returns False if the run had already ended."""
        finished = self._finish(STOPPED)
        if finished:
            logger.info("poll_stopped")
        return finished

    def wait(self, timeout: Optional[float] = None) -> Optional[str]:
        self._done.wait(timeout)
        return self._outcome


class StatusPoller:
    def __init__(
        self,
        fetch_status: Callable[[], dict],
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = POLL_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval <= 0:
            raise ValueError("interval must be positive")
        self.fetch_status = fetch_status
        self.interval = interval
        self.timeout = timeout
        self.clock = clock

    def start(self, on_paid: Callable[[dict], None], on_timeout: Optional[Callable[[], None]] = None) -> PollHandle:
        handle = PollHandle(on_paid, on_timeout)
        deadline = self.clock() + self.timeout
        handle.thread = threading.Thread(target=self._run, args=(handle, deadline), daemon=True)
        handle.thread.start()
        return handle

    def _run(self, handle: PollHandle, deadline: float):
        while not handle._stop_event.wait(self.interval):
            if self.clock() >= deadline:
                if handle._finish(TIMEOUT):
                    logger.info("poll_timeout")
                return
            try:
                status = self.fetch_status()
            except Exception as ex:
                logger.warning("poll_fetch_failed", error=str(ex), error_type=type(ex).__name__)
                continue
            handle.last_status = status
            if status and status.get("is_paid"):
                if handle._finish(PAID, status):
                    logger.info("poll_paid", payment_id=status.get("payment_id"))
                return
