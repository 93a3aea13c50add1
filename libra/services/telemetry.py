"""Best-effort push of readings and events to the HTTP backend."""
from __future__ import annotations

import logging
import queue
import threading
from typing import Iterable, Optional

import requests

from ..domain.models import DomainEvent, Reading

log = logging.getLogger(__name__)

HEADERS = {"Content-Type": "application/json"}


class BackendClient:
    """Thin wrapper over ``requests`` for the backend endpoints."""

    def __init__(self, url: str, *, timeout: float = 0.25, session: Optional[requests.Session] = None) -> None:
        self.url = url.rstrip("/")
        self.timeout = float(timeout)
        self.session = session or requests.Session()

    def post_reading(self, index: int, reading: Reading) -> None:
        self._post(f"{self.url}/{index}", reading.to_json())

    def post_event(self, event: DomainEvent) -> None:
        self._post(f"{self.url}/events", event.to_json())

    def _post(self, url: str, body: str) -> None:
        resp = self.session.post(url, data=body, headers=HEADERS, timeout=self.timeout)
        resp.raise_for_status()

    def close(self) -> None:
        self.session.close()


class TelemetryPublisher:
    """Forward events to the backend from a worker thread.

    :meth:`publish` never blocks; events are dropped with a warning once the
    bounded queue is full so a slow backend cannot stall sampling.
    """

    def __init__(self, client: BackendClient, *, maxsize: int = 256, retries: int = 1) -> None:
        self.client = client
        self.retries = max(0, int(retries))
        self._queue: "queue.Queue[Optional[DomainEvent]]" = queue.Queue(maxsize=max(1, int(maxsize)))
        self._thread: Optional[threading.Thread] = None
        self._dropped = 0

    @property
    def dropped(self) -> int:
        return self._dropped

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="TelemetryPublisher", daemon=True)
        self._thread.start()

    def stop(self, timeout: float = 2.0) -> None:
        thread = self._thread
        if thread is None:
            return
        try:
            self._queue.put(None, timeout=timeout)
        except queue.Full:
            log.warning("Telemetry queue still full at shutdown; abandoning pending events")
        thread.join(timeout=timeout)
        self._thread = None
        self.client.close()

    def publish(self, events: Iterable[DomainEvent]) -> None:
        for event in events:
            try:
                self._queue.put_nowait(event)
            except queue.Full:
                self._dropped += 1
                log.warning("Telemetry queue full; dropped %s event for %s", event.kind, event.device)

    def join(self) -> None:
        """Block until every queued event has been handled."""

        self._queue.join()

    # ------------------------------------------------------------------
    def _run(self) -> None:
        while True:
            event = self._queue.get()
            try:
                if event is None:
                    return
                self._send(event)
            except Exception as exc:
                log.warning("Telemetry worker could not send %s event for %s: %s", event.kind, event.device, exc)
            finally:
                self._queue.task_done()

    def _send(self, event: DomainEvent) -> None:
        for attempt in range(self.retries + 1):
            try:
                self.client.post_event(event)
                return
            except requests.RequestException as exc:
                log.debug("Backend post attempt %d failed: %s", attempt + 1, exc)
                last_error = exc
        log.warning("Backend rejected %s event for %s: %s", event.kind, event.device, last_error)


__all__ = ["BackendClient", "TelemetryPublisher"]
