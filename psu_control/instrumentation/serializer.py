"""Single-writer gate in front of the SCPI client.

All producers (manual actions, polling, automation, the connection lifecycle) hand
commands to one I/O thread which executes them strictly one at a time. The queue is
FIFO, so no producer can be starved and each producer's own commands keep their
submission order.
"""

from __future__ import annotations

import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Iterable, Optional

from psu_control.instrumentation.errors import NotConnectedError
from psu_control.instrumentation.scpi import Command, Response, ScpiClient

logger = logging.getLogger(__name__)


class Producer(Enum):
    MANUAL = "manual"
    POLLING = "polling"
    AUTOMATION = "automation"
    CONNECTION = "connection"


@dataclass
class _Job:
    command: Command
    producer: Producer
    future: "Future[Response]"


class CommandSerializer:
    """Runs SCPI transactions on a dedicated I/O thread, one at a time."""

    def __init__(self, client: ScpiClient, name: str = "psu-io") -> None:
        self._client = client
        self._name = name
        self._queue: "queue.Queue[Optional[_Job]]" = queue.Queue()
        self._lock = threading.Lock()
        self._allowed: Optional[frozenset] = None  # None: every producer
        self._stopped = False
        self._thread: Optional[threading.Thread] = None
        self._in_flight: Optional[_Job] = None

    # ------------------------------------------------------------------
    def start(self) -> None:
        with self._lock:
            if self._thread is not None:
                return
            self._thread = threading.Thread(target=self._run, name=self._name, daemon=True)
            self._thread.start()

    def submit(self, command: Command, producer: Producer) -> "Future[Response]":
        """Queue *command* and return a future resolved on the I/O thread."""
        future: "Future[Response]" = Future()
        with self._lock:
            if self._stopped or self._thread is None:
                raise NotConnectedError("Command channel is closed")
            if self._allowed is not None and producer not in self._allowed:
                raise NotConnectedError(f"{producer.value} commands are no longer accepted")
            self._queue.put(_Job(command, producer, future))
        return future

    def execute(self, command: Command, producer: Producer, timeout: Optional[float] = None) -> Response:
        return self.submit(command, producer).result(timeout=timeout)

    @property
    def in_flight(self) -> Optional[Command]:
        job = self._in_flight
        return job.command if job else None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    # ------------------------------------------------------------------
    def restrict(self, producers: Iterable[Producer]) -> None:
        """Only accept *producers* from now on and fail everyone else's queued work."""
        with self._lock:
            self._allowed = frozenset(producers)
            self._fail_pending(lambda job: job.producer not in self._allowed)

    def cancel_pending(self) -> None:
        with self._lock:
            self._fail_pending(lambda job: True)

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Stop the I/O thread after it finishes what is already queued."""
        with self._lock:
            if self._stopped:
                return
            self._stopped = True
            thread = self._thread
            self._queue.put(None)
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout=timeout)

    # ------------------------------------------------------------------
    def _fail_pending(self, predicate) -> None:
        kept = []
        while True:
            try:
                job = self._queue.get_nowait()
            except queue.Empty:
                break
            if job is not None and predicate(job):
                if not job.future.done():
                    job.future.set_exception(NotConnectedError(f"{job.command} cancelled: connection closing"))
            else:
                kept.append(job)
        for job in kept:
            self._queue.put(job)

    def _run(self) -> None:
        while True:
            job = self._queue.get()
            if job is None:
                break
            if not job.future.set_running_or_notify_cancel():
                continue
            self._in_flight = job
            try:
                result = self._client.execute(job.command)
            except Exception as exc:
                logger.debug("%s from %s failed: %s", job.command, job.producer.value, exc)
                job.future.set_exception(exc)
            else:
                job.future.set_result(result)
            finally:
                self._in_flight = None
        logger.debug("I/O thread %s stopped", self._name)
