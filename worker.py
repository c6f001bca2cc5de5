"""Run simulations off the caller's thread and deliver tagged events."""

from __future__ import annotations

import enum
import logging
import queue
import threading
import uuid
from dataclasses import dataclass, field, replace
from typing import List, Literal, Optional, Union

from core import SimulationCancelled, SimulationConfig, SimulationResults, simulate


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Progress:
    run_id: str
    percent_complete: int
    kind: Literal["progress"] = field(default="progress", init=False)


@dataclass(frozen=True)
class Complete:
    run_id: str
    results: SimulationResults
    kind: Literal["complete"] = field(default="complete", init=False)


@dataclass(frozen=True)
class Failed:
    run_id: str
    message: str
    kind: Literal["error"] = field(default="error", init=False)


SimulationEvent = Union[Progress, Complete, Failed]


class RunState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class SimulationRunner:
    """Own at most one background simulation and correlate its events.

    ``start`` launches a worker thread and returns a fresh run id.  Events from
    the worker travel through a queue and are only applied when the caller
    drains it with ``poll``; anything tagged with a superseded run id is
    dropped there.
    """

    def __init__(self, simulate_fn=simulate, sampler=None):
        self._simulate = simulate_fn
        self._sampler = sampler
        self._events: "queue.Queue[SimulationEvent]" = queue.Queue()
        self._thread: Optional[threading.Thread] = None
        self._cancel_event: Optional[threading.Event] = None
        self.state = RunState.IDLE
        self.run_id: Optional[str] = None
        self.progress = 0
        self.results: Optional[SimulationResults] = None
        self.error: Optional[str] = None

    @property
    def is_running(self) -> bool:
        return self.state is RunState.RUNNING

    def start(self, cfg: SimulationConfig) -> str:
        """Begin a new run, cancelling any run still in flight."""
        if self.is_running:
            # do not block the caller; late events from the old run are dropped
            self.cancel(timeout=0)

        run_id = uuid.uuid4().hex
        cancel_event = threading.Event()
        thread = threading.Thread(
            target=self._run,
            args=(run_id, replace(cfg), cancel_event),
            name=f"simulation-{run_id[:8]}",
            daemon=True,
        )
        self.run_id = run_id
        self.state = RunState.RUNNING
        self.progress = 0
        self.results = None
        self.error = None
        self._cancel_event = cancel_event
        self._thread = thread
        logger.info("Run %s started (%d iterations)", run_id, cfg.iterations)
        thread.start()
        return run_id

    def _run(self, run_id: str, cfg: SimulationConfig, cancel_event: threading.Event) -> None:
        def report(percent: int) -> None:
            if not cancel_event.is_set():
                self._events.put(Progress(run_id, percent))

        try:
            results = self._simulate(
                cfg,
                progress_callback=report,
                cancel_event=cancel_event,
                sampler=self._sampler,
            )
        except SimulationCancelled:
            logger.info("Run %s cancelled", run_id)
            return
        except Exception as exc:
            logger.exception("Run %s failed", run_id)
            self._events.put(Failed(run_id, str(exc) or type(exc).__name__))
            return
        if not cancel_event.is_set():
            self._events.put(Complete(run_id, results))

    def poll(self) -> List[SimulationEvent]:
        """Drain pending events for the current run and apply them."""
        delivered = []
        while True:
            try:
                event = self._events.get_nowait()
            except queue.Empty:
                break
            if event.run_id != self.run_id or not self.is_running:
                logger.debug("Dropping stale %s event from run %s", event.kind, event.run_id)
                continue
            if isinstance(event, Progress):
                self.progress = event.percent_complete
            elif isinstance(event, Complete):
                self.progress = 100
                self.results = event.results
                self.state = RunState.COMPLETED
                self._release()
            elif isinstance(event, Failed):
                self.progress = 0
                self.error = event.message
                self.state = RunState.FAILED
                self._release()
            delivered.append(event)
        return delivered

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Block until the worker thread exits; return False on timeout."""
        thread = self._thread
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def cancel(self, timeout: Optional[float] = None) -> None:
        """Stop the current run; no terminal event is delivered for it."""
        if not self.is_running:
            return
        logger.info("Cancelling run %s", self.run_id)
        self._cancel_event.set()
        finished = self.wait(timeout)
        if not finished:
            logger.info("Run %s still stopping; detaching its thread", self.run_id)
        self._release(join=finished)
        self.state = RunState.IDLE
        self.progress = 0

    def reset(self) -> None:
        self.cancel()
        self._release()
        self.state = RunState.IDLE
        self.run_id = None
        self.progress = 0
        self.results = None
        self.error = None

    def _release(self, join: bool = True) -> None:
        thread = self._thread
        if join and thread is not None and thread is not threading.current_thread():
            thread.join()
        self._thread = None
        self._cancel_event = None
