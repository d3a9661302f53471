"""
Auto-capture state machine
Consumes a live frame stream, decides when the page under the camera is
new and settled, and hands exactly one frame per page to the capture
pipeline.

The decision logic is a set of pure functions over an immutable
MachineState (`enable`, `disable`, `advance`, `complete`);
AutoCaptureService wires them to the frame slot, worker thread and
capture executor.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, List, NamedTuple, Optional, Tuple

import numpy as np

from .change_detector import ChangeDetector
from .config import CaptureConfig
from .pipeline import CaptureResult, CapturePipeline

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    DISABLED = "Disabled"
    UNSTABLE = "Unstable"
    READY = "Ready"
    PROCESSING = "Processing"
    PROCESSED = "Processed"

    def __str__(self):
        return self.value


class Effect(Enum):
    NONE = "none"
    CONFIRM_STABLE = "confirm_stable"
    TRIGGER_CAPTURE = "trigger_capture"


@dataclass(frozen=True)
class MachineState:
    state: CaptureState = CaptureState.DISABLED
    stable_count: int = 0
    changing_since_ms: Optional[float] = None
    bootstrapped: bool = False
    last_trigger_ms: Optional[float] = None


class Step(NamedTuple):
    machine: MachineState
    effect: Effect = Effect.NONE
    note: str = ""


COOLDOWN_NOTE = "trigger suppressed by cooldown"

# States in which incoming frames are evaluated at all
EVALUATED_STATES = (CaptureState.UNSTABLE, CaptureState.READY, CaptureState.PROCESSED)


def enable(machine: MachineState) -> MachineState:
    """Start over in Unstable; the next frame bootstraps the reference."""
    return replace(machine, state=CaptureState.UNSTABLE, stable_count=0,
                   changing_since_ms=None, bootstrapped=False)


def disable(machine: MachineState) -> MachineState:
    return replace(machine, state=CaptureState.DISABLED, stable_count=0,
                   changing_since_ms=None)


def _to_unstable(machine, note):
    return Step(replace(machine, state=CaptureState.UNSTABLE, stable_count=0,
                        changing_since_ms=None), Effect.NONE, note)


def _to_ready(machine, note):
    return Step(replace(machine, state=CaptureState.READY, stable_count=0,
                        changing_since_ms=None, bootstrapped=True),
                Effect.CONFIRM_STABLE, note)


def _advance_unstable(machine, changing, now_ms, config):
    if not machine.bootstrapped:
        return _to_ready(machine, "bootstrap")

    if not changing:
        count = machine.stable_count + 1
        if count >= config.enter_ready_frames:
            return _to_ready(machine, "stable frame confirmed")
        return Step(replace(machine, stable_count=count, changing_since_ms=None))

    since = machine.changing_since_ms if machine.changing_since_ms is not None else now_ms
    if now_ms - since > config.changing_timeout_ms:
        # Continuous change this long means the page was swapped
        return _to_ready(machine, "changing timeout, reference updated")
    return Step(replace(machine, stable_count=0, changing_since_ms=since))


def _advance_ready(machine, changing, now_ms, config):
    if changing:
        return _to_unstable(machine, "page disturbed")

    count = machine.stable_count + 1
    if count < config.stable_frame_threshold:
        return Step(replace(machine, stable_count=count))

    last = machine.last_trigger_ms
    if last is not None and now_ms - last < config.cooldown_ms:
        return _to_unstable(machine, COOLDOWN_NOTE)

    return Step(replace(machine, state=CaptureState.PROCESSING, stable_count=0,
                        last_trigger_ms=now_ms),
                Effect.TRIGGER_CAPTURE, "capture triggered")


def advance(machine: MachineState, changing: bool, now_ms: float,
            config: CaptureConfig) -> Step:
    """
    Next state for one evaluated frame

    Args:
        machine: Current state
        changing: ChangeDetector verdict for the frame
        now_ms: Monotonic timestamp of the frame in milliseconds
        config: Thresholds and timeouts

    Returns:
        Step: the next state, the side effect to perform and a log note
    """
    state = machine.state
    if state is CaptureState.UNSTABLE:
        return _advance_unstable(machine, changing, now_ms, config)
    if state is CaptureState.READY:
        return _advance_ready(machine, changing, now_ms, config)
    if state is CaptureState.PROCESSED and changing:
        return _to_unstable(machine, "new page expected")
    # Disabled, Processing, and a settled Processed ignore the frame
    return Step(machine)


def complete(machine: MachineState, result: CaptureResult) -> Step:
    """State after a capture finished; only meaningful while Processing."""
    if machine.state is not CaptureState.PROCESSING:
        return Step(machine)
    if result.is_success or result.is_duplicate:
        return Step(replace(machine, state=CaptureState.PROCESSED, stable_count=0),
                    note=f"capture {result.kind}")
    return _to_unstable(machine, f"capture failed: {result.reason}")


def _monotonic_ms():
    return time.monotonic() * 1000.0


StateListener = Callable[[CaptureState, CaptureState], None]
ResultCallback = Callable[[CaptureResult], None]


class AutoCaptureService:
    """
    Feeds a live frame stream through the state machine.

    Frames go into a single pending slot that each new frame overwrites;
    a worker thread evaluates at most one frame per wake-up. Captures run
    on a separate executor so ingestion never waits on decoding.
    """

    def __init__(self, pipeline: CapturePipeline,
                 detector: Optional[ChangeDetector] = None,
                 config: Optional[CaptureConfig] = None,
                 callback: Optional[ResultCallback] = None,
                 on_state_change: Optional[StateListener] = None,
                 clock: Callable[[], float] = _monotonic_ms):
        self.pipeline = pipeline
        self.config = (config or pipeline.config).validate()
        self.detector = detector or ChangeDetector(self.config)
        self.callback = callback
        self.on_state_change = on_state_change
        self._clock = clock

        self._machine = MachineState()
        self._enabled = False
        self._generation = 0
        self._state_lock = threading.Lock()

        self._pending: Optional[np.ndarray] = None
        self._frame_lock = threading.Lock()
        self._frame_event = threading.Event()
        self._shutdown = threading.Event()

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="AutoCaptureJob")
        self._inflight: Optional[Future] = None

        self._worker = threading.Thread(target=self._worker_loop, name="AutoCaptureWorker",
                                        daemon=True)
        self._worker.start()

    # ---- lifecycle -------------------------------------------------------

    def enable(self):
        with self._state_lock:
            self._enabled = True
            self._generation += 1
            self.detector.reset()
            changes = self._set_machine(enable(self._machine), "enabled")
        self._notify(changes)

    def disable(self):
        with self._state_lock:
            self._enabled = False
            changes = self._set_machine(disable(self._machine), "disabled")
        with self._frame_lock:
            # Dropping the reference is enough; readers hold their own copies
            self._pending = None
        self._notify(changes)

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @property
    def state(self) -> CaptureState:
        return self._machine.state

    @property
    def machine(self) -> MachineState:
        return self._machine

    def shutdown(self):
        """Stop the worker loop and wait (bounded) for it and any capture in flight."""
        self._shutdown.set()
        self._frame_event.set()
        timeout = self.config.shutdown_timeout_s
        self._worker.join(timeout)
        if self._worker.is_alive():
            logger.warning("[AutoCapture] Worker did not stop within %.1fs", timeout)
        inflight = self._inflight
        if inflight is not None:
            wait([inflight], timeout=timeout)
        self._executor.shutdown(wait=False)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.shutdown()

    # ---- frame input -----------------------------------------------------

    def submit_frame(self, frame: np.ndarray):
        """
        Offer a frame; never blocks and never queues

        The frame is copied into a private read-only buffer that replaces
        any frame still waiting in the slot.
        """
        if not self._enabled or frame is None:
            return

        owned = np.array(frame, copy=True)
        owned.setflags(write=False)
        with self._frame_lock:
            self._pending = owned
        self._frame_event.set()

    def remove_duplicate_barcode(self, code: str):
        self.pipeline.remove_duplicate_barcode(code)

    # ---- worker ----------------------------------------------------------

    def _worker_loop(self):
        poll_s = self.config.poll_interval_ms / 1000.0
        while not self._shutdown.is_set():
            if self._frame_event.wait(poll_s):
                self._frame_event.clear()
                if self._shutdown.is_set():
                    break
                self._process_pending()

    def _take_pending(self):
        with self._frame_lock:
            frame, self._pending = self._pending, None
        return frame

    def _process_pending(self):
        if not self._enabled:
            return
        frame = self._take_pending()
        if frame is None:
            return

        try:
            changes, job = self._evaluate(frame)
        except Exception:
            logger.exception("[AutoCapture] Frame evaluation failed")
            return
        self._notify(changes)

        if job is not None:
            self._inflight = self._executor.submit(self._run_capture, *job)

    def _evaluate(self, frame):
        """Run one transition; returns (state changes, capture job or None)."""
        with self._state_lock:
            if not self._enabled or self._machine.state not in EVALUATED_STATES:
                return [], None

            changing = self.detector.is_changing(frame)
            logger.debug("[AutoCapture] state=%s changing=%s stable=%d",
                         self._machine.state, changing, self._machine.stable_count)

            step = advance(self._machine, changing, self._clock(), self.config)
            if step.effect is Effect.CONFIRM_STABLE:
                self.detector.confirm_stable(frame)
            elif step.note == COOLDOWN_NOTE:
                logger.warning("[AutoCapture] Trigger within %dms of the previous one suppressed",
                               self.config.cooldown_ms)

            changes = self._set_machine(step.machine, step.note)

            job = None
            if step.effect is Effect.TRIGGER_CAPTURE:
                job = (np.array(frame, copy=True), self._generation)
        return changes, job

    def _run_capture(self, snapshot, generation):
        try:
            result = self.pipeline.process_frame(snapshot)
        except Exception as e:
            logger.exception("[AutoCapture] Capture error")
            result = CaptureResult.failure(str(e) or type(e).__name__)
        finally:
            del snapshot

        changes = []
        with self._state_lock:
            if self._enabled and generation == self._generation:
                step = complete(self._machine, result)
                changes = self._set_machine(step.machine, step.note)
            else:
                logger.info("[AutoCapture] Capture finished after disable; state unchanged")
        self._notify(changes)

        if self.callback is not None:
            try:
                self.callback(result)
            except Exception:
                logger.exception("[AutoCapture] Result callback raised")
        return result

    # ---- helpers ---------------------------------------------------------

    def _set_machine(self, machine, note="") -> List[Tuple[CaptureState, CaptureState]]:
        """Replace the machine state; caller holds _state_lock."""
        old = self._machine.state
        self._machine = machine
        if machine.state is old:
            return []
        if note:
            logger.info("[AutoCapture] %s -> %s (%s)", old, machine.state, note)
        else:
            logger.info("[AutoCapture] %s -> %s", old, machine.state)
        return [(old, machine.state)]

    def _notify(self, changes):
        if self.on_state_change is None:
            return
        for old, new in changes:
            try:
                self.on_state_change(old, new)
            except Exception:
                logger.exception("[AutoCapture] State listener raised")
