"""
Tests for the auto-capture state machine and its threaded service
"""

import shutil
import tempfile
import threading
import time
import unittest
from dataclasses import replace

import numpy as np

from receipt_capture.change_detector import ChangeDetector
from receipt_capture.config import CaptureConfig
from receipt_capture.errors import ConfigurationError
from receipt_capture.pipeline import CapturePipeline, CaptureResult
from receipt_capture.state_machine import (
    COOLDOWN_NOTE,
    AutoCaptureService,
    CaptureState,
    Effect,
    MachineState,
    advance,
    complete,
    disable,
    enable,
)
from tests.helpers import desk_frame, document_frame

D = CaptureState.DISABLED
U = CaptureState.UNSTABLE
R = CaptureState.READY
P = CaptureState.PROCESSING
DONE = CaptureState.PROCESSED


def wait_for(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.01)
    return predicate()


def feed_until(service, frame, predicate, timeout=10.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        service.submit_frame(frame)
        time.sleep(0.02)
    return predicate()


class TestTransitions(unittest.TestCase):
    """Test cases for the pure transition functions"""

    def setUp(self):
        self.config = CaptureConfig()
        self.ready = MachineState(state=R, bootstrapped=True)

    def test_enable_and_disable(self):
        machine = enable(MachineState())
        self.assertEqual(machine.state, U)
        self.assertFalse(machine.bootstrapped)
        self.assertEqual(disable(machine).state, D)

    def test_enable_keeps_last_trigger(self):
        """Re-enabling does not reset the cooldown clock"""
        machine = enable(MachineState(state=D, bootstrapped=True, last_trigger_ms=500))
        self.assertFalse(machine.bootstrapped)
        self.assertEqual(machine.last_trigger_ms, 500)

    def test_first_frame_bootstraps(self):
        """The first frame after enable goes straight to Ready"""
        step = advance(enable(MachineState()), True, 0, self.config)
        self.assertEqual(step.machine.state, R)
        self.assertEqual(step.effect, Effect.CONFIRM_STABLE)
        self.assertTrue(step.machine.bootstrapped)

    def test_unstable_settles_after_one_stable_frame(self):
        machine = MachineState(state=U, bootstrapped=True)
        step = advance(machine, False, 0, self.config)
        self.assertEqual(step.machine.state, R)
        self.assertEqual(step.effect, Effect.CONFIRM_STABLE)

    def test_changing_timeout(self):
        """Continuous change beyond the timeout re-baselines and enters Ready"""
        machine = MachineState(state=U, bootstrapped=True)
        machine = advance(machine, True, 100, self.config).machine
        self.assertEqual(machine.changing_since_ms, 100)

        machine = advance(machine, True, 3100, self.config).machine
        self.assertEqual(machine.state, U)
        self.assertEqual(machine.changing_since_ms, 100)

        step = advance(machine, True, 3101, self.config)
        self.assertEqual(step.machine.state, R)
        self.assertEqual(step.effect, Effect.CONFIRM_STABLE)
        self.assertIsNone(step.machine.changing_since_ms)

    def test_stable_frame_restarts_changing_timer(self):
        machine = MachineState(state=U, bootstrapped=True, changing_since_ms=0)
        config = CaptureConfig(enter_ready_frames=3)
        machine = advance(machine, False, 10, config).machine
        self.assertIsNone(machine.changing_since_ms)
        self.assertEqual(machine.stable_count, 1)

    def test_ready_disturbed(self):
        step = advance(replace(self.ready, stable_count=1), True, 0, self.config)
        self.assertEqual(step.machine.state, U)
        self.assertEqual(step.machine.stable_count, 0)

    def test_ready_triggers_after_threshold(self):
        """Two stable frames in Ready trigger exactly one capture"""
        first = advance(self.ready, False, 10, self.config)
        self.assertEqual(first.machine.state, R)
        self.assertEqual(first.effect, Effect.NONE)

        second = advance(first.machine, False, 20, self.config)
        self.assertEqual(second.machine.state, P)
        self.assertEqual(second.effect, Effect.TRIGGER_CAPTURE)
        self.assertEqual(second.machine.last_trigger_ms, 20)

        # Processing is inert
        third = advance(second.machine, False, 30, self.config)
        self.assertEqual(third.machine, second.machine)
        self.assertEqual(third.effect, Effect.NONE)

    def test_cooldown_suppresses_trigger(self):
        """A trigger within the cooldown returns to Unstable"""
        machine = MachineState(state=R, bootstrapped=True, stable_count=1, last_trigger_ms=1000)
        step = advance(machine, False, 2199, self.config)
        self.assertEqual(step.machine.state, U)
        self.assertEqual(step.note, COOLDOWN_NOTE)
        self.assertEqual(step.machine.last_trigger_ms, 1000)

        step = advance(machine, False, 2200, self.config)
        self.assertEqual(step.machine.state, P)

    def test_processed_waits_for_change(self):
        machine = MachineState(state=DONE, bootstrapped=True)
        self.assertEqual(advance(machine, False, 0, self.config).machine.state, DONE)
        self.assertEqual(advance(machine, True, 0, self.config).machine.state, U)

    def test_disabled_ignores_frames(self):
        machine = MachineState()
        self.assertEqual(advance(machine, True, 0, self.config).machine, machine)

    def test_complete(self):
        processing = MachineState(state=P, bootstrapped=True)
        self.assertEqual(complete(processing, CaptureResult.success("A12345", "x.jpg")).machine.state, DONE)
        self.assertEqual(complete(processing, CaptureResult.duplicate("A12345")).machine.state, DONE)
        self.assertEqual(complete(processing, CaptureResult.failure("nope")).machine.state, U)

    def test_complete_outside_processing_is_ignored(self):
        machine = MachineState(state=D)
        self.assertEqual(complete(machine, CaptureResult.success("A12345", "x.jpg")).machine, machine)

    def test_desk_then_document_scenario(self):
        """Blank desk, then a placed page: one capture, ending in Processed"""
        detector = ChangeDetector(self.config)
        machine = enable(MachineState())
        desk, page = desk_frame(), document_frame()
        states, triggers = [machine.state], 0

        frames = [(0, desk)] + [(t, page) for t in range(16, 3200, 16)]
        for now, frame in frames:
            step = advance(machine, detector.is_changing(frame), now, self.config)
            if step.effect is Effect.CONFIRM_STABLE:
                detector.confirm_stable(frame)
            elif step.effect is Effect.TRIGGER_CAPTURE:
                triggers += 1
                step = complete(step.machine, CaptureResult.success("20241019", "x.jpg"))
                states.append(P)
            machine = step.machine
            if machine.state is not states[-1]:
                states.append(machine.state)

        self.assertEqual(triggers, 1)
        self.assertEqual(states, [U, R, U, R, P, DONE])


class StubPipeline:
    """Stands in for CapturePipeline; blocks until `gate` is set."""

    def __init__(self, result=None, error=None):
        self.config = CaptureConfig()
        self.gate = threading.Event()
        self.gate.set()
        self.result = result or CaptureResult.success("20241019", "A4/20241019.jpg")
        self.error = error
        self.frames = []
        self.removed = []

    def process_frame(self, frame):
        self.frames.append(frame)
        self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.result

    def remove_duplicate_barcode(self, code):
        self.removed.append(code)


class TestAutoCaptureService(unittest.TestCase):
    """Test cases for AutoCaptureService"""

    def make_service(self, pipeline, config=None):
        self.transitions = []
        self.results = []
        self.delivered = threading.Event()

        def on_result(result):
            self.results.append(result)
            self.delivered.set()

        service = AutoCaptureService(
            pipeline, config=config, callback=on_result,
            on_state_change=lambda old, new: self.transitions.append((old, new)))
        self.addCleanup(service.shutdown)
        return service

    def test_starts_disabled(self):
        service = self.make_service(StubPipeline())
        self.assertEqual(service.state, D)
        self.assertFalse(service.is_enabled)

    def test_invalid_config_is_rejected(self):
        with self.assertRaises(ConfigurationError):
            AutoCaptureService(StubPipeline(), config=CaptureConfig(stable_frame_threshold=0))

    def test_frames_ignored_while_disabled(self):
        pipeline = StubPipeline()
        service = self.make_service(pipeline)
        for _ in range(5):
            service.submit_frame(desk_frame())
        time.sleep(0.1)
        self.assertEqual(service.state, D)
        self.assertEqual(pipeline.frames, [])

    def test_static_scene_captures_once(self):
        """A settled scene produces one capture and the expected transitions"""
        pipeline = StubPipeline()
        service = self.make_service(pipeline)
        frame = desk_frame()

        service.enable()
        self.assertTrue(feed_until(service, frame, lambda: service.state is DONE))
        self.assertTrue(self.delivered.wait(5))

        # Further identical frames are ignored in Processed
        for _ in range(10):
            service.submit_frame(frame)
            time.sleep(0.02)

        self.assertEqual(self.transitions, [(D, U), (U, R), (R, P), (P, DONE)])
        self.assertEqual(len(pipeline.frames), 1)
        self.assertEqual(len(self.results), 1)
        self.assertTrue(self.results[0].is_success)

    def test_pipeline_receives_private_copy(self):
        pipeline = StubPipeline()
        service = self.make_service(pipeline)
        frame = desk_frame()

        service.enable()
        self.assertTrue(feed_until(service, frame, lambda: len(pipeline.frames) == 1))
        captured = pipeline.frames[0]
        self.assertFalse(np.shares_memory(captured, frame))
        np.testing.assert_array_equal(captured, frame)

    def test_failure_returns_to_unstable(self):
        pipeline = StubPipeline(result=CaptureResult.failure("No valid barcode found"))
        service = self.make_service(pipeline)

        service.enable()
        self.assertTrue(feed_until(service, desk_frame(), self.delivered.is_set))
        self.assertIn((P, U), self.transitions)
        self.assertEqual(self.results[0].reason, "No valid barcode found")

    def test_pipeline_exception_is_contained(self):
        """A raising pipeline yields a Failure and the loop keeps running"""
        pipeline = StubPipeline(error=RuntimeError("camera buffer lost"))
        service = self.make_service(pipeline)

        service.enable()
        with self.assertLogs("receipt_capture.state_machine", level="ERROR"):
            self.assertTrue(feed_until(service, desk_frame(), self.delivered.is_set))
        self.assertTrue(self.results[0].is_failure)
        self.assertEqual(self.results[0].reason, "camera buffer lost")
        self.assertTrue(wait_for(lambda: service.state is not P))

    def test_disable_during_capture(self):
        """The in-flight capture completes and is delivered; state stays Disabled"""
        pipeline = StubPipeline()
        pipeline.gate.clear()
        service = self.make_service(pipeline)

        service.enable()
        self.assertTrue(feed_until(service, desk_frame(), lambda: service.state is P))
        service.disable()
        self.assertEqual(service.state, D)

        pipeline.gate.set()
        self.assertTrue(self.delivered.wait(5))
        time.sleep(0.05)
        self.assertEqual(service.state, D)
        self.assertEqual(self.transitions[-1], (P, D))
        self.assertTrue(self.results[0].is_success)

    def test_reenable_restarts_at_unstable(self):
        pipeline = StubPipeline()
        service = self.make_service(pipeline)
        service.enable()
        service.disable()
        service.enable()
        self.assertEqual(service.state, U)
        self.assertFalse(service.machine.bootstrapped)
        self.assertIsNone(service.detector.reference)

    def test_remove_duplicate_barcode_is_forwarded(self):
        pipeline = StubPipeline()
        service = self.make_service(pipeline)
        service.remove_duplicate_barcode("20241019")
        self.assertEqual(pipeline.removed, ["20241019"])

    def test_shutdown_stops_worker(self):
        service = AutoCaptureService(StubPipeline())
        service.enable()
        service.shutdown()
        self.assertFalse(service._worker.is_alive())


class TestAutoCaptureEndToEnd(unittest.TestCase):
    """Live-stream scenarios with the real capture pipeline"""

    def setUp(self):
        self.output_dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.output_dir, True)
        self.results = []
        self.delivered = threading.Event()

    def make_service(self, **overrides):
        config = CaptureConfig(output_dir=self.output_dir, **overrides)

        def on_result(result):
            self.results.append(result)
            self.delivered.set()

        service = AutoCaptureService(CapturePipeline(config), callback=on_result)
        self.addCleanup(service.shutdown)
        return service

    def test_desk_then_document(self):
        """Placing a page on the desk yields one Success"""
        service = self.make_service(changing_timeout_ms=100)
        service.enable()

        service.submit_frame(desk_frame())
        self.assertTrue(wait_for(lambda: service.state is R))

        self.assertTrue(feed_until(service, document_frame("20241019"), self.delivered.is_set))
        self.assertTrue(wait_for(lambda: service.state is DONE))
        self.assertEqual(len(self.results), 1)
        self.assertTrue(self.results[0].is_success)
        self.assertEqual(self.results[0].code, "20241019")

    def test_same_page_again_is_duplicate(self):
        """Re-arming over the same page reports a Duplicate"""
        service = self.make_service(cooldown_ms=0)
        page = document_frame("20241019")

        service.enable()
        self.assertTrue(feed_until(service, page, lambda: len(self.results) == 1))
        service.disable()
        service.enable()
        self.assertTrue(feed_until(service, page, lambda: len(self.results) == 2))

        self.assertTrue(self.results[0].is_success)
        self.assertTrue(self.results[1].is_duplicate)
        self.assertTrue(wait_for(lambda: service.state is DONE))


if __name__ == '__main__':
    unittest.main()
