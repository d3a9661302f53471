#!/usr/bin/env python3
"""
Live receipt scanner - command line application
Reads frames from an OpenCV video source (camera index or video file),
feeds them to the auto-capture service and shows a preview window.
"""

import argparse
import logging
import time

import cv2

from .config import CaptureConfig
from .pipeline import CapturePipeline
from .state_machine import AutoCaptureService, CaptureState
from .utils import setup_logging

logger = logging.getLogger(__name__)

STATE_COLORS = {
    CaptureState.DISABLED: (128, 128, 128),
    CaptureState.UNSTABLE: (0, 165, 255),
    CaptureState.READY: (0, 255, 0),
    CaptureState.PROCESSING: (255, 255, 0),
    CaptureState.PROCESSED: (255, 255, 255),
}


class LiveScanner:
    """Thin frame source and preview around AutoCaptureService"""

    def __init__(self, config, source=0, resolution=(3264, 2448), show_preview=True):
        """
        Initialize the live scanner

        Args:
            config (CaptureConfig): Pipeline configuration
            source (int | str): Camera index or path of a video file to replay
            resolution (tuple): Requested camera resolution (width, height)
            show_preview (bool): Open an OpenCV preview window
        """
        self.config = config
        self.source = source
        self.resolution = resolution
        self.show_preview = show_preview
        self.camera = None
        self.status_message = ""
        self.status_time = 0.0
        self.capture_count = 0

        self.pipeline = CapturePipeline(config)
        self.service = AutoCaptureService(
            self.pipeline,
            config=config,
            callback=self.on_result,
        )

    def initialize_camera(self):
        """Open the video source"""
        self.camera = cv2.VideoCapture(self.source)
        if isinstance(self.source, int):
            self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, self.resolution[0])
            self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, self.resolution[1])

        if not self.camera.isOpened():
            logger.error("Could not open video source %r", self.source)
            return False

        actual_width = self.camera.get(cv2.CAP_PROP_FRAME_WIDTH)
        actual_height = self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT)
        logger.info("Video source %r opened at %dx%d", self.source, actual_width, actual_height)
        return True

    def on_result(self, result):
        """Result sink; runs on the capture thread, so only record the outcome"""
        if result.is_success:
            self.capture_count += 1
            self.status_message = f"Saved {result.code}"
        elif result.is_duplicate:
            self.status_message = f"Duplicate {result.code}"
        else:
            self.status_message = f"Failed: {result.reason}"
        self.status_time = time.time()
        logger.info("Capture result: %s", result.to_dict())

    def toggle_auto_capture(self):
        if self.service.is_enabled:
            self.service.disable()
        else:
            self.service.enable()

    def draw_overlay(self, frame):
        display = frame.copy()
        state = self.service.state
        cv2.putText(display, f"State: {state}", (10, 40),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.2, STATE_COLORS[state], 3)
        cv2.putText(display, f"Captured: {self.capture_count}", (10, 90),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.2, (0, 165, 255), 3)

        # Show status message for 3 seconds
        if self.status_message and time.time() - self.status_time < 3.0:
            cv2.putText(display, self.status_message, (10, display.shape[0] - 30),
                        cv2.FONT_HERSHEY_SIMPLEX, 1.2, (255, 255, 255), 3)
        return display

    def run(self):
        """Run the scanner until the source ends or 'q' is pressed"""
        if not self.initialize_camera():
            return

        print("\nReceipt Scanner Running")
        print("-----------------------")
        print("Press 'a' to toggle auto-capture")
        print("Press 'c' to clear the duplicate cache")
        print("Press 'q' to quit")

        self.service.enable()
        try:
            while True:
                ret, frame = self.camera.read()
                if not ret or frame is None:
                    logger.info("Video source ended")
                    break

                self.service.submit_frame(frame)

                if not self.show_preview:
                    continue

                display = self.draw_overlay(frame)
                h, w = display.shape[:2]
                scale = min(1.0, 1280 / w)
                if scale < 1.0:
                    display = cv2.resize(display, (int(w * scale), int(h * scale)))
                cv2.imshow("Receipt Scanner", display)

                key = cv2.waitKey(1) & 0xFF
                if key == ord('a'):
                    self.toggle_auto_capture()
                elif key == ord('c'):
                    self.pipeline.deduplicator.clear()
                    logger.info("Duplicate cache cleared")
                elif key == ord('q'):
                    break
        finally:
            self.service.disable()
            self.service.shutdown()

            if self.camera is not None:
                self.camera.release()

            if self.show_preview:
                cv2.destroyAllWindows()
            logger.info("Receipt scanner closed, %d captures", self.capture_count)


def parse_source(value):
    """Camera index if the value is numeric, otherwise a file path"""
    return int(value) if value.isdigit() else value


def main(argv=None):
    """Entry point function when script is run directly"""
    parser = argparse.ArgumentParser(description="Auto-capture receipt barcode scanner")
    parser.add_argument("--output", "-o", type=str, default="A4",
                        help="Directory to save captured receipts")
    parser.add_argument("--camera", "-c", type=parse_source, default=0,
                        help="Camera index or video file to replay")
    parser.add_argument("--width", "-W", type=int, default=3264,
                        help="Camera width resolution")
    parser.add_argument("--height", "-H", type=int, default=2448,
                        help="Camera height resolution")
    parser.add_argument("--cooldown-ms", type=int, default=1200,
                        help="Minimum time between two captures")
    parser.add_argument("--log-dir", type=str, default="logs",
                        help="Directory for app.log")
    parser.add_argument("--debug-dir", type=str, default="",
                        help="Write intermediate rectification images here")
    parser.add_argument("--no-preview", action="store_true",
                        help="Run without a preview window")
    parser.add_argument("--verbose", "-v", action="store_true",
                        help="Log per-frame decisions")

    args = parser.parse_args(argv)
    setup_logging(args.log_dir, args.verbose)

    config = CaptureConfig(
        output_dir=args.output,
        cooldown_ms=args.cooldown_ms,
        debug_dir=args.debug_dir,
    ).validate()

    scanner = LiveScanner(
        config,
        source=args.camera,
        resolution=(args.width, args.height),
        show_preview=not args.no_preview,
    )
    scanner.run()


if __name__ == "__main__":
    main()
