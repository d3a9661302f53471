"""
Document processing module
Locates the page quadrilateral in a frame from a fixed-mount document
camera and produces a perspective-corrected image of it.
"""

import logging
import os
from datetime import datetime
from typing import Optional, Tuple

import cv2
import numpy as np

from .config import CaptureConfig
from .utils import ensure_directory, to_bgr, validate_frame

logger = logging.getLogger(__name__)

WHITE = (255, 255, 255)
CORNER_LABELS = ("TL", "TR", "BR", "BL")
CORNER_COLORS = ((0, 255, 0), (0, 0, 255), (255, 0, 0), (0, 255, 255))


def sort_corners(pts):
    """
    Order four points as TL, TR, BR, BL

    The two points with the smallest x form the left pair and the other
    two the right pair; inside each pair the smaller y is on top.

    Args:
        pts: Array-like of shape (4, 2)

    Returns:
        np.ndarray: float32 array of shape (4, 2)
    """
    pts = np.asarray(pts, dtype=np.float32).reshape(-1, 2)
    if len(pts) != 4:
        raise ValueError(f"Expected 4 points, got {len(pts)}")

    # Ties in x are broken by y so the split does not depend on input order
    by_x = pts[np.lexsort((pts[:, 1], pts[:, 0]))]
    left = by_x[:2][np.argsort(by_x[:2, 1], kind="stable")]
    right = by_x[2:][np.argsort(by_x[2:, 1], kind="stable")]

    return np.array([left[0], right[0], right[1], left[1]], dtype=np.float32)


def select_outer_corners(pts):
    """Pick the four extreme points of a hull (min/max of x+y and y-x)."""
    pts = np.asarray(pts, dtype=np.float32).reshape(-1, 2)
    rect = np.zeros((4, 2), dtype=np.float32)

    # Top-left point has smallest sum
    # Bottom-right point has largest sum
    s = pts.sum(axis=1)
    rect[0] = pts[np.argmin(s)]
    rect[2] = pts[np.argmax(s)]

    # Top-right point has smallest difference
    # Bottom-left point has largest difference
    diff = np.diff(pts, axis=1)
    rect[1] = pts[np.argmin(diff)]
    rect[3] = pts[np.argmax(diff)]

    return rect


def default_corners(width, height, ratio=(0.85, 0.88)):
    """
    Centered fallback quadrilateral covering a fixed fraction of the image

    Args:
        width: Image width in pixels
        height: Image height in pixels
        ratio: (width fraction, height fraction)

    Returns:
        np.ndarray: float32 TL, TR, BR, BL corners
    """
    w = width * ratio[0]
    h = height * ratio[1]
    x = (width - w) / 2
    y = (height - h) / 2
    return np.array([
        [x, y],
        [x + w, y],
        [x + w, y + h],
        [x, y + h],
    ], dtype=np.float32)


def four_point_transform(image, pts, border_value=WHITE):
    """
    Warp the quadrilateral `pts` (TL, TR, BR, BL) to an upright rectangle

    The output size follows the measured side lengths: the average of the
    top and bottom edges for width, of the left and right edges for height.
    Exposed areas are filled with `border_value`.
    """
    rect = np.asarray(pts, dtype=np.float32).reshape(4, 2)
    (tl, tr, br, bl) = rect

    # Calculate width of new image
    width_top = np.linalg.norm(tr - tl)
    width_bottom = np.linalg.norm(br - bl)
    dst_width = int((width_top + width_bottom) / 2)

    # Calculate height of new image
    height_left = np.linalg.norm(bl - tl)
    height_right = np.linalg.norm(br - tr)
    dst_height = int((height_left + height_right) / 2)

    if dst_width < 2 or dst_height < 2:
        raise ValueError(f"Degenerate quadrilateral: {dst_width}x{dst_height}")

    # Destination points for transform (top-down view)
    dst = np.array([
        [0, 0],
        [dst_width - 1, 0],
        [dst_width - 1, dst_height - 1],
        [0, dst_height - 1]
    ], dtype=np.float32)

    M = cv2.getPerspectiveTransform(rect, dst)
    return cv2.warpPerspective(
        image, M, (dst_width, dst_height),
        flags=cv2.INTER_LINEAR,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=border_value
    )


def draw_corners(image, corners):
    """Draw the TL/TR/BR/BL markers and outline of a quadrilateral on a copy."""
    result = image.copy()
    if corners is None or len(corners) != 4:
        return result

    points = np.asarray(corners).reshape(4, 2).astype(np.int32)
    for (x, y), label, color in zip(points, CORNER_LABELS, CORNER_COLORS):
        cv2.circle(result, (int(x), int(y)), 15, color, 3)
        cv2.putText(result, label, (int(x) + 18, int(y) - 18),
                    cv2.FONT_HERSHEY_SIMPLEX, 1.0, color, 2)
    cv2.polylines(result, [points.reshape(-1, 1, 2)], True, (0, 255, 0), 3)
    return result


def classify_paper_ratio(width, height, a4_min_ratio=1.2, a5_max_ratio=0.85):
    """Classify an output size as 'A4' (landscape), 'A5' (portrait) or 'Unknown'."""
    ratio = width / height
    if ratio > a4_min_ratio:
        return "A4"
    if ratio < a5_max_ratio:
        return "A5"
    return "Unknown"


class DocumentRectifier:
    """Finds the page in a frame and flattens it."""

    def __init__(self, config: Optional[CaptureConfig] = None):
        self.config = config or CaptureConfig()
        self.debug_dir = self.config.debug_dir or None

    def preprocess(self, frame: np.ndarray) -> np.ndarray:
        """Crop the vignetted border: min(w, h) / margin_divisor from every edge."""
        h, w = frame.shape[:2]
        margin = min(w, h) // self.config.margin_divisor
        return frame[margin:h - margin, margin:w - margin].copy()

    def document_mask(self, image: np.ndarray) -> np.ndarray:
        """
        Binary mask with the page as foreground

        Assumes bright paper on a darker desk: Otsu picks the threshold
        between the two and the paper is the brighter class, so the binary
        result is used without inversion. A morphological opening removes
        speckle.
        """
        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        _, binary = cv2.threshold(gray, 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)

        size = self.config.morph_kernel_size
        kernel = cv2.getStructuringElement(cv2.MORPH_RECT, (size, size))
        return cv2.morphologyEx(binary, cv2.MORPH_OPEN, kernel)

    def extract_corners(self, mask: np.ndarray) -> Optional[np.ndarray]:
        """
        Corners of the largest external contour in `mask`

        Returns:
            Sorted (4, 2) corners, or None if no quadrilateral was found
        """
        contours, _ = cv2.findContours(mask, cv2.RETR_EXTERNAL, cv2.CHAIN_APPROX_SIMPLE)
        if not contours:
            return None

        largest = max(contours, key=cv2.contourArea)
        if cv2.contourArea(largest) <= 0:
            return None

        perimeter = cv2.arcLength(largest, True)
        approx = cv2.approxPolyDP(largest, self.config.approx_epsilon_ratio * perimeter, True)

        if len(approx) == 4:
            return sort_corners(approx.reshape(4, 2))

        if len(approx) > 4:
            hull = cv2.convexHull(largest).reshape(-1, 2)
            if len(hull) < 4:
                return None
            quad = hull if len(hull) == 4 else select_outer_corners(hull)
            if len(np.unique(quad, axis=0)) < 4:
                return None
            return sort_corners(quad)

        return None

    def detect_corners(self, image: np.ndarray) -> Tuple[np.ndarray, bool]:
        """
        Find the page quadrilateral in an already preprocessed image

        Returns:
            tuple: (corners, detected) where `detected` is False if the
            default quadrilateral was substituted
        """
        mask = self.document_mask(image)
        self._save_debug(mask, "02_threshold_mask")

        corners = self.extract_corners(mask)
        if corners is not None:
            return corners, True

        h, w = image.shape[:2]
        logger.warning("Document detection failed, using default quadrilateral")
        return default_corners(w, h, self.config.default_quad_ratio), False

    def rectify(self, frame: np.ndarray) -> Optional[np.ndarray]:
        """
        Crop, locate and flatten the page in `frame`

        Args:
            frame: BGR or BGRA uint8 image; it is not modified

        Returns:
            Rectified BGR image, or None if rectification is unavailable
        """
        if frame is None:
            return None

        try:
            validate_frame(frame)
            src = self.preprocess(to_bgr(frame))
            if src.size == 0:
                logger.error("Preprocess produced an empty image")
                return None
            logger.info("Source frame: %dx%d", frame.shape[1], frame.shape[0])
            self._save_debug(src, "01_preprocess")

            corners, detected = self.detect_corners(src)
            self._save_debug(draw_corners(src, corners),
                             "03_contours" if detected else "04_default_corners")

            warped = four_point_transform(src, corners)
            self._save_debug(warped, "05_warped")

            self._log_paper_ratio(warped)
            return warped
        except Exception:
            logger.exception("Document rectification failed")
            return None

    def _log_paper_ratio(self, image):
        h, w = image.shape[:2]
        paper = classify_paper_ratio(w, h, self.config.a4_min_ratio, self.config.a5_max_ratio)
        logger.info("Rectified output: %dx%d px, ratio=%.3f -> %s", w, h, w / h, paper)
        if paper == "Unknown":
            logger.warning("Rectified aspect ratio %.3f is outside the A4/A5 ranges", w / h)

    def _save_debug(self, image, name):
        if not self.debug_dir:
            return
        try:
            ensure_directory(self.debug_dir)
            stamp = datetime.now().strftime("%H%M%S_%f")
            cv2.imwrite(os.path.join(self.debug_dir, f"{name}_{stamp}.png"), image)
        except Exception as e:
            logger.warning("Could not write debug image %s: %s", name, e)
