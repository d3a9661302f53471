"""
Synthetic frames and Code 128 barcodes for the test suite
"""

import numpy as np
import cv2

# Bar/space module widths of Code 128 symbols 0-106 (106 = stop)
CODE128_PATTERNS = [
    "212222", "222122", "222221", "121223", "121322", "131222", "122213", "122312",
    "132212", "221213", "221312", "231212", "112232", "122132", "122231", "113222",
    "123122", "123221", "223211", "221132", "221231", "213212", "223112", "312131",
    "311222", "321122", "321221", "312212", "322112", "322211", "212123", "212321",
    "232121", "111323", "131123", "131321", "112313", "132113", "132311", "211313",
    "231113", "231311", "112133", "112331", "132131", "113123", "113321", "133121",
    "313121", "211331", "231131", "213113", "213311", "213131", "311123", "311321",
    "331121", "312113", "312311", "332111", "314111", "221411", "431111", "111224",
    "111422", "121124", "121421", "141122", "141221", "112214", "112412", "122114",
    "122411", "142112", "142211", "241211", "221114", "413111", "241112", "134111",
    "111242", "121142", "121241", "114212", "124112", "124211", "411212", "421112",
    "421211", "212141", "214121", "412121", "111143", "111341", "131141", "114113",
    "114311", "411113", "411311", "113141", "114131", "311141", "411131", "211412",
    "211214", "211232", "2331112",
]
START_B = 104
START_C = 105
STOP = 106

DESK_GRAY = 70
PAPER_GRAY = 245
FRAME_SIZE = (1600, 1200)            # width, height
PAPER_RECT = (150, 100, 1450, 1100)  # x1, y1, x2, y2


def code128_values(text):
    """Symbol values including start and checksum (code set C for even digit runs)."""
    if text.isdigit() and len(text) % 2 == 0:
        values = [START_C] + [int(text[i:i + 2]) for i in range(0, len(text), 2)]
    else:
        values = [START_B] + [ord(c) - 32 for c in text]
    checksum = values[0] + sum(i * v for i, v in enumerate(values[1:], start=1))
    return values + [checksum % 103]


def render_code128(text, module=3, height=100, quiet=10):
    """Grayscale Code 128 image with white quiet zones."""
    widths = []
    for value in code128_values(text) + [STOP]:
        widths.extend(int(w) for w in CODE128_PATTERNS[value])

    total = sum(widths) + 2 * quiet
    image = np.full((height + 2 * quiet * module, total * module), 255, dtype=np.uint8)
    x = quiet * module
    for i, w in enumerate(widths):
        if i % 2 == 0:
            image[quiet * module:quiet * module + height, x:x + w * module] = 0
        x += w * module
    return image


def paste(frame, patch, x, y):
    """Copy a grayscale patch into a BGR frame at (x, y)."""
    h, w = patch.shape[:2]
    frame[y:y + h, x:x + w] = cv2.cvtColor(patch, cv2.COLOR_GRAY2BGR)
    return frame


def desk_frame(size=FRAME_SIZE, gray=DESK_GRAY):
    """Empty desk under the camera."""
    width, height = size
    return np.full((height, width, 3), gray, dtype=np.uint8)


def document_frame(code="20241019", size=FRAME_SIZE, paper=PAPER_RECT):
    """
    White page on the desk with a Code 128 barcode in its top-right area

    Pass code=None for a page without a barcode.
    """
    frame = desk_frame(size)
    x1, y1, x2, y2 = paper
    cv2.rectangle(frame, (x1, y1), (x2 - 1, y2 - 1), (PAPER_GRAY,) * 3, -1)
    cv2.putText(frame, "DELIVERY NOTE", (x1 + 80, y1 + 200),
                cv2.FONT_HERSHEY_SIMPLEX, 2.0, (20, 20, 20), 4)

    if code:
        barcode = render_code128(code)
        bx = x2 - 60 - barcode.shape[1]
        paste(frame, barcode, bx, y1 + 40)
    return frame


def tilted_document_frame(size=FRAME_SIZE):
    """Page rotated by a few degrees; returns (frame, page corners TL/TR/BR/BL)."""
    frame = desk_frame(size)
    corners = np.array([[220, 160], [1400, 120], [1430, 1060], [190, 1090]], dtype=np.int32)
    cv2.fillPoly(frame, [corners.reshape(-1, 1, 2)], (PAPER_GRAY,) * 3)
    return frame, corners.astype(np.float32)
