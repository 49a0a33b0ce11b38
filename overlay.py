"""
Overlay Module
==============
Raster artifacts for external persistence: the flattened composite of
the enhanced channels and the classification overlay, where every
classified nucleus is outlined by its fitted ellipse in a channel-coded
colour:

- microglial nuclei -> magenta (blue + red, green cleared)
- neural nuclei     -> cyan (blue + green, red cleared)
"""

import cv2
import numpy as np
from typing import Sequence


def render_composite(blue: np.ndarray, green: np.ndarray, red: np.ndarray) -> np.ndarray:
    """Merge three single-channel masks into one BGR image."""
    return cv2.merge([blue, green, red])


def _draw_ellipses(planes, contours: Sequence[np.ndarray], values, thickness: int):
    for contour in contours:
        if len(contour) < 5:
            continue
        ellipse = cv2.fitEllipse(contour)
        for plane, value in zip(planes, values):
            cv2.ellipse(plane, ellipse, value, thickness, cv2.LINE_8)


def render_classification(nucleus_mask: np.ndarray,
                          microglial: Sequence[np.ndarray],
                          neural: Sequence[np.ndarray],
                          thickness: int = 4) -> np.ndarray:
    """
    Draw classified nuclei over the nucleus mask.

    The blue plane starts from the nucleus mask; green and red start black.
    """
    drawing_blue = nucleus_mask.copy()
    drawing_green = np.zeros_like(nucleus_mask)
    drawing_red = np.zeros_like(nucleus_mask)
    planes = (drawing_blue, drawing_green, drawing_red)

    _draw_ellipses(planes, microglial, (255, 0, 255), thickness)
    _draw_ellipses(planes, neural, (255, 255, 0), thickness)

    return cv2.merge(list(planes))
