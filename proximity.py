"""
Proximity Module
================
Neighbour-count statistics between two classified nucleus populations.

For every reference cell (e.g. a microglial nucleus) the analyzer counts
neighbour cells (e.g. neural nuclei) whose centroid lies within an ROI
radius of the reference centroid. The radius adapts to the reference
population: roi_factor * mean reference diameter / 2, where a cell's
diameter is the diagonal of its minimum-area rotated rectangle.

Counts are attributed to the reference cell, one count per reference.
"""

import cv2
import math
import numpy as np
from dataclasses import dataclass, field
from typing import List, Sequence, Tuple


@dataclass
class ProximityStatistic:
    mean: float = 0.0
    stddev: float = 0.0
    # True when either population was empty and no counts were taken
    empty: bool = True
    radius: float = 0.0
    # Neighbour count per reference cell
    counts: List[int] = field(default_factory=list)


def centroid(contour: np.ndarray) -> Tuple[float, float]:
    """Area-weighted centroid; falls back to the mean vertex for zero-area contours."""
    M = cv2.moments(contour)
    if M["m00"] != 0:
        return M["m10"] / M["m00"], M["m01"] / M["m00"]
    pts = contour.reshape(-1, 2).astype(np.float64)
    return float(pts[:, 0].mean()), float(pts[:, 1].mean())


def diameter(contour: np.ndarray) -> float:
    """Diagonal of the minimum-area enclosing rotated rectangle."""
    (_, (w, h), _) = cv2.minAreaRect(contour)
    return math.sqrt(w ** 2 + h ** 2)


class ProximityAnalyzer:

    def __init__(self, roi_factor: float = 20.0):
        self.roi_factor = roi_factor

    def roi_radius(self, reference: Sequence[np.ndarray]) -> float:
        diameters = [diameter(c) for c in reference]
        return (self.roi_factor * float(np.mean(diameters))) / 2

    def analyze(self, reference: Sequence[np.ndarray],
                neighbors: Sequence[np.ndarray]) -> ProximityStatistic:
        """
        Args:
            reference: Contours of the population the counts belong to.
            neighbors: Contours of the population being counted.

        Returns:
            Mean and (population) standard deviation of per-reference
            neighbour counts. Empty inputs give zeros with ``empty`` set.
        """
        if len(reference) == 0:
            return ProximityStatistic()
        if len(neighbors) == 0:
            return ProximityStatistic(radius=self.roi_radius(reference),
                                      counts=[0] * len(reference))

        radius = self.roi_radius(reference)
        ref_centers = np.array([centroid(c) for c in reference])
        nbr_centers = np.array([centroid(c) for c in neighbors])

        # Distance matrix: rows = reference cells, cols = neighbours
        diff = ref_centers[:, None, :] - nbr_centers[None, :, :]
        dist = np.sqrt((diff ** 2).sum(axis=2))
        counts = (dist <= radius).sum(axis=1)

        return ProximityStatistic(
            mean=float(np.mean(counts)),
            stddev=float(np.std(counts)),
            empty=False,
            radius=radius,
            counts=[int(c) for c in counts],
        )
