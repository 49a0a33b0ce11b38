"""
Cell Classifier Module
======================
Splits nucleus contours into populations by how much of each nucleus is
covered by a marker channel.

The same classifier runs twice per image:
1. Microglial nuclei: overlay = nucleus mask AND red (microglia) mask
2. Neural nuclei: the remainder of (1) against nucleus mask AND green mask
"""

import cv2
import numpy as np
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Sequence
from config import PipelineConfig


class CellLabel(Enum):
    TARGET = "target"
    OTHER = "other"


@dataclass
class CellContour:
    """A nucleus contour tagged with the population it was assigned to."""
    points: np.ndarray
    label: CellLabel
    # Population name of the classifier that produced the label
    population: str
    # Position of the contour in the classifier's input list
    source_index: int
    coverage_ratio: float = 0.0


@dataclass
class ClassificationResult:
    target: List[CellContour] = field(default_factory=list)
    other: List[CellContour] = field(default_factory=list)
    # Number of candidates dropped by the noise filter
    rejected: int = 0

    @property
    def classified_count(self) -> int:
        return len(self.target) + len(self.other)

    def target_contours(self) -> List[np.ndarray]:
        return [c.points for c in self.target]

    def other_contours(self) -> List[np.ndarray]:
        return [c.points for c in self.other]


class CellClassifier:
    """
    Coverage-ratio classifier.

    Per candidate contour:
    - Noise filter: closed perimeter < min_perimeter or fewer than
      min_points vertices -> dropped from both output lists
    - Rasterize the filled contour alone (B pixels), AND it with the
      overlay (C pixels); ratio = C / B, or 0 when nothing rasterizes
    - ratio < threshold -> other, else target
    """

    def __init__(self, threshold: float, population: str = "target",
                 min_perimeter: float = 10.0, min_points: int = 5):
        if not 0.0 <= threshold <= 1.0:
            raise ValueError(f"Coverage threshold must be in [0, 1], got {threshold}")
        self.threshold = threshold
        self.population = population
        self.min_perimeter = min_perimeter
        self.min_points = min_points

    def is_noise(self, contour: np.ndarray) -> bool:
        return (cv2.arcLength(contour, True) < self.min_perimeter
                or len(contour) < self.min_points)

    @staticmethod
    def coverage_ratio(contour: np.ndarray, overlay: np.ndarray) -> float:
        drawing = np.zeros(overlay.shape[:2], dtype=np.uint8)
        cv2.drawContours(drawing, [contour], -1, 255, cv2.FILLED, cv2.LINE_8)
        count_before = cv2.countNonZero(drawing)
        if count_before == 0:
            return 0.0
        count_after = cv2.countNonZero(cv2.bitwise_and(drawing, overlay))
        return count_after / count_before

    def classify(self, candidates: Sequence[np.ndarray],
                 overlay: np.ndarray) -> ClassificationResult:
        """
        Partition ``candidates`` against a single-channel 0/255 overlay.

        Both output lists keep the input order.
        """
        result = ClassificationResult()
        for i, contour in enumerate(candidates):
            if self.is_noise(contour):
                result.rejected += 1
                continue

            ratio = self.coverage_ratio(contour, overlay)
            if ratio < self.threshold:
                result.other.append(
                    CellContour(contour, CellLabel.OTHER, self.population, i, ratio))
            else:
                result.target.append(
                    CellContour(contour, CellLabel.TARGET, self.population, i, ratio))
        return result


@dataclass
class NucleusPopulations:
    """Outcome of the two chained classification passes."""
    microglial: List[CellContour]
    neural: List[CellContour]
    remaining: List[CellContour]
    rejected: int

    @property
    def total(self) -> int:
        """Nuclei that passed the noise filter."""
        return len(self.microglial) + len(self.neural) + len(self.remaining)


def classify_nuclei(nuclei: Sequence[np.ndarray], blue_red: np.ndarray,
                    blue_green: np.ndarray,
                    config: PipelineConfig) -> NucleusPopulations:
    """
    Run the microglial pass against the blue-red intersection, then the
    neural pass on its remainder against the blue-green intersection.
    """
    cls_cfg = config.classification

    microglia = CellClassifier(cls_cfg.microglia_threshold, "microglia",
                               cls_cfg.min_perimeter, cls_cfg.min_points)
    first = microglia.classify(nuclei, blue_red)

    neural = CellClassifier(cls_cfg.neural_threshold, "neural",
                            cls_cfg.min_perimeter, cls_cfg.min_points)
    second = neural.classify(first.other_contours(), blue_green)

    return NucleusPopulations(
        microglial=first.target,
        neural=second.target,
        remaining=second.other,
        rejected=first.rejected + second.rejected,
    )
