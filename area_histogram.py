"""
Area Histogram
==============
Bins the net areas of accepted contours into fixed-width buckets.
The last bucket collects every area at or above its lower edge.
"""

import math
from dataclasses import dataclass, field
from typing import Dict, List, Sequence
from segmentation import ContourValidity


@dataclass
class AreaHistogram:
    bin_width: int
    counts: List[int] = field(default_factory=list)

    @property
    def num_bins(self) -> int:
        return len(self.counts)

    @property
    def total(self) -> int:
        return sum(self.counts)

    def labels(self, name: str = "microglia") -> List[str]:
        """Column labels, e.g. '0 <= microglia area < 25', ..., 'microglia area >= 500'."""
        w = self.bin_width
        labels = [f"{i * w} <= {name} area < {(i + 1) * w}"
                  for i in range(self.num_bins - 1)]
        labels.append(f"{name} area >= {(self.num_bins - 1) * w}")
        return labels

    def as_dict(self, name: str = "microglia") -> Dict[str, int]:
        return dict(zip(self.labels(name), self.counts))


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def bin_areas(validity: Sequence[ContourValidity], areas: Sequence[float],
              num_bins: int = 21, bin_width: int = 25) -> AreaHistogram:
    """
    Count accepted parent contours per area bin.

    Args:
        validity: Validity tag of every contour in a forest.
        areas: Net area of every contour (same order as ``validity``).
        num_bins: Number of bins, including the overflow bin.
        bin_width: Width of each bin in px.
    """
    if len(validity) != len(areas):
        raise ValueError(f"Length mismatch: {len(validity)} tags vs {len(areas)} areas")
    if num_bins < 1 or bin_width <= 0:
        raise ValueError(f"Invalid histogram layout: {num_bins} bins of width {bin_width}")

    counts = [0] * num_bins
    for tag, area in zip(validity, areas):
        if tag != ContourValidity.PARENT:
            continue
        index = min(max(round_half_up(area), 0) // bin_width, num_bins - 1)
        counts[index] += 1
    return AreaHistogram(bin_width=bin_width, counts=counts)
