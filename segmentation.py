"""
Segmentation Module
===================
Traces a binary mask into a contour forest, resolves parent/hole
structure into net areas and rejects regions below the minimum area.

Hierarchy links are kept as integer indices into the forest (-1 = none),
mirroring OpenCV's [next, previous, first_child, parent] layout.
"""

import cv2
import numpy as np
from dataclasses import dataclass, field
from enum import IntEnum
from typing import List, Tuple, Union
from preprocessing import ChannelKind, InvalidChannelKind, as_channel_kind


class ContourValidity(IntEnum):
    INVALID = 0
    CHILD = 1
    PARENT = 2


@dataclass
class ContourNode:
    """One traced boundary and its links inside the forest."""
    index: int
    points: np.ndarray
    next_sibling: int = -1
    prev_sibling: int = -1
    first_child: int = -1
    parent: int = -1

    @property
    def is_top_level(self) -> bool:
        return self.parent < 0

    @property
    def num_points(self) -> int:
        return len(self.points)


@dataclass
class ContourForest:
    """All contours of one decomposition pass with their validity and net area."""
    shape: Tuple[int, int]
    nodes: List[ContourNode] = field(default_factory=list)
    validity: List[ContourValidity] = field(default_factory=list)
    net_areas: List[float] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.nodes)

    @property
    def contours(self) -> List[np.ndarray]:
        return [n.points for n in self.nodes]

    def holes_of(self, index: int) -> List[int]:
        """Immediate holes of a contour: first child, then its siblings."""
        holes = []
        hole = self.nodes[index].first_child
        while hole > -1:
            holes.append(hole)
            hole = self.nodes[hole].next_sibling
        return holes

    def accepted_indices(self) -> List[int]:
        return [i for i, v in enumerate(self.validity) if v == ContourValidity.PARENT]

    def accepted_contours(self) -> List[np.ndarray]:
        return [self.nodes[i].points for i in self.accepted_indices()]

    def accepted_areas(self) -> List[float]:
        return [self.net_areas[i] for i in self.accepted_indices()]

    def hierarchy(self) -> np.ndarray:
        """Links in OpenCV layout, shape (1, N, 4)."""
        links = [[n.next_sibling, n.prev_sibling, n.first_child, n.parent]
                 for n in self.nodes]
        return np.array([links], dtype=np.int32).reshape(1, len(self.nodes), 4)


def contour_area(points: np.ndarray) -> float:
    """Absolute polygon (shoelace) area of a contour."""
    return float(abs(cv2.contourArea(points)))


class ContourDecomposer:
    """
    Builds a ContourForest from a binary mask.

    Blue and green masks only need the outer boundary of each blob.
    Red-family masks (glial fibres) are traced with a two-level
    parent/hole hierarchy so that enclosed background can be subtracted.
    """

    def __init__(self, min_area: float = 1.0, seed: int = 12345):
        self.min_area = min_area
        self.seed = seed

    def retrieval_mode(self, kind: Union[ChannelKind, str]) -> int:
        kind = as_channel_kind(kind)
        if kind in (ChannelKind.BLUE, ChannelKind.GREEN):
            return cv2.RETR_EXTERNAL
        if kind.is_red_family:
            return cv2.RETR_CCOMP
        raise InvalidChannelKind(f"No contour mode for channel type: {kind!r}")

    def decompose(self, mask: np.ndarray, kind: Union[ChannelKind, str]) -> ContourForest:
        """
        Trace ``mask`` and classify every contour.

        For each top-level contour the external area and the areas of its
        immediate holes are computed; holes of holes are not subtracted.
        The contour is accepted as a parent if both its external area and
        its net area reach ``min_area``; its non-empty holes are then
        tagged as children. Everything else stays invalid.
        """
        mode = self.retrieval_mode(kind)
        contours, hierarchy = cv2.findContours(mask.copy(), mode, cv2.CHAIN_APPROX_SIMPLE)

        forest = ContourForest(shape=mask.shape[:2])
        if not contours:
            return forest

        links = hierarchy.reshape(-1, 4)
        for i, points in enumerate(contours):
            nxt, prev, child, parent = (int(v) for v in links[i])
            forest.nodes.append(ContourNode(i, points, nxt, prev, child, parent))
        forest.validity = [ContourValidity.INVALID] * len(contours)
        forest.net_areas = [0.0] * len(contours)

        for node in forest.nodes:
            if not node.is_top_level:
                continue
            area_external = contour_area(node.points)
            if area_external < self.min_area:
                continue

            consumed = []
            area_holes = 0.0
            for hole in forest.holes_of(node.index):
                area_hole = contour_area(forest.nodes[hole].points)
                if area_hole:
                    consumed.append(hole)
                    area_holes += area_hole

            net_area = area_external - area_holes
            if net_area >= self.min_area:
                forest.validity[node.index] = ContourValidity.PARENT
                forest.net_areas[node.index] = net_area
                for hole in consumed:
                    forest.validity[hole] = ContourValidity.CHILD

        return forest

    def render(self, forest: ContourForest) -> np.ndarray:
        """
        Fill every accepted region (parent and its holes) with its own
        colour on a black BGR canvas. Colours are drawn from a fixed-seed
        generator, so the rendering is reproducible.
        """
        canvas = np.zeros((*forest.shape, 3), dtype=np.uint8)
        accepted = forest.accepted_indices()
        if not accepted:
            return canvas

        rng = np.random.default_rng(self.seed)
        contours = forest.contours
        hierarchy = forest.hierarchy()
        for index in accepted:
            color = tuple(int(c) for c in rng.integers(0, 255, size=3))
            cv2.drawContours(canvas, contours, index, color, cv2.FILLED,
                             cv2.LINE_8, hierarchy)
        return canvas
