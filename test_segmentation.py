"""
Tests for contour decomposition and area binning.
"""

import cv2
import numpy as np
import os
import sys
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from area_histogram import bin_areas, round_half_up
from preprocessing import ChannelKind, InvalidChannelKind
from segmentation import ContourDecomposer, ContourValidity, contour_area


def create_rect_with_hole(width=100, height=80, hole=20, size=200):
    """Filled width x height rectangle with one centred square hole."""
    mask = np.zeros((size, size), dtype=np.uint8)
    y0, x0 = 50, 40
    mask[y0:y0 + height, x0:x0 + width] = 255
    hy = y0 + (height - hole) // 2
    hx = x0 + (width - hole) // 2
    mask[hy:hy + hole, hx:hx + hole] = 0
    return mask


def test_rectangle_with_hole_net_area():
    forest = ContourDecomposer(min_area=1.0).decompose(create_rect_with_hole(), ChannelKind.RED)

    accepted = forest.accepted_indices()
    assert len(accepted) == 1
    parent = accepted[0]
    holes = forest.holes_of(parent)
    assert len(holes) == 1
    assert forest.validity[holes[0]] == ContourValidity.CHILD

    external = contour_area(forest.nodes[parent].points)
    hole_area = contour_area(forest.nodes[holes[0]].points)
    assert forest.net_areas[parent] == pytest.approx(external - hole_area)

    expected = 100 * 80 - 20 * 20
    assert abs(forest.net_areas[parent] - expected) <= 0.05 * expected
    # The hole is never reported as a region of its own
    assert forest.accepted_areas() == [forest.net_areas[parent]]


def test_external_mode_ignores_holes():
    forest = ContourDecomposer().decompose(create_rect_with_hole(), ChannelKind.BLUE)

    assert len(forest) == 1
    assert forest.validity == [ContourValidity.PARENT]
    assert forest.net_areas[0] == pytest.approx(contour_area(forest.nodes[0].points))


def test_thin_ring_rejected_by_net_area():
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[10:40, 10:40] = 255
    mask[13:37, 13:37] = 0

    forest = ContourDecomposer(min_area=400).decompose(mask, ChannelKind.RED)

    assert len(forest) == 2
    assert max(contour_area(n.points) for n in forest.nodes) >= 400
    assert forest.accepted_indices() == []
    assert all(v == ContourValidity.INVALID for v in forest.validity)


def test_small_regions_rejected_by_external_area():
    mask = np.zeros((60, 60), dtype=np.uint8)
    mask[5:8, 5:8] = 255        # contour area 4
    mask[20:50, 20:50] = 255    # contour area 841

    forest = ContourDecomposer(min_area=10).decompose(mask, ChannelKind.GREEN)

    assert len(forest) == 2
    assert len(forest.accepted_indices()) == 1
    assert forest.accepted_areas()[0] == pytest.approx(29 * 29)


def test_island_inside_hole_is_not_subtracted():
    """Holes of holes are top-level regions of their own, never nested sums."""
    mask = np.zeros((200, 200), dtype=np.uint8)
    mask[20:180, 20:180] = 255
    mask[60:140, 60:140] = 0
    mask[80:120, 80:120] = 255

    forest = ContourDecomposer().decompose(mask, ChannelKind.RED_HIGH)

    accepted = forest.accepted_indices()
    assert len(accepted) == 2
    outer = max(accepted, key=lambda i: forest.net_areas[i])
    holes = forest.holes_of(outer)
    assert len(holes) == 1
    expected = contour_area(forest.nodes[outer].points) - \
        contour_area(forest.nodes[holes[0]].points)
    assert forest.net_areas[outer] == pytest.approx(expected)


def test_empty_mask_gives_empty_forest():
    decomposer = ContourDecomposer()
    forest = decomposer.decompose(np.zeros((30, 40), dtype=np.uint8), ChannelKind.RED)

    assert len(forest) == 0
    assert forest.accepted_indices() == []
    rendering = decomposer.render(forest)
    assert rendering.shape == (30, 40, 3)
    assert not rendering.any()


def test_render_fills_accepted_regions_reproducibly():
    mask = create_rect_with_hole()
    decomposer = ContourDecomposer()
    forest = decomposer.decompose(mask, ChannelKind.RED)

    first = decomposer.render(forest)
    second = ContourDecomposer().render(forest)
    assert np.array_equal(first, second)
    assert first[55, 45].any()
    assert not first[0, 0].any()


def test_decompose_does_not_modify_mask():
    mask = create_rect_with_hole()
    original = mask.copy()
    ContourDecomposer().decompose(mask, ChannelKind.RED)
    assert np.array_equal(mask, original)


def test_decompose_invalid_kind():
    with pytest.raises(InvalidChannelKind):
        ContourDecomposer().decompose(np.zeros((10, 10), np.uint8), "ultraviolet")


# ---- Area histogram ----

def test_histogram_counts_only_accepted_parents():
    P, C, I = ContourValidity.PARENT, ContourValidity.CHILD, ContourValidity.INVALID
    validity = [P, C, I, P, P, P]
    areas = [24.4, 5.0, 3.0, 25.0, 9999.0, 24.5]

    hist = bin_areas(validity, areas, num_bins=21, bin_width=25)

    assert hist.num_bins == 21
    assert hist.counts[0] == 1      # 24.4 -> 24
    assert hist.counts[1] == 2      # 25 (boundary) and 24.5 -> 25
    assert hist.counts[20] == 1     # overflow
    assert hist.total == 4 == sum(hist.counts)


def test_histogram_matches_forest():
    mask = np.zeros((300, 300), dtype=np.uint8)
    for i, side in enumerate((4, 8, 12, 30, 60)):
        x = 10 + i * 55
        mask[10:10 + side, x:x + side] = 255
    forest = ContourDecomposer().decompose(mask, ChannelKind.RED)

    hist = bin_areas(forest.validity, forest.net_areas)
    assert hist.total == len(forest.accepted_indices()) == 5


def test_histogram_labels():
    hist = bin_areas([], [], num_bins=3, bin_width=10)
    assert hist.counts == [0, 0, 0]
    assert hist.labels() == [
        "0 <= microglia area < 10",
        "10 <= microglia area < 20",
        "microglia area >= 20",
    ]


def test_histogram_rejects_bad_input():
    with pytest.raises(ValueError):
        bin_areas([ContourValidity.PARENT], [1.0, 2.0])
    with pytest.raises(ValueError):
        bin_areas([], [], num_bins=0)
    with pytest.raises(ValueError):
        bin_areas([], [], bin_width=0)


def test_round_half_up():
    assert round_half_up(0.5) == 1
    assert round_half_up(2.5) == 3
    assert round_half_up(2.49) == 2
