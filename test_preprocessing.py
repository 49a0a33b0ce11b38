"""
Tests for channel enhancement and z-stack merging.
"""

import cv2
import numpy as np
import os
import sys
import itertools
import pytest

sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import PipelineConfig
from preprocessing import (
    ChannelEnhancer, ChannelKind, InvalidChannelKind, ZStackMerger, split_layer
)


def create_block_plane(size=80, value=200, block=(20, 40)):
    """Black plane with one bright square block."""
    plane = np.zeros((size, size), dtype=np.uint8)
    plane[block[0]:block[1], block[0]:block[1]] = value
    return plane


def random_masks(n, shape=(50, 50), seed=0):
    rng = np.random.default_rng(seed)
    return [((rng.random(shape) > 0.7) * 255).astype(np.uint8) for _ in range(n)]


def test_blue_block_becomes_foreground():
    enhancer = ChannelEnhancer(PipelineConfig())
    mask = enhancer.enhance(create_block_plane(), ChannelKind.BLUE)

    assert mask.dtype == np.uint8
    assert set(np.unique(mask)) <= {0, 255}
    assert mask[30, 30] == 255
    assert mask[0, 0] == 0
    assert mask[70, 70] == 0


def test_low_threshold_drops_dim_pixels():
    """Blue/green zero out intensities <= 50, red keeps them."""
    enhancer = ChannelEnhancer(PipelineConfig())
    dim = create_block_plane(value=40)

    assert cv2.countNonZero(enhancer.enhance(dim, ChannelKind.BLUE)) == 0
    assert cv2.countNonZero(enhancer.enhance(dim, ChannelKind.GREEN)) == 0
    assert enhancer.enhance(dim, ChannelKind.RED)[30, 30] == 255


def test_enhancement_is_deterministic_and_pure():
    enhancer = ChannelEnhancer(PipelineConfig())
    rng = np.random.default_rng(7)
    plane = rng.integers(0, 256, size=(64, 64), dtype=np.uint8)
    original = plane.copy()

    for kind in ChannelKind:
        first = enhancer.enhance(plane, kind)
        second = enhancer.enhance(plane, kind)
        assert np.array_equal(first, second), kind
    assert np.array_equal(plane, original)


def test_red_variants_split_faint_and_bright_signal():
    enhancer = ChannelEnhancer(PipelineConfig())
    plane = np.zeros((100, 100), dtype=np.uint8)
    plane[10:40, 10:40] = 30     # faint fibre
    plane[60:90, 60:90] = 200    # bright fibre

    red = enhancer.enhance(plane, ChannelKind.RED)
    low = enhancer.enhance(plane, ChannelKind.RED_LOW)
    high = enhancer.enhance(plane, ChannelKind.RED_HIGH)

    assert red[25, 25] == 255 and red[75, 75] == 255
    assert low[25, 25] == 255 and low[75, 75] == 0
    assert high[25, 25] == 0 and high[75, 75] == 255
    # The faint mask is always a subset of the primary red mask
    assert cv2.countNonZero(cv2.bitwise_and(low, cv2.bitwise_not(red))) == 0


def test_channel_kind_accepts_string_values():
    enhancer = ChannelEnhancer(PipelineConfig())
    plane = create_block_plane()
    assert np.array_equal(enhancer.enhance(plane, "red_low"),
                          enhancer.enhance(plane, ChannelKind.RED_LOW))


def test_invalid_channel_kind():
    enhancer = ChannelEnhancer(PipelineConfig())
    with pytest.raises(InvalidChannelKind):
        enhancer.enhance(create_block_plane(), "purple")
    # Still a ValueError for callers that only know the built-in
    with pytest.raises(ValueError):
        enhancer.enhance(create_block_plane(), 3)


def test_parallel_layers_match_sequential():
    enhancer = ChannelEnhancer(PipelineConfig())
    planes = [create_block_plane(value=v) for v in (60, 120, 250)]
    sequential = enhancer.enhance_layers(planes, ChannelKind.GREEN)
    parallel = enhancer.enhance_layers(planes, ChannelKind.GREEN, parallel=True)
    assert all(np.array_equal(a, b) for a, b in zip(sequential, parallel))


def test_split_layer():
    img = np.zeros((10, 12, 3), dtype=np.uint8)
    img[..., 0] = 1
    img[..., 1] = 2
    img[..., 2] = 3
    channels = split_layer(img, z_index=4)

    assert channels[ChannelKind.BLUE].plane.max() == 1
    assert channels[ChannelKind.GREEN].plane.max() == 2
    assert channels[ChannelKind.RED].plane.max() == 3
    assert channels[ChannelKind.RED].z_index == 4
    assert channels[ChannelKind.BLUE].shape == (10, 12)

    with pytest.raises(ValueError):
        split_layer(np.zeros((10, 12), dtype=np.uint8))


def test_merge_is_order_independent():
    masks = random_masks(4)
    reference = ZStackMerger.union(masks)
    for perm in itertools.permutations(masks):
        assert np.array_equal(ZStackMerger.union(list(perm)), reference)
    assert np.array_equal(reference, np.max(np.stack(masks), axis=0))


def test_merge_groups_keep_trailing_partial_group():
    masks = random_masks(5)
    merged = ZStackMerger(group_size=2).merge(masks)

    assert len(merged) == 3
    assert np.array_equal(merged[0], cv2.bitwise_or(masks[0], masks[1]))
    assert np.array_equal(merged[2], masks[4])
    assert ZStackMerger(group_size=2).groups(5) == [(0, 2), (2, 4), (4, 5)]


def test_merge_whole_stack_by_default():
    masks = random_masks(3)
    merged = ZStackMerger().merge(masks)
    assert len(merged) == 1
    assert np.array_equal(merged[0], ZStackMerger.union(masks))
    assert ZStackMerger().merge([]) == []


def test_merge_does_not_modify_inputs():
    masks = random_masks(3)
    copies = [m.copy() for m in masks]
    ZStackMerger(group_size=3).merge(masks)
    assert all(np.array_equal(a, b) for a, b in zip(masks, copies))


def test_merge_rejects_mismatched_shapes():
    with pytest.raises(ValueError):
        ZStackMerger.union([np.zeros((4, 4), np.uint8), np.zeros((5, 4), np.uint8)])
