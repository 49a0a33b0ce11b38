"""
Preprocessing Module
====================
Turns raw 8-bit fluorescence planes into binary foreground masks and
flattens per-layer masks of a z-stack into merged masks.
"""

import cv2
import numpy as np
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from functools import reduce
from typing import Dict, List, Sequence, Tuple, Union
from config import PipelineConfig, EnhancementProfile


class ChannelKind(Enum):
    """Fluorescence channel of a raster plane."""
    BLUE = "blue"
    GREEN = "green"
    RED = "red"
    RED_LOW = "red_low"
    RED_HIGH = "red_high"

    @property
    def is_red_family(self) -> bool:
        return self in (ChannelKind.RED, ChannelKind.RED_LOW, ChannelKind.RED_HIGH)


class InvalidChannelKind(ValueError):
    """Raised when a plane is tagged with a channel kind that has no profile."""


def as_channel_kind(kind: Union[ChannelKind, str]) -> ChannelKind:
    """Coerce a ChannelKind or its string value, raising InvalidChannelKind."""
    if isinstance(kind, ChannelKind):
        return kind
    try:
        return ChannelKind(kind)
    except ValueError:
        raise InvalidChannelKind(f"Invalid channel type: {kind!r}") from None


@dataclass
class RasterChannel:
    """A single 8-bit intensity plane of one z-layer."""
    plane: np.ndarray
    kind: ChannelKind
    z_index: int = 0

    @property
    def shape(self) -> Tuple[int, int]:
        return self.plane.shape[:2]


def split_layer(image: np.ndarray, z_index: int = 0) -> Dict[ChannelKind, RasterChannel]:
    """
    Split one BGR z-layer into its blue, green and red planes.

    Grayscale layers are rejected: the pipeline needs three channels.
    """
    if image.ndim != 3 or image.shape[2] != 3:
        raise ValueError(f"Expected a 3-channel BGR layer, got shape {image.shape}")
    blue, green, red = cv2.split(image)
    return {
        ChannelKind.BLUE: RasterChannel(blue, ChannelKind.BLUE, z_index),
        ChannelKind.GREEN: RasterChannel(green, ChannelKind.GREEN, z_index),
        ChannelKind.RED: RasterChannel(red, ChannelKind.RED, z_index),
    }


class ChannelEnhancer:
    """
    Converts raw intensity planes into 0/255 foreground masks.

    Steps for every channel kind:
    1. Zero out pixels at or below the profile's low threshold
    2. Invert, blur with a small Gaussian kernel
    3. Binarize at the high threshold and invert back

    RED_LOW additionally keeps only the faint part of the mask: the raw
    plane is blurred, restricted to the mask and re-thresholded so that
    bright pixels drop out. RED_HIGH uses a higher low threshold and no
    secondary pass.
    """

    def __init__(self, config: PipelineConfig):
        self.config = config

    def profile_for(self, kind: Union[ChannelKind, str]) -> EnhancementProfile:
        kind = as_channel_kind(kind)
        return getattr(self.config.enhancement, kind.value)

    def enhance(self, plane: np.ndarray, kind: Union[ChannelKind, str]) -> np.ndarray:
        """
        Enhance one plane.

        Args:
            plane: 2-D uint8 intensity plane (never modified).
            kind: Channel kind selecting the enhancement profile.

        Returns:
            New uint8 mask with values 0 and 255.
        """
        profile = self.profile_for(kind)
        ksize = self._kernel_size(profile.blur_kernel)

        _, zeroed = cv2.threshold(plane, profile.low_threshold, 255, cv2.THRESH_TOZERO)
        inverted = cv2.bitwise_not(zeroed)
        blurred = cv2.GaussianBlur(inverted, (ksize, ksize), 0, 0)
        _, binary = cv2.threshold(blurred, profile.high_threshold, 255, cv2.THRESH_BINARY)
        mask = cv2.bitwise_not(binary)

        if profile.faint_ceiling is not None:
            mask = self._faint_signal(plane, mask, profile.faint_ceiling, ksize)

        return mask

    def enhance_channel(self, channel: RasterChannel) -> np.ndarray:
        return self.enhance(channel.plane, channel.kind)

    def enhance_layers(self, planes: Sequence[np.ndarray],
                       kind: Union[ChannelKind, str],
                       parallel: bool = False) -> List[np.ndarray]:
        """Enhance every layer of one channel, preserving layer order."""
        kind = as_channel_kind(kind)
        if parallel and len(planes) > 1:
            with ThreadPoolExecutor() as executor:
                return list(executor.map(lambda p: self.enhance(p, kind), planes))
        return [self.enhance(p, kind) for p in planes]

    @staticmethod
    def _faint_signal(plane: np.ndarray, mask: np.ndarray,
                      ceiling: int, ksize: int) -> np.ndarray:
        blurred = cv2.GaussianBlur(plane, (ksize, ksize), 0, 0)
        restricted = cv2.bitwise_and(blurred, blurred, mask=mask)
        _, faint = cv2.threshold(restricted, ceiling, 255, cv2.THRESH_BINARY_INV)
        return cv2.bitwise_and(faint, mask)

    @staticmethod
    def _kernel_size(size: int) -> int:
        size = max(1, int(size))
        if size % 2 == 0:
            size += 1
        return size


class ZStackMerger:
    """
    Flattens per-layer masks with a pixelwise OR.

    Layers are merged in consecutive groups of ``group_size``; a trailing
    partial group still yields a merged mask. A group size of 0 (or less)
    merges the whole stack into one mask.
    """

    def __init__(self, group_size: int = 0):
        self.group_size = group_size

    def groups(self, count: int) -> List[Tuple[int, int]]:
        """Half-open (start, stop) layer ranges for a stack of ``count`` layers."""
        if count <= 0:
            return []
        size = self.group_size if self.group_size > 0 else count
        return [(start, min(start + size, count)) for start in range(0, count, size)]

    def merge(self, masks: Sequence[np.ndarray]) -> List[np.ndarray]:
        """Return one merged mask per group of layers."""
        return [self.union(masks[start:stop]) for start, stop in self.groups(len(masks))]

    @staticmethod
    def union(masks: Sequence[np.ndarray]) -> np.ndarray:
        """OR together a non-empty sequence of equally sized masks."""
        if not masks:
            raise ValueError("Cannot merge an empty group of masks")
        shape = masks[0].shape
        for m in masks[1:]:
            if m.shape != shape:
                raise ValueError(f"Mask shape mismatch: {m.shape} vs {shape}")
        return reduce(ZStackMerger.accumulate, masks[1:], masks[0].copy())

    @staticmethod
    def accumulate(merged: np.ndarray, mask: np.ndarray) -> np.ndarray:
        """Fold one more layer into a running merge (returns a new mask)."""
        return cv2.bitwise_or(merged, mask)
