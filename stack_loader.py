"""
Stack Loader
============
Locates and decodes the z-layers of one image stack.

Expected folder structure:
    <data>/<name>/
        <name>_z1c1+2+3.tif      <-- first focal plane (B, G, R channels)
        <name>_z2c1+2+3.tif
        ...

Stacks with 10 or more layers use two-digit layer numbers (z01, z02, ...).
"""

import os
import cv2
import numpy as np
from pathlib import Path
from typing import List

MAX_LAYERS = 99


class StackLoadError(IOError):
    """Raised when a stack directory cannot be turned into z-layers."""


def stack_name(stack_dir) -> str:
    """Name of a stack: its directory name."""
    return Path(stack_dir).name


def layer_filename(name: str, z_index: int, z_count: int) -> str:
    """
    File name of layer ``z_index`` (1-based) in a stack of ``z_count`` layers.
    """
    if z_count > MAX_LAYERS or z_index > MAX_LAYERS:
        raise StackLoadError(f"Does not support more than {MAX_LAYERS} z layers")
    if z_count < 10:
        return f"{name}_z{z_index}c1+2+3.tif"
    return f"{name}_z{z_index:02d}c1+2+3.tif"


def count_layers(stack_dir) -> int:
    """Number of entries in the stack directory; each is taken to be one layer."""
    if not os.path.isdir(stack_dir):
        raise StackLoadError(f"Could not open directory '{stack_dir}'")
    return len(os.listdir(stack_dir))


def get_layer_paths(stack_dir) -> List[Path]:
    """Ordered layer paths of a stack, derived from its name and size."""
    z_count = count_layers(stack_dir)
    if z_count == 0:
        raise StackLoadError(f"No layers in '{stack_dir}'")
    name = stack_name(stack_dir)
    return [Path(stack_dir) / layer_filename(name, z, z_count)
            for z in range(1, z_count + 1)]


def load_stack(stack_dir) -> List[np.ndarray]:
    """
    Decode every layer of a stack as a 3-channel BGR image.

    Returns:
        List of uint8 arrays (H, W, 3), in focal-depth order.
    """
    layers = []
    for path in get_layer_paths(stack_dir):
        img = cv2.imread(str(path), cv2.IMREAD_COLOR)
        if img is None:
            raise StackLoadError(f"Invalid input filename: {path}")
        if layers and img.shape != layers[0].shape:
            raise StackLoadError(
                f"Layer {path.name} has shape {img.shape}, expected {layers[0].shape}")
        layers.append(img)
    return layers
