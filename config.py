"""
Configuration for Glia Monitor Pipeline
=======================================
Adjust these parameters to match your staining protocol, microscope
gain and the cell populations you want to count.
"""

from dataclasses import dataclass, field
from typing import Optional
import json


@dataclass
class EnhancementProfile:
    """Per-channel enhancement parameters (all intensities are 0-255)."""
    # Pixels at or below this value are zeroed before anything else
    low_threshold: int = 50
    # Gaussian blur kernel size (must be odd)
    blur_kernel: int = 3
    # Binarization threshold applied to the inverted, blurred plane
    high_threshold: int = 240
    # Optional faint-signal pass: keep only mask pixels whose blurred raw
    # intensity is at or below this value
    faint_ceiling: Optional[int] = None


@dataclass
class EnhancementConfig:
    """One enhancement profile per channel kind."""
    blue: EnhancementProfile = field(default_factory=EnhancementProfile)
    green: EnhancementProfile = field(default_factory=EnhancementProfile)
    red: EnhancementProfile = field(
        default_factory=lambda: EnhancementProfile(low_threshold=5))
    red_low: EnhancementProfile = field(
        default_factory=lambda: EnhancementProfile(low_threshold=5, faint_ceiling=60))
    red_high: EnhancementProfile = field(
        default_factory=lambda: EnhancementProfile(low_threshold=40))


@dataclass
class SegmentationConfig:
    """Z-stack flattening and contour decomposition parameters."""
    # Minimum external and net area (px) for a contour to be accepted
    min_area: float = 1.0
    # Number of z-layers OR-merged into one mask (<= 0 merges the whole stack)
    merge_group_size: int = 0
    # Enhance the layers of one stack on a thread pool
    parallel_layers: bool = False


@dataclass
class ClassificationConfig:
    """Nucleus classification parameters."""
    # Coverage ratio of nucleus by (nucleus AND red) to call a microglial nucleus
    microglia_threshold: float = 0.75
    # Coverage ratio of nucleus by (nucleus AND green) to call a neural nucleus
    neural_threshold: float = 0.75
    # Contours shorter than this (closed arc length, px) are treated as noise
    min_perimeter: float = 10.0
    # Contours with fewer points than this are treated as noise
    min_points: int = 5


@dataclass
class HistogramConfig:
    """Microglia area histogram layout."""
    num_bins: int = 21
    # Width of each bin in px; the last bin collects everything above
    bin_width: int = 25


@dataclass
class ProximityConfig:
    """Microglia-neural proximity statistics."""
    enabled: bool = True
    # ROI of a microglial cell = roi_factor * mean microglial diameter
    roi_factor: float = 20.0


@dataclass
class SecondaryConfig:
    """Optional red-channel variants reported next to the main metrics."""
    # Fibre-cell overlap, high-intensity and low-intensity counts + histograms
    enabled: bool = False


@dataclass
class BatchConfig:
    """Batch processing across many z-stacks."""
    # Number of stacks processed concurrently (1 = sequential)
    max_workers: int = 1


@dataclass
class OutputConfig:
    """Output and export configuration."""
    # Root directory for per-stack raster artifacts
    export_dir: str = "./result"
    # Save per-channel enhanced/segmented masks and channel intersections
    save_debug_masks: bool = False
    # Save the flattened composite and the cell classification overlay
    save_overlays: bool = True
    # Image format for raster outputs
    image_format: str = "tif"


@dataclass
class PipelineConfig:
    """Master configuration combining all sub-configs."""
    enhancement: EnhancementConfig = field(default_factory=EnhancementConfig)
    segmentation: SegmentationConfig = field(default_factory=SegmentationConfig)
    classification: ClassificationConfig = field(default_factory=ClassificationConfig)
    histogram: HistogramConfig = field(default_factory=HistogramConfig)
    proximity: ProximityConfig = field(default_factory=ProximityConfig)
    secondary: SecondaryConfig = field(default_factory=SecondaryConfig)
    batch: BatchConfig = field(default_factory=BatchConfig)
    output: OutputConfig = field(default_factory=OutputConfig)

    def save(self, path: str):
        """Save configuration to JSON."""
        import dataclasses
        with open(path, 'w') as f:
            json.dump(dataclasses.asdict(self), f, indent=2)

    @classmethod
    def load(cls, path: str) -> 'PipelineConfig':
        """Load configuration from JSON."""
        with open(path, 'r') as f:
            data = json.load(f)
        config = cls()
        profiles = data.get('enhancement', {})
        for name, values in profiles.items():
            if not hasattr(config.enhancement, name):
                raise ValueError(f"Unknown enhancement profile: {name}")
            setattr(config.enhancement, name, EnhancementProfile(**values))
        config.segmentation = SegmentationConfig(**data.get('segmentation', {}))
        config.classification = ClassificationConfig(**data.get('classification', {}))
        config.histogram = HistogramConfig(**data.get('histogram', {}))
        config.proximity = ProximityConfig(**data.get('proximity', {}))
        config.secondary = SecondaryConfig(**data.get('secondary', {}))
        config.batch = BatchConfig(**data.get('batch', {}))
        config.output = OutputConfig(**data.get('output', {}))
        return config


# Default configuration instance
DEFAULT_CONFIG = PipelineConfig()
