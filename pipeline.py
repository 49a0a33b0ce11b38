"""
Main Pipeline — Quantifies nuclei and glial fibres in one z-stack.
==================================================================

Data flow per stack:
    raw layers -> enhance (per layer, per channel) -> OR-merge per group
    -> contour decomposition (per channel) -> channel intersections
    -> nucleus classification (microglial / neural / other)
    -> microglia area histogram + proximity statistics -> metrics record

Usage:
    # Analyze one stack directory
    python pipeline.py --stack ./data/sample_01 --output ./result

    # Merge every 3 layers instead of flattening the whole stack
    python pipeline.py --stack ./data/sample_01 --group-size 3
"""

import cv2
import numpy as np
import pandas as pd
import os
import argparse
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

from config import PipelineConfig
from preprocessing import ChannelKind, ChannelEnhancer, ZStackMerger, split_layer
from segmentation import ContourDecomposer, ContourForest
from area_histogram import AreaHistogram, bin_areas
from cell_classifier import classify_nuclei, NucleusPopulations
from proximity import ProximityAnalyzer, ProximityStatistic
from overlay import render_classification, render_composite
from stack_loader import load_stack, stack_name

# Secondary histograms: key -> column prefix
SECONDARY_NAMES = {
    'fibre_cell': 'fibre-cell overlap',
    'high': 'high-intensity microglia',
    'low': 'low-intensity microglia',
}


@dataclass
class StackMetrics:
    """Counts for one stack (or one merged group of its layers)."""
    image: str
    group: int
    # 1-based, inclusive layer range covered by the group
    first_layer: int
    last_layer: int
    microglial_nuclei: int
    neural_nuclei: int
    other_nuclei: int
    rejected_nuclei: int
    microglia_histogram: AreaHistogram
    proximity: Optional[ProximityStatistic] = None
    secondary: Dict[str, AreaHistogram] = field(default_factory=dict)

    @property
    def total_nuclei(self) -> int:
        return self.microglial_nuclei + self.neural_nuclei + self.other_nuclei

    @property
    def microglia_count(self) -> int:
        return self.microglia_histogram.total

    def to_row(self) -> Dict[str, object]:
        """Flat record in CSV column order."""
        row = {
            'image': self.image,
            'group': self.group,
            'first layer': self.first_layer,
            'last layer': self.last_layer,
            'total nuclei count': self.total_nuclei,
            'microglial nuclei count': self.microglial_nuclei,
            'neural nuclei count': self.neural_nuclei,
            'other nuclei count': self.other_nuclei,
            'rejected nuclei count': self.rejected_nuclei,
            'microglia count': self.microglia_count,
        }
        row.update(self.microglia_histogram.as_dict("microglia"))

        if self.proximity is not None:
            row['microglia proximity mean'] = self.proximity.mean
            row['microglia proximity stddev'] = self.proximity.stddev
            row['microglia proximity empty'] = self.proximity.empty

        for key, hist in self.secondary.items():
            name = SECONDARY_NAMES[key]
            row[f'{name} count'] = hist.total
            row.update(hist.as_dict(name))
        return row


@dataclass
class StackArtifacts:
    """Raster outputs of one group, keyed by name."""
    enhanced: Dict[str, np.ndarray] = field(default_factory=dict)
    segmented: Dict[str, np.ndarray] = field(default_factory=dict)
    intersections: Dict[str, np.ndarray] = field(default_factory=dict)
    composite: Optional[np.ndarray] = None
    classification: Optional[np.ndarray] = None


@dataclass
class StackResult:
    metrics: StackMetrics
    artifacts: StackArtifacts
    populations: NucleusPopulations


class ZStackPipeline:
    """
    Analyze one multi-channel z-stack.

    Channel roles:
    - blue: nuclei
    - red: microglia marker and fibres
    - green: neural marker

    Workflow:
    1. Split every layer into B, G, R planes
    2. Enhance each plane, OR-merge layers per group
    3. Decompose blue, green and red masks into contour forests
    4. Classify accepted nuclei (microglial, then neural, then other)
    5. Bin the accepted red contours by net area
    6. Neural-nucleus counts around each microglial nucleus
    """

    def __init__(self, config: PipelineConfig = None):
        if config is None:
            config = PipelineConfig()
        self.config = config
        self.enhancer = ChannelEnhancer(config)
        self.merger = ZStackMerger(config.segmentation.merge_group_size)
        self.decomposer = ContourDecomposer(config.segmentation.min_area)
        self.proximity = ProximityAnalyzer(config.proximity.roi_factor)

    def channel_kinds(self) -> List[ChannelKind]:
        kinds = [ChannelKind.BLUE, ChannelKind.GREEN, ChannelKind.RED]
        if self.config.secondary.enabled:
            kinds += [ChannelKind.RED_HIGH, ChannelKind.RED_LOW]
        return kinds

    def merge_channels(self, layers: Sequence[np.ndarray]) -> Dict[ChannelKind, List[np.ndarray]]:
        """Enhanced, merged masks per channel kind (one mask per group)."""
        channels = [split_layer(img, z) for z, img in enumerate(layers)]
        parallel = self.config.segmentation.parallel_layers

        merged = {}
        for kind in self.channel_kinds():
            source = ChannelKind.RED if kind.is_red_family else kind
            planes = [c[source].plane for c in channels]
            masks = self.enhancer.enhance_layers(planes, kind, parallel=parallel)
            merged[kind] = self.merger.merge(masks)
        return merged

    def process_stack(self, layers: Sequence[np.ndarray], image: str = "") -> List[StackResult]:
        """
        Process all layers of one stack.

        Args:
            layers: BGR uint8 images of identical size, in focal-depth order.
            image: Identifier copied into the metrics records.

        Returns:
            One StackResult per merged group of layers.
        """
        if len(layers) == 0:
            return []

        merged = self.merge_channels(layers)
        results = []
        for g, (start, stop) in enumerate(self.merger.groups(len(layers))):
            masks = {kind: groups[g] for kind, groups in merged.items()}
            results.append(self.process_group(masks, image=image, group=g,
                                              first_layer=start + 1, last_layer=stop))
        return results

    def process_group(self, masks: Dict[ChannelKind, np.ndarray], image: str = "",
                      group: int = 0, first_layer: int = 1,
                      last_layer: int = 1) -> StackResult:
        """Segment, classify and measure one set of merged channel masks."""
        blue = masks[ChannelKind.BLUE]
        green = masks[ChannelKind.GREEN]
        red = masks[ChannelKind.RED]

        forests = {
            'blue': self.decomposer.decompose(blue, ChannelKind.BLUE),
            'green': self.decomposer.decompose(green, ChannelKind.GREEN),
            'red': self.decomposer.decompose(red, ChannelKind.RED),
        }

        blue_red = cv2.bitwise_and(blue, red)
        blue_green = cv2.bitwise_and(blue, green)
        populations = classify_nuclei(forests['blue'].accepted_contours(),
                                      blue_red, blue_green, self.config)

        proximity = None
        if self.config.proximity.enabled:
            proximity = self.proximity.analyze(
                [c.points for c in populations.microglial],
                [c.points for c in populations.neural],
            )

        metrics = StackMetrics(
            image=image,
            group=group,
            first_layer=first_layer,
            last_layer=last_layer,
            microglial_nuclei=len(populations.microglial),
            neural_nuclei=len(populations.neural),
            other_nuclei=len(populations.remaining),
            rejected_nuclei=populations.rejected,
            microglia_histogram=self._bin(forests['red']),
            proximity=proximity,
            secondary=self._secondary_histograms(masks),
        )

        artifacts = StackArtifacts(
            enhanced={'blue': blue, 'green': green, 'red': red},
            segmented={name: self.decomposer.render(f) for name, f in forests.items()},
            intersections={'blue_red': blue_red, 'blue_green': blue_green},
            composite=render_composite(blue, green, red),
            classification=render_classification(
                blue,
                [c.points for c in populations.microglial],
                [c.points for c in populations.neural],
            ),
        )
        return StackResult(metrics, artifacts, populations)

    def metrics_columns(self) -> List[str]:
        """CSV header for the current configuration, independent of any stack."""
        hist_cfg = self.config.histogram

        def empty_histogram():
            return AreaHistogram(hist_cfg.bin_width, [0] * hist_cfg.num_bins)

        secondary = {}
        if self.config.secondary.enabled:
            secondary = {key: empty_histogram() for key in SECONDARY_NAMES}
        record = StackMetrics(
            image="", group=0, first_layer=0, last_layer=0,
            microglial_nuclei=0, neural_nuclei=0, other_nuclei=0, rejected_nuclei=0,
            microglia_histogram=empty_histogram(),
            proximity=ProximityStatistic() if self.config.proximity.enabled else None,
            secondary=secondary,
        )
        return list(record.to_row())

    def _bin(self, forest: ContourForest) -> AreaHistogram:
        hist_cfg = self.config.histogram
        return bin_areas(forest.validity, forest.net_areas,
                         hist_cfg.num_bins, hist_cfg.bin_width)

    def _secondary_histograms(self, masks: Dict[ChannelKind, np.ndarray]) -> Dict[str, AreaHistogram]:
        if not self.config.secondary.enabled:
            return {}
        fibre_cell = cv2.bitwise_and(masks[ChannelKind.RED], masks[ChannelKind.BLUE])
        sources = {
            'fibre_cell': fibre_cell,
            'high': masks.get(ChannelKind.RED_HIGH),
            'low': masks.get(ChannelKind.RED_LOW),
        }
        return {key: self._bin(self.decomposer.decompose(mask, ChannelKind.RED))
                for key, mask in sources.items() if mask is not None}

    def export_artifacts(self, result: StackResult, output_dir: str,
                         suffix: str = "") -> List[str]:
        """
        Write the raster artifacts of one group.

        Returns:
            Paths of the files written.
        """
        out_cfg = self.config.output
        os.makedirs(output_dir, exist_ok=True)
        ext = out_cfg.image_format
        art = result.artifacts

        images = {}
        if out_cfg.save_debug_masks:
            for name, mask in art.enhanced.items():
                images[f"{name}_layer_merged_enhanced"] = mask
            for name, seg in art.segmented.items():
                images[f"{name}_layer_merged_enhanced_segmented"] = seg
            for name, mask in art.intersections.items():
                images[f"{name}_layers_merged_enhanced"] = mask
        if out_cfg.save_overlays:
            images["original_enhanced_and_flatened"] = art.composite
            images["cell_classification"] = art.classification

        written = []
        for name, img in images.items():
            path = os.path.join(output_dir, f"{name}{suffix}.{ext}")
            ok = cv2.imwrite(path, img)
            if not ok:
                print(f"  WARNING: Could not write {path}")
                continue
            written.append(path)
        return written


def metrics_dataframe(results: Sequence[StackResult],
                      columns: Optional[List[str]] = None) -> pd.DataFrame:
    return pd.DataFrame([r.metrics.to_row() for r in results], columns=columns)


# ============================================================
# CLI ENTRY POINT
# ============================================================

def apply_overrides(config: PipelineConfig, args) -> PipelineConfig:
    """Apply the CLI flags shared by the single-stack and batch tools."""
    if args.group_size is not None:
        config.segmentation.merge_group_size = args.group_size
    if args.min_area is not None:
        config.segmentation.min_area = args.min_area
    if args.microglia_threshold is not None:
        config.classification.microglia_threshold = args.microglia_threshold
    if args.neural_threshold is not None:
        config.classification.neural_threshold = args.neural_threshold
    if args.secondary:
        config.secondary.enabled = True
    if args.debug_masks:
        config.output.save_debug_masks = True
    return config


def add_common_arguments(parser: argparse.ArgumentParser):
    parser.add_argument('--config', default=None,
                        help='Path to JSON config file')
    parser.add_argument('--group-size', type=int, default=None,
                        help='Layers merged per group (0 = whole stack)')
    parser.add_argument('--min-area', type=float, default=None,
                        help='Override minimum contour area (pixels)')
    parser.add_argument('--microglia-threshold', type=float, default=None,
                        help='Override microglial coverage ratio threshold')
    parser.add_argument('--neural-threshold', type=float, default=None,
                        help='Override neural coverage ratio threshold')
    parser.add_argument('--secondary', action='store_true',
                        help='Also report fibre-cell overlap, high and low intensity metrics')
    parser.add_argument('--debug-masks', action='store_true',
                        help='Save enhanced, segmented and intersection masks')


def main():
    parser = argparse.ArgumentParser(
        description='Glia Monitor — nucleus classification and microglia quantification'
    )
    parser.add_argument('--stack', required=True,
                        help='Directory holding the z-layers of one stack')
    parser.add_argument('--output', default=None,
                        help='Directory for raster outputs (default: config export_dir)')
    parser.add_argument('--csv', default=None,
                        help='Optional path for the metrics CSV')
    add_common_arguments(parser)

    args = parser.parse_args()

    if args.config:
        config = PipelineConfig.load(args.config)
    else:
        config = PipelineConfig()
    config = apply_overrides(config, args)

    name = stack_name(args.stack)
    output_dir = args.output or os.path.join(config.output.export_dir, name)

    print(f"Glia Monitor Pipeline v1.0")
    print(f"=" * 50)
    print(f"Stack: {args.stack}")
    print(f"Output: {output_dir}")
    print(f"=" * 50)

    layers = load_stack(args.stack)
    print(f"  Loaded {len(layers)} layers")

    pipeline = ZStackPipeline(config)
    results = pipeline.process_stack(layers, image=name)

    for r in results:
        m = r.metrics
        suffix = f"_group{m.group}" if len(results) > 1 else ""
        pipeline.export_artifacts(r, output_dir, suffix=suffix)
        print(f"  Layers {m.first_layer}-{m.last_layer} | nuclei: {m.total_nuclei} "
              f"(microglial {m.microglial_nuclei}, neural {m.neural_nuclei}, "
              f"other {m.other_nuclei}) | microglia: {m.microglia_count}")

    if args.csv:
        metrics_dataframe(results, pipeline.metrics_columns()).to_csv(args.csv, index=False)
        print(f"  Saved metrics: {args.csv}")

    print("\nDone!")


if __name__ == '__main__':
    main()
