"""
Multi-Stack Manager
===================
Runs the z-stack pipeline over many image stacks.

Stacks share no state, so each one is an independent task on a thread
pool. A stack that fails while loading, analyzing or exporting its
artifacts is recorded as failed and the batch moves on.
"""

import cv2
import os
import pandas as pd
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from config import PipelineConfig
from pipeline import ZStackPipeline, StackResult
from preprocessing import InvalidChannelKind
from stack_loader import StackLoadError, load_stack, stack_name


@dataclass
class StackOutcome:
    """Result of one stack in a batch."""
    stack_dir: str
    name: str
    results: List[StackResult] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.error is not None


class MultiStackManager:
    """
    Orchestrates analysis across a list of stack directories.

    - Loads each stack with ``loader`` (defaults to the TIFF layer loader)
    - Runs ZStackPipeline on it, optionally exporting raster artifacts
    - Keeps outcomes in input order, failures included
    - Builds the metrics table and the error log
    """

    def __init__(self, config: PipelineConfig,
                 loader: Callable[[str], Sequence] = load_stack):
        self.config = config
        self.loader = loader
        self.pipeline = ZStackPipeline(config)
        self.outcomes: List[StackOutcome] = []

    def process_stack(self, stack_dir: str, export: bool = False) -> StackOutcome:
        """Process one stack; expected failures are captured in the outcome."""
        name = stack_name(stack_dir)
        outcome = StackOutcome(stack_dir=str(stack_dir), name=name)
        try:
            layers = self.loader(stack_dir)
            outcome.results = self.pipeline.process_stack(layers, image=str(stack_dir))
            if export:
                output_dir = os.path.join(self.config.output.export_dir, name)
                for r in outcome.results:
                    suffix = f"_group{r.metrics.group}" if len(outcome.results) > 1 else ""
                    self.pipeline.export_artifacts(r, output_dir, suffix=suffix)
        except (InvalidChannelKind, StackLoadError, ValueError, OSError, cv2.error) as e:
            outcome.error = str(e)
        return outcome

    def process_stacks(self, stack_dirs: Sequence[str], export: bool = False,
                       verbose: bool = True) -> List[StackOutcome]:
        """
        Process every stack, ``config.batch.max_workers`` at a time.

        Returns:
            Outcomes in the same order as ``stack_dirs``.
        """
        workers = max(1, self.config.batch.max_workers)
        if verbose:
            print(f"  Processing {len(stack_dirs)} stacks with {workers} worker(s)...")

        if workers == 1:
            outcomes = []
            for d in stack_dirs:
                if verbose:
                    print(f"  Processing {d}")
                outcomes.append(self.process_stack(d, export))
        else:
            with ThreadPoolExecutor(max_workers=workers) as executor:
                futures = [executor.submit(self.process_stack, d, export) for d in stack_dirs]
                outcomes = [f.result() for f in futures]

        if verbose:
            for o in outcomes:
                if o.failed:
                    print(f"  WARNING: Could not process {o.stack_dir}: {o.error}")
            n_ok = sum(1 for o in outcomes if not o.failed)
            print(f"\n  Done! {n_ok}/{len(outcomes)} stacks processed.")

        self.outcomes.extend(outcomes)
        return outcomes

    # ---- Batch summaries ----

    def failed_stacks(self) -> List[StackOutcome]:
        return [o for o in self.outcomes if o.failed]

    def summary_dataframe(self) -> pd.DataFrame:
        """One row per processed stack group, in processing order.

        The columns follow the current config even when no stack succeeded.
        """
        rows = [r.metrics.to_row()
                for o in self.outcomes if not o.failed
                for r in o.results]
        return pd.DataFrame(rows, columns=self.pipeline.metrics_columns())

    def export_csv(self, path: str) -> pd.DataFrame:
        df = self.summary_dataframe()
        df.to_csv(path, index=False)
        return df

    def write_error_log(self, path: str):
        """Append failed stack directories, one per line."""
        with open(path, 'a') as f:
            for o in self.failed_stacks():
                f.write(f"{o.stack_dir}\n")
