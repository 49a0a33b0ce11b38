"""
analyze_experiment.py — Run the pipeline over a list of image stacks
====================================================================

Reads stack names (one per line) from a list file, analyzes each
``DATA_PATH/<name>/`` stack and writes one metrics CSV for the batch.
Stacks that cannot be processed are written to the error log.

Usage:
    python analyze_experiment.py ./data/ stacks.txt errors.log metrics.csv

    # Four stacks at a time, every 3 layers merged separately
    python analyze_experiment.py ./data/ stacks.txt errors.log metrics.csv \
        --workers 4 --group-size 3
"""

import os
import sys
import argparse
from pathlib import Path
from typing import List

from config import PipelineConfig
from multi_stack import MultiStackManager
from pipeline import add_common_arguments, apply_overrides


def read_stack_list(list_file: str, data_path: str) -> List[str]:
    """Stack directories named in ``list_file``, resolved against ``data_path``."""
    with open(list_file) as f:
        names = [line.strip() for line in f]
    return [os.path.join(data_path, n) for n in names if n]


def main():
    parser = argparse.ArgumentParser(
        description='Analyze a batch of fluorescence z-stacks'
    )
    parser.add_argument('data_path', help='Directory containing the stack folders')
    parser.add_argument('list_file', help='Text file with one stack folder name per line')
    parser.add_argument('error_log', help='File receiving the stacks that failed')
    parser.add_argument('output_csv', help='Metrics CSV to create')
    parser.add_argument('--workers', type=int, default=None,
                        help='Number of stacks processed concurrently')
    parser.add_argument('--results', default=None,
                        help='Directory for raster outputs (default: config export_dir)')
    parser.add_argument('--no-images', action='store_true',
                        help='Skip writing raster outputs')
    add_common_arguments(parser)

    args = parser.parse_args()

    if args.config:
        config = PipelineConfig.load(args.config)
    else:
        config = PipelineConfig()
    config = apply_overrides(config, args)
    if args.workers is not None:
        config.batch.max_workers = args.workers
    if args.results:
        config.output.export_dir = args.results

    if not Path(args.list_file).exists():
        print(f"ERROR: Could not open the file list: {args.list_file}")
        sys.exit(1)
    stack_dirs = read_stack_list(args.list_file, args.data_path)
    if not stack_dirs:
        print("No stacks to analyze.")
        return

    print(f"Stacks: {len(stack_dirs)}")
    print(f"  Metrics: {args.output_csv}")
    print(f"  Errors:  {args.error_log}")

    manager = MultiStackManager(config)
    manager.process_stacks(stack_dirs, export=not args.no_images)

    df = manager.export_csv(args.output_csv)
    print(f"  Saved metrics for {len(df)} record(s): {args.output_csv}")

    # Start a fresh error log for this run
    open(args.error_log, 'w').close()
    manager.write_error_log(args.error_log)
    failed = manager.failed_stacks()
    if failed:
        print(f"  {len(failed)} stack(s) failed, see {args.error_log}")

    print("\nDone!")


if __name__ == '__main__':
    main()
