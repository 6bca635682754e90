#!/usr/bin/env python3
"""
Calculate beta diversity of the community data and test whether sample
groups differ in composition.

This script:
1. Loads the abundance table, grouping metadata and taxonomy
2. Removes excluded lineages and rare taxa, then rarefies to an even depth
   with a fixed seed
3. Calculates the Bray-Curtis distance matrix and its PCoA ordination
4. Runs PERMANOVA (per variable and site x month) and PERMDISP
5. Saves tables and ordination plots under the results directory

Usage:
    python scripts/02_beta_diversity.py [--config CONFIG_FILE]
"""

import argparse
import sys
from pathlib import Path

from ecodiv_tools import (
    DegenerateGroupError,
    InvalidInputError,
    load_config,
    missing_input_files,
    resolve_config_paths,
    run_beta_diversity_analysis,
    setup_logger
)

project_root = Path(__file__).resolve().parents[1]


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Calculate beta diversity and test group differences')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory for output files (default: output.results_dir from the config)')
    parser.add_argument('--seed', type=int, default=None,
                        help='Rarefaction seed (default: beta.rarefaction.seed from the config)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: logging.level from the config)')
    return parser.parse_args()


def main():
    """Main function to run the beta diversity analysis."""
    args = parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    # Paths inside the config are relative to the project directory holding config/
    config = resolve_config_paths(load_config(config_path), config_path.resolve().parent.parent)

    if args.output_dir:
        config['output']['results_dir'] = args.output_dir
    if args.seed is not None:
        config['beta']['rarefaction']['seed'] = args.seed
    if args.log_file:
        config['logging']['file'] = args.log_file
    if args.log_level:
        config['logging']['level'] = args.log_level

    logger = setup_logger(config['logging']['file'], config['logging']['level'])

    for path in missing_input_files(config, keys=('abundance_file', 'metadata_file', 'taxonomy_file')):
        logger.error(f"Input file not found: {path}")
        return 1

    try:
        results = run_beta_diversity_analysis(config)
    except (InvalidInputError, DegenerateGroupError, FileNotFoundError) as e:
        logger.error(f"Beta diversity analysis failed: {e}")
        return 1

    for var, result in results['permanova'].items():
        logger.info(f"PERMANOVA {var}: pseudo-F = {result['test-statistic']:.4f}, p-value = {result['p-value']:.4f}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
