#!/usr/bin/env python3
"""
Calculate alpha diversity of the community data and compare it between
sample groups.

This script:
1. Loads the raw abundance table and the sample grouping metadata
2. Calculates observed richness, Chao1 (with standard error), Pielou's
   evenness and the Shannon index for every sample
3. Tests differences between groups with ANOVA (site x month) and Tukey HSD
4. Saves tables and boxplots under the results directory

Usage:
    python scripts/01_alpha_diversity.py [--config CONFIG_FILE]
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
    run_alpha_diversity_analysis,
    setup_logger
)

project_root = Path(__file__).resolve().parents[1]


def parse_args():
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(description='Calculate and compare alpha diversity')
    parser.add_argument('--config', type=str, default='config/analysis_parameters.yml',
                        help='Path to configuration file')
    parser.add_argument('--output-dir', type=str, default=None,
                        help='Directory for output files (default: output.results_dir from the config)')
    parser.add_argument('--log-file', type=str, default=None,
                        help='Path to log file (default: log to console only)')
    parser.add_argument('--log-level', type=str, default=None,
                        choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='Logging level (default: logging.level from the config)')
    return parser.parse_args()


def main():
    """Main function to run the alpha diversity analysis."""
    args = parse_args()

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    # Paths inside the config are relative to the project directory holding config/
    config = resolve_config_paths(load_config(config_path), config_path.resolve().parent.parent)

    if args.output_dir:
        config['output']['results_dir'] = args.output_dir
    if args.log_file:
        config['logging']['file'] = args.log_file
    if args.log_level:
        config['logging']['level'] = args.log_level

    logger = setup_logger(config['logging']['file'], config['logging']['level'])

    for path in missing_input_files(config):
        logger.error(f"Input file not found: {path}")
        return 1

    try:
        results = run_alpha_diversity_analysis(config)
    except (InvalidInputError, DegenerateGroupError, FileNotFoundError) as e:
        logger.error(f"Alpha diversity analysis failed: {e}")
        return 1

    logger.info(f"Alpha diversity computed for {len(results['alpha'])} samples")
    return 0


if __name__ == "__main__":
    sys.exit(main())
