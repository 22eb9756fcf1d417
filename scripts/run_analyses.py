#!/usr/bin/env python
# scripts/run_analyses.py
"""
Run the seawater-intrusion marsh microbiome analyses.

This script:
1. Loads the design, OTU, taxonomy and environmental tables
2. Reconciles sample IDs and rarefies each molecule type (DNA, cDNA)
3. Compares alpha diversity between treatments (ANOVA + Tukey)
4. Ordinates beta diversity (PCoA) and runs PERMANOVA / PERMDISP
5. Fits an RDA against the scaled environmental covariates
6. Compares sulfate reducer and methanogen relative abundance between treatments

Usage:
    python scripts/run_analyses.py [--config CONFIG_FILE] [--analysis alpha beta ...]
"""

import argparse
import logging
import sys
from pathlib import Path

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
tools_dir = project_root / 'tools'
sys.path.append(str(tools_dir))

from marsh_tools.marsh_config import load_config
from marsh_tools.marsh_logger import setup_logger, log_print
from marsh_tools.marsh_pipeline import ANALYSES, run_analyses


def parse_arguments():
    parser = argparse.ArgumentParser(description="Run microbiome analyses for the marsh salinization study")

    parser.add_argument(
        "--config",
        default="config/analysis_parameters.yml",
        help="Path to configuration file (YAML, relative to the project root)"
    )

    parser.add_argument(
        "--output-dir",
        default="results",
        help="Directory for output figures (default: results)"
    )

    parser.add_argument(
        "--analysis",
        nargs="+",
        choices=["all"] + ANALYSES,
        default=["all"],
        help="Analyses to run (default: all)"
    )

    parser.add_argument(
        "--molecule",
        nargs="+",
        choices=["DNA", "cDNA"],
        default=None,
        help="Molecule types to analyse (default: from config file)"
    )

    parser.add_argument(
        "--otu-table",
        default=None,
        help="Path to OTU table (default: from config file)"
    )

    parser.add_argument(
        "--design",
        default=None,
        help="Path to sample design table (default: from config file)"
    )

    parser.add_argument(
        "--taxonomy",
        default=None,
        help="Path to taxonomy table (default: from config file)"
    )

    parser.add_argument(
        "--environment",
        default=None,
        help="Path to environmental measurements CSV (default: from config file)"
    )

    parser.add_argument(
        "--log-file",
        default=None,
        help="Path to log file (default: log to console only)"
    )

    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level (default: INFO)"
    )

    return parser.parse_args()


def main():
    args = parse_arguments()

    setup_logger(log_file=args.log_file, log_level=getattr(logging, args.log_level))
    log_print("Starting marsh microbiome analysis", level="info")

    config_path = Path(args.config)
    if not config_path.is_absolute():
        config_path = project_root / config_path
    config = load_config(config_path)

    # Command line paths override the config file
    if args.otu_table:
        config['data']['otu_table'] = str(Path(args.otu_table).resolve())
    if args.design:
        config['data']['design_file'] = str(Path(args.design).resolve())
    if args.taxonomy:
        config['data']['taxonomy_file'] = str(Path(args.taxonomy).resolve())
    if args.environment:
        config['data']['environment_file'] = str(Path(args.environment).resolve())

    analyses = ANALYSES if "all" in args.analysis else args.analysis
    output_dir = Path(args.output_dir)
    if not output_dir.is_absolute():
        output_dir = project_root / output_dir

    try:
        run_analyses(config, output_dir, molecules=args.molecule, analyses=analyses, project_root=project_root)
    except (ValueError, FileNotFoundError) as e:
        log_print(f"Analysis failed: {e}", level="error")
        return 1

    log_print(f"Figures saved to {output_dir / 'figures'}", level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
