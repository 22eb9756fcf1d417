#!/usr/bin/env python
# scripts/deinterleave_fastq.py
"""
Deinterleave paired-end FASTQ files listed in a sample key.

The key is a CSV of 'sample,filename' rows; each file is split with
'seqtk seq -l0 -1' (and '-2' when requested) into <sample>_R1.fastq / _R2.fastq.

Usage:
    python scripts/deinterleave_fastq.py --key cDNA-key.csv [--mates 1 2]
"""

import argparse
import logging
import subprocess
import sys
from pathlib import Path

# Add tools directory to Python path
project_root = Path(__file__).resolve().parents[1]
sys.path.append(str(project_root / 'tools'))

from marsh_tools.marsh_logger import setup_logger, log_print
from marsh_tools.marsh_reads import deinterleave_from_key


def parse_arguments():
    parser = argparse.ArgumentParser(description="Split interleaved FASTQ files with seqtk")

    parser.add_argument(
        "--key",
        default="cDNA-key.csv",
        help="CSV of sample,filename pairs (default: cDNA-key.csv)"
    )

    parser.add_argument(
        "--input-dir",
        default=None,
        help="Directory holding the interleaved files (default: paths as written in the key)"
    )

    parser.add_argument(
        "--output-dir",
        default=".",
        help="Directory for the deinterleaved files (default: current directory)"
    )

    parser.add_argument(
        "--mates",
        nargs="+",
        type=int,
        choices=[1, 2],
        default=[1],
        help="Mates to write (default: 1)"
    )

    parser.add_argument(
        "--seqtk",
        default="seqtk",
        help="seqtk executable (default: seqtk)"
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

    if not Path(args.key).exists():
        log_print(f"Error: sample key not found: {args.key}", level="error")
        return 1

    try:
        written = deinterleave_from_key(args.key, args.output_dir, mates=tuple(args.mates),
                                        seqtk=args.seqtk, input_dir=args.input_dir)
    except (FileNotFoundError, ValueError, subprocess.CalledProcessError) as e:
        log_print(f"Error: {e}", level="error")
        return 1

    log_print(f"Wrote {len(written)} FASTQ files to {args.output_dir}", level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
