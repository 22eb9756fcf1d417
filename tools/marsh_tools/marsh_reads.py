"""
Split interleaved paired-end FASTQ files into per-mate files with seqtk.

The sample key is a CSV of ``sample,filename`` rows; every row produces
``<sample>_R<mate>.fastq`` in the output directory.
"""

import re
import shutil
import subprocess
from pathlib import Path

from .marsh_logger import log_print


KEY_ALLOWED = re.compile(r'[^0-9A-Za-z.,_]')


def sanitize_key_line(line):
    """Drop every character except letters, digits, '.', ',' and '_'."""
    return KEY_ALLOWED.sub('', line)


def read_sample_key(key_file):
    """
    Read the sample key.

    Returns:
    --------
    list of (str, str)
        (sample, filename) pairs in file order; blank lines are skipped
    """
    pairs = []
    with open(key_file, 'r') as handle:
        for line_number, raw_line in enumerate(handle, start=1):
            line = sanitize_key_line(raw_line)
            if not line:
                continue
            fields = line.split(',')
            if len(fields) < 2 or not fields[0] or not fields[1]:
                raise ValueError(f"{key_file}:{line_number}: expected 'sample,filename', got {raw_line.strip()!r}")
            pairs.append((fields[0], fields[1]))
    return pairs


def output_fastq_name(sample, mate):
    """File name of one mate of a deinterleaved sample."""
    return f"{sample}_R{mate}.fastq"


def seqtk_command(filename, mate, seqtk='seqtk'):
    """seqtk call writing one mate of an interleaved file as single-line FASTQ."""
    if mate not in (1, 2):
        raise ValueError(f"Mate must be 1 or 2, got {mate}")
    return [seqtk, 'seq', '-l0', f'-{mate}', str(filename)]


def deinterleave_sample(sample, filename, output_dir, mates=(1,), seqtk='seqtk', input_dir=None):
    """
    Write the requested mates of one interleaved FASTQ file.

    Returns:
    --------
    list of Path
        Files written
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    source = Path(input_dir) / filename if input_dir else Path(filename)

    written = []
    for mate in mates:
        out_path = output_dir / output_fastq_name(sample, mate)
        with open(out_path, 'w') as out_handle:
            subprocess.run(seqtk_command(source, mate, seqtk), stdout=out_handle, check=True)
        written.append(out_path)
    return written


def deinterleave_from_key(key_file, output_dir, mates=(1,), seqtk='seqtk', input_dir=None):
    """
    Deinterleave every file listed in the sample key.

    A missing seqtk executable or a failing seqtk call stops the run.
    """
    if shutil.which(seqtk) is None:
        raise FileNotFoundError(f"seqtk executable not found: {seqtk}")

    written = []
    for sample, filename in read_sample_key(key_file):
        log_print(f"Deinterleaving {sample} ({filename})", level="info")
        written.extend(deinterleave_sample(sample, filename, output_dir, mates=mates,
                                           seqtk=seqtk, input_dir=input_dir))
    return written
