import subprocess

import pytest

from marsh_tools import marsh_reads
from marsh_tools.marsh_reads import (
    deinterleave_from_key,
    deinterleave_sample,
    output_fastq_name,
    read_sample_key,
    sanitize_key_line,
    seqtk_command,
)


class FakeRun:
    """Stands in for subprocess.run and records the seqtk calls."""

    def __init__(self):
        self.calls = []

    def __call__(self, cmd, stdout=None, check=False):
        self.calls.append(cmd)
        stdout.write(f"@read from {cmd[-1]} mate {cmd[3]}\n")
        return subprocess.CompletedProcess(cmd, 0)


def test_sanitize_key_line():
    assert sanitize_key_line('S1, reads one.fastq\r\n') == 'S1,readsone.fastq'
    assert sanitize_key_line('C1-6/3\t,x.fq') == 'C163,x.fq'


def test_read_sample_key(tmp_path):
    key = tmp_path / 'cDNA-key.csv'
    key.write_text('CT1_6_3_15,lane1_CT1.fastq\r\n\nPU2_6_3_15 , lane1_PU2.fastq\n')
    assert read_sample_key(key) == [
        ('CT1_6_3_15', 'lane1_CT1.fastq'),
        ('PU2_6_3_15', 'lane1_PU2.fastq'),
    ]


def test_read_sample_key_rejects_malformed_rows(tmp_path):
    key = tmp_path / 'key.csv'
    key.write_text('CT1_6_3_15,lane1.fastq\nPU2_6_3_15\n')
    with pytest.raises(ValueError, match=':2:'):
        read_sample_key(key)


def test_seqtk_command():
    assert seqtk_command('in.fastq', 1) == ['seqtk', 'seq', '-l0', '-1', 'in.fastq']
    assert seqtk_command('in.fastq', 2, seqtk='/opt/seqtk') == ['/opt/seqtk', 'seq', '-l0', '-2', 'in.fastq']
    with pytest.raises(ValueError):
        seqtk_command('in.fastq', 3)


def test_output_fastq_name():
    assert output_fastq_name('CT1_6_3_15', 1) == 'CT1_6_3_15_R1.fastq'


def test_deinterleave_sample_writes_each_mate(tmp_path, monkeypatch):
    fake_run = FakeRun()
    monkeypatch.setattr(marsh_reads.subprocess, 'run', fake_run)

    written = deinterleave_sample('CT1', 'lane1.fastq', tmp_path / 'out', mates=(1, 2), input_dir='raw')
    assert [p.name for p in written] == ['CT1_R1.fastq', 'CT1_R2.fastq']
    assert fake_run.calls[0][-1].endswith('raw/lane1.fastq')
    assert fake_run.calls[1][3] == '-2'
    assert 'mate -1' in written[0].read_text()


def test_deinterleave_from_key(tmp_path, monkeypatch):
    key = tmp_path / 'key.csv'
    key.write_text('CT1,lane1_CT1.fastq\nPU2,lane1_PU2.fastq\n')
    fake_run = FakeRun()
    monkeypatch.setattr(marsh_reads.shutil, 'which', lambda name: f'/usr/bin/{name}')
    monkeypatch.setattr(marsh_reads.subprocess, 'run', fake_run)

    written = deinterleave_from_key(key, tmp_path)
    assert [p.name for p in written] == ['CT1_R1.fastq', 'PU2_R1.fastq']
    assert [call[-1] for call in fake_run.calls] == ['lane1_CT1.fastq', 'lane1_PU2.fastq']


def test_deinterleave_from_key_requires_seqtk(tmp_path, monkeypatch):
    key = tmp_path / 'key.csv'
    key.write_text('CT1,lane1_CT1.fastq\n')
    monkeypatch.setattr(marsh_reads.shutil, 'which', lambda name: None)
    with pytest.raises(FileNotFoundError, match='seqtk'):
        deinterleave_from_key(key, tmp_path)


def test_failed_seqtk_call_propagates(tmp_path, monkeypatch):
    def failing_run(cmd, stdout=None, check=False):
        raise subprocess.CalledProcessError(1, cmd)

    monkeypatch.setattr(marsh_reads.subprocess, 'run', failing_run)
    with pytest.raises(subprocess.CalledProcessError):
        deinterleave_sample('CT1', 'lane1.fastq', tmp_path)
