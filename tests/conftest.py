"""
Shared synthetic marsh data for the test suite.

Four treatments x four replicates sampled on one date, sequenced as DNA and
cDNA. OTUs are assigned one of six taxonomy strings in rotation; every sixth
OTU is a Desulfobacterales member whose abundance grows with the treatment
index, so the sulfate reducer group differs between treatments.
"""

import matplotlib
matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

from marsh_tools.marsh_config import load_config
from marsh_tools.marsh_utils import parse_taxonomy, sample_key


TREATMENTS = ['Control', 'Fresh', 'Press', 'Pulse']
TREATMENT_CODES = {'Control': 'CT', 'Fresh': 'FR', 'Press': 'PR', 'Pulse': 'PU'}
DATE = '2015-06-03'
N_REPLICATES = 4
N_OTUS = 24
COVARIATES = ['Salinity', 'SO4', 'Cl', 'NH4', 'PO4', 'CH4']

TAXONOMY_STRINGS = [
    'k__Bacteria; p__Proteobacteria; c__Deltaproteobacteria; o__Desulfobacterales; '
    'f__Desulfobacteraceae; g__Desulfobacter',
    'k__Bacteria; p__Firmicutes; c__Clostridia; o__Clostridiales; f__Clostridiaceae; g__Clostridium',
    'k__Archaea; p__Euryarchaeota; c__Methanomicrobia; o__Methanosarcinales; '
    'f__Methanosarcinaceae; g__Methanosarcina',
    'k__Bacteria; p__Proteobacteria; c__Betaproteobacteria; o__Burkholderiales; f__Comamonadaceae; g__',
    'k__Bacteria; p__Chloroflexi; c__Anaerolineae; o__Anaerolineales; f__Anaerolineaceae; g__',
    'k__Bacteria; p__Acidobacteria; c__Acidobacteria; o__; f__; g__',
]


def raw_sample_id(treatment, replicate):
    """Sample ID as written in the design table, e.g. 'CT1_6_3_15'."""
    return f"{TREATMENT_CODES[treatment]}{replicate}_6_3_15"


def otu_ids():
    return [f"OTU_{j}" for j in range(N_OTUS)]


def simulate_counts(index, treatments, seed=0):
    """Poisson counts with a treatment effect on the Desulfobacterales OTUs."""
    rng = np.random.default_rng(seed)
    base = np.linspace(5, 80, N_OTUS)
    rows = []
    for treatment in treatments:
        effect = np.ones(N_OTUS)
        effect[::6] *= 1 + 2 * TREATMENTS.index(treatment)
        rows.append(rng.poisson(base * effect))
    return pd.DataFrame(rows, index=list(index), columns=otu_ids())


def design_records():
    """Design rows for both molecules; each sample ID appears once per molecule."""
    records = []
    for molecule in ['DNA', 'cDNA']:
        for treatment in TREATMENTS:
            for replicate in range(1, N_REPLICATES + 1):
                records.append({
                    'SampleID': raw_sample_id(treatment, replicate),
                    'Date': DATE,
                    'Treatment': treatment,
                    'Replicate': replicate,
                    'Molecule': molecule,
                })
    return records


def environment_records(seed=3):
    rng = np.random.default_rng(seed)
    records = []
    for t_index, treatment in enumerate(TREATMENTS):
        for replicate in range(1, N_REPLICATES + 1):
            row = {'Date': DATE, 'Treatment': treatment, 'Replicate': replicate}
            row['Salinity'] = 0.1 + 2 * t_index + rng.normal(0, 0.3)
            for covariate in COVARIATES[1:]:
                row[covariate] = rng.normal(10, 2)
            records.append(row)
    return records


@pytest.fixture
def metadata_df():
    """DNA sample metadata indexed by sample key."""
    df = pd.DataFrame([r for r in design_records() if r['Molecule'] == 'DNA'])
    df['Date'] = pd.to_datetime(df['Date'])
    df.index = [sample_key(sid, 'DNA') for sid in df['SampleID']]
    df.index.name = 'SampleKey'
    df['Treatment'] = pd.Categorical(df['Treatment'], categories=TREATMENTS, ordered=True)
    return df


@pytest.fixture
def counts_df(metadata_df):
    """Integer counts, samples as rows, aligned with metadata_df."""
    return simulate_counts(metadata_df.index, metadata_df['Treatment'])


@pytest.fixture
def taxonomy_df():
    strings = pd.Series([TAXONOMY_STRINGS[j % len(TAXONOMY_STRINGS)] for j in range(N_OTUS)],
                        index=otu_ids())
    return parse_taxonomy(strings)


@pytest.fixture
def environment_df():
    return pd.DataFrame(environment_records())


@pytest.fixture
def study_files(tmp_path):
    """Design, OTU, taxonomy and environment files in the formats the loaders read."""
    design = pd.DataFrame(design_records())
    design_file = tmp_path / 'sample_design.csv'
    design.to_csv(design_file, index=False)

    # The abundance table writes IDs differently from the design table
    dna = [r for r in design_records() if r['Molecule'] == 'DNA']
    dna_ids = [f"{TREATMENT_CODES[r['Treatment']]}{r['Replicate']}_06_03_15" for r in dna]
    cdna_ids = [f"{TREATMENT_CODES[r['Treatment']]}{r['Replicate']}.6.3.15_cDNA" for r in dna]
    treatments = [r['Treatment'] for r in dna]
    counts = pd.concat([
        simulate_counts(dna_ids, treatments, seed=0),
        simulate_counts(cdna_ids, treatments, seed=1),
    ])

    otu_table = counts.T
    otu_table['taxonomy'] = [TAXONOMY_STRINGS[j % len(TAXONOMY_STRINGS)] for j in range(N_OTUS)]
    otu_table.index.name = '#OTU ID'
    otu_file = tmp_path / 'otu_table.txt'
    with open(otu_file, 'w') as handle:
        handle.write('# Constructed from biom file\n')
        otu_table.to_csv(handle, sep='\t')

    taxonomy_file = tmp_path / 'taxonomy.txt'
    pd.DataFrame({'Taxon': otu_table['taxonomy']}, index=pd.Index(otu_ids(), name='Feature ID')).to_csv(
        taxonomy_file, sep='\t')

    environment_file = tmp_path / 'environment.csv'
    pd.DataFrame(environment_records()).to_csv(environment_file, index=False)

    return {
        'design_file': design_file,
        'otu_table': otu_file,
        'taxonomy_file': taxonomy_file,
        'environment_file': environment_file,
    }


@pytest.fixture
def study_config(study_files):
    """Default configuration pointed at the synthetic files, with small permutation counts."""
    config = load_config()
    for key, path in study_files.items():
        config['data'][key] = str(path)
    config['rarefaction']['min_count'] = 500
    config['permanova']['permutations'] = 99
    config['rda']['permutations'] = 49
    config['visualization']['figure_dpi'] = 50
    return config
