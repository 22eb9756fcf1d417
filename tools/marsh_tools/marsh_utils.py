"""
Utility functions for loading, reconciling and normalizing the marsh OTU data.

All abundance tables returned here are oriented with samples as rows and
taxa (OTUs) as columns.
"""

import re

import numpy as np
import pandas as pd

from .marsh_logger import log_print


TAXONOMY_RANKS = ['Domain', 'Phylum', 'Class', 'Order', 'Family', 'Genus', 'Species']

# Greengenes/SILVA style prefixes: k__, p__, ... and D_0__, D_1__, ...
RANK_PREFIX = re.compile(r'^(?:D_\d+__|[a-z]__)', re.IGNORECASE)
UNASSIGNED_LABELS = {'', 'unassigned', 'unclassified', 'unknown'}

MOLECULE_SUFFIX = re.compile(r'[_\-.]?(cdna|rna|dna)$', re.IGNORECASE)
ID_SEPARATORS = re.compile(r'[_\-.\s]+')


# ---------------------------------------------------------------------------
# Sample identifiers
# ---------------------------------------------------------------------------

def canonical_molecule(value):
    """Map a molecule label (DNA, cDNA, RNA in any case) to 'DNA' or 'cDNA'."""
    label = str(value).strip().lower()
    if label in ('cdna', 'rna'):
        return 'cDNA'
    if label == 'dna':
        return 'DNA'
    raise ValueError(f"Unknown molecule type: {value!r}")


def split_molecule_suffix(sample_id):
    """
    Split a trailing molecule tag off a sample ID.

    'C1_6_3_15_cDNA' -> ('C1_6_3_15', 'cDNA'); 'C1_6_3_15' -> ('C1_6_3_15', None)
    """
    sample_id = str(sample_id).strip()
    match = MOLECULE_SUFFIX.search(sample_id)
    if match is None or match.start() == 0:
        return sample_id, None
    return sample_id[:match.start()], canonical_molecule(match.group(1))


def normalize_sample_id(sample_id):
    """
    Normalize a sample ID so that the naming conventions of the different
    tables compare equal.

    Separators are removed and single-digit numeric tokens (month/day parts of
    a date) are zero-padded: 'c1_6_3_15' and 'C1-06-03-15' both give 'C1060315'.
    """
    tokens = [t for t in ID_SEPARATORS.split(str(sample_id).strip()) if t]
    padded = [t.zfill(2) if t.isdigit() else t for t in tokens]
    return ''.join(padded).upper()


def sample_key(sample_id, molecule=None, default_molecule='DNA'):
    """
    Build the join key '<normalized id>_<DNA|cDNA>' for a sample.

    An explicit ``molecule`` wins over a suffix carried by the ID itself;
    IDs with neither are tagged with ``default_molecule``.
    """
    base, suffix_molecule = split_molecule_suffix(sample_id)
    if molecule is not None and not pd.isna(molecule):
        tag = canonical_molecule(molecule)
    elif suffix_molecule is not None:
        tag = suffix_molecule
    else:
        tag = canonical_molecule(default_molecule)
    return f"{normalize_sample_id(base)}_{tag}"


# ---------------------------------------------------------------------------
# Input tables
# ---------------------------------------------------------------------------

def _count_preamble_lines(filepath):
    """Count the biom '# Constructed from biom file' lines above the header."""
    skiprows = 0
    with open(filepath, 'r') as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                skiprows += 1
                continue
            if stripped.startswith('#') and not stripped.upper().startswith(('#OTU', '#FEATURE')):
                skiprows += 1
                continue
            break
    return skiprows


def load_otu_table(filepath, sep='\t'):
    """
    Load an OTU table with taxa as rows, samples as columns and an optional
    trailing taxonomy column.

    Parameters:
    -----------
    filepath : str or Path
        Path to the delimited OTU table
    sep : str
        Field delimiter

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series or None)
        Integer counts with samples as rows and OTUs as columns, and the
        trailing taxonomy strings indexed by OTU if the table had them
    """
    skiprows = _count_preamble_lines(filepath)
    otu_df = pd.read_csv(filepath, sep=sep, skiprows=skiprows, index_col=0)
    otu_df.index = otu_df.index.astype(str)
    otu_df.index.name = 'OTU'
    otu_df.columns = [str(c).strip().lstrip('#') for c in otu_df.columns]

    taxonomy = None
    last_col = otu_df.columns[-1]
    if last_col.lower().startswith('taxonomy') or not pd.api.types.is_numeric_dtype(otu_df[last_col]):
        taxonomy = otu_df[last_col].astype(str)
        otu_df = otu_df.iloc[:, :-1]

    counts = otu_df.apply(pd.to_numeric, errors='raise').fillna(0)
    if (counts < 0).any().any():
        raise ValueError(f"Negative counts found in {filepath}")
    if not np.allclose(counts.values, np.round(counts.values)):
        raise ValueError(f"Non-integer counts found in {filepath}")

    counts = counts.round().astype(int).T
    counts.index.name = 'SampleID'
    log_print(f"Loaded OTU table: {counts.shape[0]} samples, {counts.shape[1]} OTUs", level="info")
    return counts, taxonomy


def parse_taxonomy(taxonomy_series):
    """
    Split delimited taxonomy strings into one column per rank.

    Parameters:
    -----------
    taxonomy_series : pandas.Series
        Taxonomy strings such as 'k__Bacteria; p__Proteobacteria; ...',
        indexed by taxon ID

    Returns:
    --------
    pandas.DataFrame
        One row per taxon with columns Domain ... Species; missing or
        unassigned ranks are NaN
    """
    rows = {}
    for taxon, value in taxonomy_series.items():
        parts = [] if pd.isna(value) else str(value).split(';')
        labels = []
        for part in parts[:len(TAXONOMY_RANKS)]:
            label = RANK_PREFIX.sub('', part.strip()).strip()
            labels.append(np.nan if label.lower() in UNASSIGNED_LABELS else label)
        labels += [np.nan] * (len(TAXONOMY_RANKS) - len(labels))
        rows[str(taxon)] = labels

    taxonomy_df = pd.DataFrame.from_dict(rows, orient='index', columns=TAXONOMY_RANKS)
    taxonomy_df.index.name = 'OTU'
    return taxonomy_df


def load_taxonomy(filepath, sep='\t', taxonomy_column=None):
    """Load a taxonomy lookup table (taxon ID, taxonomy string) and parse its ranks."""
    raw = pd.read_csv(filepath, sep=sep, index_col=0, dtype=str)
    raw.index = raw.index.astype(str)

    if taxonomy_column is None:
        candidates = [c for c in raw.columns if str(c).strip().lower().startswith('taxon')]
        taxonomy_column = candidates[0] if candidates else raw.columns[0]
    elif taxonomy_column not in raw.columns:
        raise ValueError(f"Taxonomy column '{taxonomy_column}' not found in {filepath}")

    taxonomy_df = parse_taxonomy(raw[taxonomy_column])
    log_print(f"Loaded taxonomy for {len(taxonomy_df)} taxa", level="info")
    return taxonomy_df


def load_design_table(filepath, sample_id_column='SampleID', default_molecule='DNA'):
    """
    Load the sample design table.

    The table must have the sample ID, Date, Treatment and Replicate columns;
    a Molecule column is optional and otherwise inferred from the ID suffix.

    Returns:
    --------
    pandas.DataFrame
        Design table with parsed Date, integer Replicate, canonical Molecule
        and the normalized join ``key``
    """
    design_df = pd.read_csv(filepath, dtype=str)
    design_df.columns = [c.strip() for c in design_df.columns]

    required = [sample_id_column, 'Date', 'Treatment', 'Replicate']
    missing = [c for c in required if c not in design_df.columns]
    if missing:
        raise ValueError(f"Design table {filepath} is missing columns: {missing}")

    design_df = design_df.rename(columns={sample_id_column: 'SampleID'})
    design_df['SampleID'] = design_df['SampleID'].str.strip()

    if 'Molecule' in design_df.columns:
        design_df['Molecule'] = design_df['Molecule'].map(canonical_molecule)
    else:
        suffixes = design_df['SampleID'].map(lambda sid: split_molecule_suffix(sid)[1])
        design_df['Molecule'] = suffixes.fillna(canonical_molecule(default_molecule))

    design_df['key'] = [
        sample_key(sid, molecule)
        for sid, molecule in zip(design_df['SampleID'], design_df['Molecule'])
    ]
    design_df['Date'] = pd.to_datetime(design_df['Date'])
    design_df['Treatment'] = design_df['Treatment'].str.strip()
    design_df['Replicate'] = pd.to_numeric(design_df['Replicate']).astype(int)

    log_print(f"Loaded design table: {len(design_df)} rows", level="info")
    return design_df


def load_environment(filepath):
    """Load the environmental measurements table (CSV)."""
    env_df = pd.read_csv(filepath)
    env_df.columns = [c.strip() for c in env_df.columns]
    log_print(f"Loaded environmental data: {env_df.shape[0]} rows, {env_df.shape[1]} columns", level="info")
    return env_df


# ---------------------------------------------------------------------------
# Joins
# ---------------------------------------------------------------------------

def filter_study_subset(metadata_df, treatments, dates=None):
    """
    Keep only the samples of the configured treatments (and dates).

    Treatment becomes an ordered categorical following ``treatments``.
    """
    subset = metadata_df[metadata_df['Treatment'].isin(treatments)].copy()
    if dates:
        wanted = pd.to_datetime(pd.Series(list(dates)))
        subset = subset[subset['Date'].isin(wanted)]

    n_dropped = len(metadata_df) - len(subset)
    if n_dropped:
        log_print(f"Excluded {n_dropped} samples outside the study subset", level="info")
    if subset.empty:
        raise ValueError("No samples left after restricting to the study treatments/dates")

    subset['Treatment'] = pd.Categorical(subset['Treatment'].astype(str), categories=list(treatments), ordered=True)
    return subset


def reconcile_samples(design_df, counts_df, molecule, default_molecule='DNA'):
    """
    Align the design table and the abundance table for one molecule type.

    Parameters:
    -----------
    design_df : pandas.DataFrame
        Design table from load_design_table
    counts_df : pandas.DataFrame
        Counts with samples as rows (raw sample IDs as index)
    molecule : str
        Molecule type to keep ('DNA' or 'cDNA')
    default_molecule : str
        Molecule assumed for abundance columns without a molecule suffix

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.DataFrame)
        Metadata and counts, both indexed by sample key in the same order.
        Samples found in only one table are dropped.
    """
    molecule = canonical_molecule(molecule)
    design_mol = design_df[design_df['Molecule'] == molecule]

    duplicated = design_mol['key'][design_mol['key'].duplicated(keep=False)]
    if not duplicated.empty:
        raise ValueError(f"Duplicate {molecule} sample keys in design table: {sorted(set(duplicated))}")

    count_keys = pd.Index([sample_key(sid, default_molecule=default_molecule) for sid in counts_df.index])
    if count_keys.duplicated().any():
        raise ValueError(f"Duplicate sample keys in abundance table: {sorted(set(count_keys[count_keys.duplicated()]))}")

    keyed_counts = counts_df.copy()
    keyed_counts.index = count_keys
    keyed_counts = keyed_counts[keyed_counts.index.str.endswith(f"_{molecule}")]

    common = [key for key in design_mol['key'] if key in keyed_counts.index]
    dropped_design = len(design_mol) - len(common)
    dropped_counts = len(keyed_counts) - len(common)
    if dropped_design:
        log_print(f"{dropped_design} {molecule} design samples have no abundance data and were dropped", level="warning")
    if dropped_counts:
        log_print(f"{dropped_counts} {molecule} abundance samples have no design entry and were dropped", level="warning")
    if not common:
        raise ValueError(f"No {molecule} samples in common between design and abundance tables")

    metadata_df = design_mol.set_index('key').loc[common]
    metadata_df.index.name = 'SampleKey'
    keyed_counts = keyed_counts.loc[common]
    keyed_counts.index.name = 'SampleKey'

    log_print(f"Reconciled {len(common)} {molecule} samples", level="info")
    return metadata_df, keyed_counts


def join_environment(metadata_df, env_df, covariates=None, keys=('Date', 'Treatment', 'Replicate')):
    """
    Attach environmental covariates to the sample metadata.

    Environmental rows are matched on date, treatment and replicate; repeated
    measurements for one key are averaged. Samples without a measurement are
    dropped.
    """
    keys = list(keys)
    env = env_df.copy()
    missing = [k for k in keys if k not in env.columns]
    if missing:
        raise ValueError(f"Environmental table is missing key columns: {missing}")

    if covariates is None:
        covariates = [c for c in env.columns if c not in keys]
    missing = [c for c in covariates if c not in env.columns]
    if missing:
        raise ValueError(f"Environmental table is missing covariates: {missing}")

    env['Date'] = pd.to_datetime(env['Date'])
    env['Treatment'] = env['Treatment'].astype(str).str.strip()
    env['Replicate'] = pd.to_numeric(env['Replicate']).astype(int)
    env[covariates] = env[covariates].apply(pd.to_numeric, errors='raise')
    env = env.groupby(keys, as_index=False)[covariates].mean()

    index_name = metadata_df.index.name or 'SampleKey'
    left = metadata_df.drop(columns=[c for c in covariates if c in metadata_df.columns])
    left.index.name = index_name
    treatment_dtype = left['Treatment'].dtype
    left['Treatment'] = left['Treatment'].astype(str)

    merged = left.reset_index().merge(env, on=keys, how='inner').set_index(index_name)
    if isinstance(treatment_dtype, pd.CategoricalDtype):
        merged['Treatment'] = merged['Treatment'].astype(treatment_dtype)

    n_dropped = len(metadata_df) - len(merged)
    if n_dropped:
        log_print(f"{n_dropped} samples have no environmental measurements and were dropped", level="warning")
    if merged.empty:
        raise ValueError("No samples matched the environmental table")

    return merged


# ---------------------------------------------------------------------------
# Rarefaction and transforms
# ---------------------------------------------------------------------------

def rarefy_counts(counts, depth, rng):
    """
    Subsample one sample's counts to ``depth`` reads without replacement.

    The reads are shuffled once and the first ``depth`` kept, so for a given
    generator state a deeper subsample always contains the shallower one.
    """
    counts = np.asarray(counts, dtype=int)
    if depth > counts.sum():
        raise ValueError(f"Depth {depth} exceeds sample total {counts.sum()}")
    reads = np.repeat(np.arange(counts.size), counts)
    kept = rng.permutation(reads)[:depth]
    return np.bincount(kept, minlength=counts.size)


def rarefy_table(counts_df, depth, seed=None):
    """
    Rarefy every sample with at least ``depth`` reads to exactly ``depth``.

    Samples below the depth are dropped, as are taxa left with zero counts.
    Each sample draws from its own generator, seeded by its row position in
    ``counts_df``, so dropping a shallow sample leaves the others unchanged.
    """
    children = np.random.SeedSequence(seed).spawn(len(counts_df))
    totals = counts_df.sum(axis=1).values
    keep = [i for i, total in enumerate(totals) if total >= depth]
    if not keep:
        raise ValueError(f"No samples have at least {depth} reads")

    rarefied = pd.DataFrame(
        [rarefy_counts(counts_df.iloc[i].values, depth, np.random.default_rng(children[i])) for i in keep],
        index=counts_df.index[keep],
        columns=counts_df.columns,
    )
    return rarefied.loc[:, rarefied.sum(axis=0) > 0]


def rarefy(counts_df, min_count, seed=None):
    """
    Drop samples below ``min_count`` reads and rarefy the rest to the smallest
    remaining sample total.

    Returns:
    --------
    tuple of (pandas.DataFrame, int)
        Rarefied counts and the rarefaction depth
    """
    totals = counts_df.sum(axis=1)
    retained = totals[totals >= min_count]
    if retained.empty:
        raise ValueError(f"All samples have fewer than {min_count} reads")

    n_dropped = len(totals) - len(retained)
    if n_dropped:
        log_print(f"Excluding {n_dropped} samples with fewer than {min_count} reads: "
                  f"{list(totals[totals < min_count].index)}", level="info")

    depth = int(retained.min())
    log_print(f"Rarefying {len(retained)} samples to {depth} reads", level="info")
    rarefied = rarefy_table(counts_df.loc[retained.index], depth, seed=seed)
    return rarefied, depth


def relative_abundance(counts_df):
    """Scale each sample (row) to sum to 1."""
    totals = counts_df.sum(axis=1)
    if (totals <= 0).any():
        raise ValueError(f"Samples with zero total counts: {list(totals[totals <= 0].index)}")
    return counts_df.div(totals, axis=0)


def transform_abundance(counts_df, method='hellinger'):
    """
    Transform an abundance table (samples as rows).

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Counts with samples as rows, taxa as columns
    method : str
        'relative', 'hellinger', 'log', 'clr' or 'none'

    Returns:
    --------
    pandas.DataFrame
        Transformed table with the same shape
    """
    method = (method or 'none').lower()
    if method == 'relative':
        return relative_abundance(counts_df)
    if method == 'hellinger':
        return np.sqrt(relative_abundance(counts_df))
    if method == 'log':
        return np.log1p(counts_df)
    if method == 'clr':
        from skbio.stats.composition import clr

        # Half the smallest non-zero value stands in for zeros
        rel = relative_abundance(counts_df)
        min_val = rel[rel > 0].min().min() / 2
        rel = rel.replace(0, min_val)
        return pd.DataFrame(clr(rel.values), index=rel.index, columns=rel.columns)
    if method == 'none':
        return counts_df.astype(float)
    raise ValueError(f"Unknown transformation: {method}")


def collapse_taxa(counts_df, taxonomy_df, rank):
    """Sum OTU counts within each label of a taxonomic rank ('Unassigned' for missing labels)."""
    if rank not in taxonomy_df.columns:
        raise ValueError(f"Unknown taxonomic rank: {rank}")
    labels = taxonomy_df[rank].reindex(counts_df.columns).fillna('Unassigned')
    return counts_df.T.groupby(labels).sum().T
