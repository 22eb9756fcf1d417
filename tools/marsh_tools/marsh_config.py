"""
Configuration loading for the marsh microbiome analysis.

Values from the YAML file are merged over DEFAULT_CONFIG, so a configuration
file only needs the keys it changes.
"""

import copy
from pathlib import Path

import yaml


DEFAULT_CONFIG = {
    'data': {
        'design_file': 'data/sample_design.csv',
        'otu_table': 'data/otu_table.txt',
        'taxonomy_file': 'data/taxonomy.txt',
        'environment_file': 'data/environment.csv',
        'otu_sep': '\t',
        'taxonomy_sep': '\t',
        'sample_id_column': 'SampleID',
    },
    'study': {
        'treatments': ['Control', 'Fresh', 'Press', 'Pulse'],
        'molecules': ['DNA', 'cDNA'],
        'default_molecule': 'DNA',
        'dates': None,
    },
    'rarefaction': {
        'min_count': 5000,
        'seed': 1,
    },
    'diversity': {
        'transform': 'hellinger',
        'beta_metric': 'braycurtis',
        'pcoa_axes': 2,
    },
    'permanova': {
        'permutations': 999,
        'correction': 'fdr_bh',
    },
    'rda': {
        'covariates': ['Salinity', 'SO4', 'Cl', 'NH4', 'PO4', 'CH4'],
        'transform': 'hellinger',
        'permutations': 999,
        'seed': 1,
    },
    'taxon_groups': {
        'sulfate_reducers': {
            'pattern': 'sulf',
            'ranks': ['Order', 'Family', 'Genus'],
        },
        'methanogens': {
            'pattern': 'methano',
            'ranks': ['Order', 'Family', 'Genus'],
        },
    },
    'composition': {
        'rank': 'Phylum',
        'top_n': 10,
    },
    'visualization': {
        'figure_dpi': 300,
        'figure_size': [7, 5],
        'style': 'ticks',
        'context': 'paper',
        'ordination_method': 'PCoA',
        'palette': {
            'Control': '#1b9e77',
            'Fresh': '#7570b3',
            'Press': '#d95f02',
            'Pulse': '#e7298a',
        },
    },
}


def merge_config(base, override):
    """Recursively merge ``override`` into a copy of ``base``."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            # taxon group definitions replace the defaults wholesale
            if key == 'taxon_groups':
                merged[key] = copy.deepcopy(value)
            else:
                merged[key] = merge_config(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_config(config_path=None):
    """
    Load the analysis configuration.

    Parameters:
    -----------
    config_path : str or Path, optional
        YAML file to merge over the defaults. If None, the defaults are returned.

    Returns:
    --------
    dict
        Configuration dictionary
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {config_path} must contain a mapping")

    return merge_config(DEFAULT_CONFIG, user_config)


def resolve_data_path(config, key, project_root):
    """Return the absolute path of an input file named in config['data']."""
    path = Path(config['data'][key])
    if not path.is_absolute():
        path = Path(project_root) / path
    return path
