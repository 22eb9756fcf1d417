"""
Tools for the seawater-intrusion tidal freshwater marsh microbiome analysis.
"""

from .marsh_config import load_config
from .marsh_logger import setup_logger, log_print
from .marsh_utils import (
    load_design_table,
    load_otu_table,
    load_taxonomy,
    load_environment,
    parse_taxonomy,
    sample_key,
    normalize_sample_id,
    reconcile_samples,
    filter_study_subset,
    join_environment,
    rarefy,
    rarefy_table,
    relative_abundance,
    transform_abundance,
    collapse_taxa,
)
from .marsh_diversity import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    run_pcoa,
    run_nmds,
)
from .marsh_stats import (
    perform_permanova,
    pairwise_permanova,
    perform_permdisp,
    scale_covariates,
    run_rda,
    rda_permutation_test,
    match_taxa,
    define_taxon_groups,
    taxon_group_abundance,
    one_way_anova,
    tukey_hsd,
    compare_treatments,
)

__version__ = '0.1.0'
