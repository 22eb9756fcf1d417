"""
Statistical analysis functions for the marsh microbiome data.
"""

from itertools import combinations

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from skbio.stats.distance import permanova, permdisp
from skbio.stats.ordination import rda
from statsmodels.stats.multicomp import pairwise_tukeyhsd
from statsmodels.stats.multitest import multipletests

from .marsh_logger import log_print
from .marsh_utils import TAXONOMY_RANKS, relative_abundance


# ---------------------------------------------------------------------------
# Grouping helpers
# ---------------------------------------------------------------------------

def group_levels(groups):
    """Levels of a grouping Series, in category order when it is categorical."""
    if isinstance(groups.dtype, pd.CategoricalDtype):
        present = set(groups.dropna())
        return [level for level in groups.cat.categories if level in present]
    return sorted(groups.dropna().unique())


def _grouping_for(distance_matrix, metadata_df, variable):
    """Group labels aligned with the ids of a distance matrix."""
    ids = list(distance_matrix.ids)
    missing = [i for i in ids if i not in metadata_df.index]
    if missing:
        raise ValueError(f"Samples missing from metadata: {missing}")
    if variable not in metadata_df.columns:
        raise ValueError(f"Variable '{variable}' not found in metadata")
    return metadata_df.loc[ids, variable]


def _r_squared(f_stat, n_samples, n_groups):
    # R² = F(k-1) / (F(k-1) + (n-k)) for a one-way design
    if n_groups > 1 and n_samples > n_groups:
        numerator = f_stat * (n_groups - 1)
        denominator = numerator + (n_samples - n_groups)
        return numerator / denominator if denominator > 0 else 0.0
    return np.nan


# ---------------------------------------------------------------------------
# PERMANOVA / PERMDISP
# ---------------------------------------------------------------------------

def perform_permanova(distance_matrix, metadata_df, variable, permutations=999):
    """
    Perform PERMANOVA to test whether a grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame indexed by the distance matrix ids
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use

    Returns:
    --------
    dict
        Test statistic (pseudo-F), p-value, R2, sample size and number of groups
    """
    grouping = _grouping_for(distance_matrix, metadata_df, variable).astype(str)
    n_groups = grouping.nunique()
    if n_groups < 2:
        raise ValueError(f"PERMANOVA needs at least two groups in '{variable}'")

    results = permanova(distance_matrix, grouping.values, permutations=permutations)
    f_stat = results['test statistic']
    n_samples = results['sample size']

    return {
        'test-statistic': f_stat,
        'p-value': results['p-value'],
        'R2': _r_squared(f_stat, n_samples, n_groups),
        'sample size': n_samples,
        'number of groups': n_groups,
        'permutations': permutations,
    }


def pairwise_permanova(distance_matrix, metadata_df, variable, permutations=999, correction='fdr_bh'):
    """
    Run PERMANOVA for every pair of groups.

    Raw p-values are reported as computed. When ``correction`` names a
    statsmodels multipletests method an extra 'p_adjusted' column is added;
    'none' leaves it out.

    Returns:
    --------
    pandas.DataFrame
        One row per pair: group1, group2, n_samples, F, R2, p_value
    """
    grouping = _grouping_for(distance_matrix, metadata_df, variable)
    levels = group_levels(grouping)
    labels = grouping.astype(str)

    rows = []
    for group1, group2 in combinations(levels, 2):
        pair_ids = list(labels.index[labels.isin([str(group1), str(group2)])])
        sizes = labels.loc[pair_ids].value_counts()
        if len(sizes) < 2 or sizes.min() < 2:
            log_print(f"Skipping pairwise PERMANOVA {group1} vs {group2}: fewer than 2 samples in a group",
                      level="warning")
            continue

        pair_dm = distance_matrix.filter(pair_ids)
        result = permanova(pair_dm, labels.loc[list(pair_dm.ids)].values, permutations=permutations)
        f_stat = result['test statistic']
        rows.append({
            'group1': group1,
            'group2': group2,
            'n_samples': result['sample size'],
            'F': f_stat,
            'R2': _r_squared(f_stat, result['sample size'], 2),
            'p_value': result['p-value'],
        })

    pairwise_df = pd.DataFrame(rows, columns=['group1', 'group2', 'n_samples', 'F', 'R2', 'p_value'])
    if correction and str(correction).lower() != 'none' and len(pairwise_df) > 0:
        pairwise_df['p_adjusted'] = multipletests(pairwise_df['p_value'], method=correction)[1]
    return pairwise_df


def perform_permdisp(distance_matrix, metadata_df, variable, permutations=999):
    """Test homogeneity of group dispersions (distance to group centroid)."""
    grouping = _grouping_for(distance_matrix, metadata_df, variable).astype(str)
    if grouping.nunique() < 2:
        raise ValueError(f"PERMDISP needs at least two groups in '{variable}'")

    results = permdisp(distance_matrix, grouping.values, permutations=permutations)
    return {
        'test-statistic': results['test statistic'],
        'p-value': results['p-value'],
        'sample size': results['sample size'],
        'number of groups': results['number of groups'],
    }


# ---------------------------------------------------------------------------
# Redundancy analysis
# ---------------------------------------------------------------------------

def scale_covariates(env_df, columns):
    """
    Center and scale environmental covariates to unit variance (ddof=1).

    Non-numeric, incomplete or constant covariates raise ValueError.
    """
    missing = [c for c in columns if c not in env_df.columns]
    if missing:
        raise ValueError(f"Covariates not found: {missing}")

    covariates = env_df[list(columns)]
    non_numeric = [c for c in columns if not pd.api.types.is_numeric_dtype(covariates[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric covariates: {non_numeric}")
    if covariates.isna().any().any():
        raise ValueError(f"Missing values in covariates: {list(covariates.columns[covariates.isna().any()])}")

    std = covariates.std(ddof=1)
    constant = list(std.index[~(std > 0)])
    if constant:
        raise ValueError(f"Covariates with zero variance: {constant}")

    return (covariates - covariates.mean()) / std


def _rda_inertia(Y, X):
    """Constrained eigenvalues, residual and total inertia of a linear RDA."""
    n = Y.shape[0]
    Yc = Y - Y.mean(axis=0)
    Xc = X - X.mean(axis=0)
    coef, _, rank, _ = np.linalg.lstsq(Xc, Yc, rcond=None)
    fitted = Xc @ coef

    total = (Yc ** 2).sum() / (n - 1)
    eigvals = np.linalg.svd(fitted, compute_uv=False) ** 2 / (n - 1)
    eigvals = eigvals[:min(rank, len(eigvals))]
    residual = ((Yc - fitted) ** 2).sum() / (n - 1)
    return eigvals, residual, total


def _sequential_inertia(Y, X):
    """Constrained inertia added by each column of X, entered in order."""
    added = []
    previous = 0.0
    for j in range(1, X.shape[1] + 1):
        eigvals, _, _ = _rda_inertia(Y, X[:, :j])
        constrained = eigvals.sum()
        added.append(constrained - previous)
        previous = constrained
    return np.array(added)


def run_rda(response_df, covariates_df, scaling=2):
    """
    Redundancy analysis of a (transformed) abundance table on covariates.

    Parameters:
    -----------
    response_df : pandas.DataFrame
        Transformed abundances, samples as rows
    covariates_df : pandas.DataFrame
        Scaled covariates indexed like response_df
    scaling : int
        Scaling of the scores (1: distance biplot, 2: correlation biplot)

    Returns:
    --------
    dict
        'sample_scores' and 'biplot_scores' for the first two axes,
        'proportion_explained' for those axes, 'constrained_fraction' of the
        total inertia and the full scikit-bio 'ordination' results
    """
    covariates_df = covariates_df.loc[response_df.index]
    if np.allclose(response_df.var(axis=0).sum(), 0):
        raise ValueError("Response table has zero variance; RDA is undefined")
    if len(response_df) <= covariates_df.shape[1] + 1:
        raise ValueError("RDA needs more samples than covariates plus one")

    ordination = rda(response_df, covariates_df, scale_Y=False, scaling=scaling)
    axes = ['RDA1', 'RDA2']

    sample_scores = ordination.samples.iloc[:, :2].copy()
    sample_scores.columns = axes
    sample_scores.index = response_df.index

    biplot_scores = ordination.biplot_scores.iloc[:, :2].copy()
    biplot_scores.columns = axes[:biplot_scores.shape[1]]
    biplot_scores.index = covariates_df.columns

    proportion = np.asarray(ordination.proportion_explained)
    eigvals, _, total = _rda_inertia(response_df.values.astype(float), covariates_df.values.astype(float))

    return {
        'sample_scores': sample_scores,
        'biplot_scores': biplot_scores,
        'proportion_explained': pd.Series(proportion[:2], index=axes),
        'constrained_fraction': eigvals.sum() / total,
        'ordination': ordination,
    }


def rda_permutation_test(response_df, covariates_df, permutations=999, seed=None):
    """
    Permutation tests for an RDA: the whole model, each constrained axis and
    each term (sequential, in covariate order).

    Rows of the response table are permuted; pseudo-F statistics are the
    explained variance per degree of freedom over the residual mean square.

    Returns:
    --------
    dict
        'model', 'axes' and 'terms' tables (Df, Variance, F, p_value) and the
        'inertia' decomposition (total, constrained, residual)
    """
    covariates_df = covariates_df.loc[response_df.index]
    Y = response_df.values.astype(float)
    X = covariates_df.values.astype(float)
    n = Y.shape[0]

    eigvals, residual, total = _rda_inertia(Y, X)
    if np.isclose(total, 0):
        raise ValueError("Response table has zero variance; RDA is undefined")
    rank = len(eigvals)
    df_resid = n - rank - 1
    if rank == 0 or df_resid <= 0:
        raise ValueError("Not enough samples for the RDA permutation test")

    scale = residual / df_resid
    f_model = (eigvals.sum() / rank) / scale
    f_axes = eigvals / scale
    term_inertia = _sequential_inertia(Y, X)
    f_terms = term_inertia / scale

    rng = np.random.default_rng(seed)
    model_hits = 0
    axis_hits = np.zeros(rank)
    term_hits = np.zeros(len(term_inertia))
    tolerance = 1 - 1e-10
    for _ in range(permutations):
        Yp = Y[rng.permutation(n)]
        perm_eigvals, perm_residual, _ = _rda_inertia(Yp, X)
        perm_eigvals = np.pad(perm_eigvals, (0, max(0, rank - len(perm_eigvals))))[:rank]
        perm_scale = perm_residual / df_resid

        model_hits += (perm_eigvals.sum() / rank) / perm_scale >= f_model * tolerance
        axis_hits += perm_eigvals / perm_scale >= f_axes * tolerance
        term_hits += _sequential_inertia(Yp, X) / perm_scale >= f_terms * tolerance

    def p_values(hits):
        return (hits + 1) / (permutations + 1)

    model = pd.DataFrame(
        {'Df': [rank, df_resid], 'Variance': [eigvals.sum(), residual],
         'F': [f_model, np.nan], 'p_value': [p_values(model_hits), np.nan]},
        index=['Model', 'Residual'],
    )
    axes = pd.DataFrame(
        {'Df': 1, 'Variance': eigvals, 'F': f_axes, 'p_value': p_values(axis_hits)},
        index=[f'RDA{i + 1}' for i in range(rank)],
    )
    terms = pd.DataFrame(
        {'Df': 1, 'Variance': term_inertia, 'F': f_terms, 'p_value': p_values(term_hits)},
        index=covariates_df.columns,
    )

    return {
        'model': model,
        'axes': axes,
        'terms': terms,
        'inertia': {'total': total, 'constrained': eigvals.sum(), 'residual': residual},
        'permutations': permutations,
    }


# ---------------------------------------------------------------------------
# Taxon groups
# ---------------------------------------------------------------------------

def match_taxa(taxonomy_df, pattern, ranks=None):
    """
    Taxa whose label at any of ``ranks`` contains ``pattern`` (case-insensitive).

    Returns:
    --------
    pandas.Index
        Matching taxon IDs
    """
    ranks = list(ranks) if ranks else TAXONOMY_RANKS
    unknown = [r for r in ranks if r not in taxonomy_df.columns]
    if unknown:
        raise ValueError(f"Unknown taxonomic ranks: {unknown}")

    hits = pd.Series(False, index=taxonomy_df.index)
    for rank in ranks:
        labels = taxonomy_df[rank].astype('string')
        hits |= labels.str.contains(pattern, case=False, regex=False, na=False).astype(bool)
    return taxonomy_df.index[hits.values]


def define_taxon_groups(taxonomy_df, groups):
    """
    Build disjoint taxon groups from label patterns.

    Parameters:
    -----------
    taxonomy_df : pandas.DataFrame
        Parsed taxonomy (see parse_taxonomy)
    groups : dict
        Ordered mapping of group name -> {'pattern': str, 'ranks': list}.
        A taxon matching several groups goes to the first one.

    Returns:
    --------
    dict
        Group name -> pandas.Index of taxon IDs
    """
    assigned = set()
    taxon_groups = {}
    for name, definition in groups.items():
        taxa = match_taxa(taxonomy_df, definition['pattern'], definition.get('ranks'))
        taxa = taxa[~taxa.isin(list(assigned))]
        assigned.update(taxa)
        taxon_groups[name] = taxa
        log_print(f"Taxon group '{name}' ({definition['pattern']!r}): {len(taxa)} taxa", level="info")
    return taxon_groups


def taxon_group_abundance(counts_df, taxon_groups):
    """
    Relative abundance of each taxon group in each sample.

    Returns:
    --------
    pandas.DataFrame
        Samples as rows, one column per group; values in [0, 1]
    """
    rel = relative_abundance(counts_df)
    group_df = pd.DataFrame(index=counts_df.index)
    for name, taxa in taxon_groups.items():
        present = rel.columns.intersection(taxa)
        group_df[name] = rel[present].sum(axis=1)
    return group_df


# ---------------------------------------------------------------------------
# Univariate comparisons
# ---------------------------------------------------------------------------

def _anova_frame(values, groups):
    groups = groups.loc[values.index]
    data = pd.DataFrame({'value': values.astype(float), 'group': groups.astype(str)})
    if data['group'].nunique() < 2:
        raise ValueError("At least two groups are needed for a comparison")
    return data


def one_way_anova(values, groups):
    """
    One-way ANOVA of ``values`` across ``groups`` (both Series on the same index).

    Returns:
    --------
    tuple of (statsmodels results, pandas.DataFrame)
        The fitted OLS model and its type-II ANOVA table
    """
    data = _anova_frame(values, groups)
    fit = smf.ols('value ~ C(group)', data=data).fit()
    table = sm.stats.anova_lm(fit, typ=2)
    return fit, table


def tukey_hsd(values, groups, alpha=0.05):
    """Tukey HSD post-hoc comparisons as a DataFrame (one row per pair)."""
    data = _anova_frame(values, groups)
    result = pairwise_tukeyhsd(endog=data['value'], groups=data['group'], alpha=alpha)

    levels = list(result.groupsunique)
    rows = []
    for (i, j), diff, p_value, (lower, upper), reject in zip(
            combinations(range(len(levels)), 2), result.meandiffs, result.pvalues,
            result.confint, result.reject):
        rows.append({
            'group1': levels[i],
            'group2': levels[j],
            'meandiff': diff,
            'p-adj': p_value,
            'lower': lower,
            'upper': upper,
            'reject': bool(reject),
        })
    return pd.DataFrame(rows)


def compare_treatments(values_df, metadata_df, group_var='Treatment'):
    """
    ANOVA and Tukey HSD for every column of ``values_df``.

    Returns:
    --------
    dict
        Column name -> {'anova': table, 'tukey': table, 'fit': OLS results}
    """
    if group_var not in metadata_df.columns:
        raise ValueError(f"Variable '{group_var}' not found in metadata")

    groups = metadata_df.loc[values_df.index, group_var]
    results = {}
    for column in values_df.columns:
        fit, anova_table = one_way_anova(values_df[column], groups)
        results[column] = {
            'anova': anova_table,
            'tukey': tukey_hsd(values_df[column], groups),
            'fit': fit,
        }
    return results
