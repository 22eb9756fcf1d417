"""
Functions for calculating alpha and beta diversity of the marsh OTU data.
"""

import numpy as np
import pandas as pd
import scipy.spatial.distance as ssd
from skbio.diversity import alpha_diversity
from skbio.stats.distance import DistanceMatrix
from skbio.stats.ordination import pcoa

from .marsh_logger import log_print
from .marsh_utils import transform_abundance


BETA_METRICS = {
    'bray': 'braycurtis',
    'braycurtis': 'braycurtis',
    'jaccard': 'jaccard',
    'euclidean': 'euclidean',
}


def calculate_alpha_diversity(counts_df):
    """
    Calculate alpha diversity for each sample.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Integer counts with samples as rows, taxa as columns (normally rarefied)

    Returns:
    --------
    pandas.DataFrame
        Columns 'richness' (number of taxa present), 'shannon' (natural log)
        and 'shannon_effective' (exp of Shannon, the effective number of taxa)
    """
    alpha_df = pd.DataFrame(index=counts_df.index)

    # Richness from presence/absence
    alpha_df['richness'] = (counts_df > 0).sum(axis=1).astype(int)

    shannon = alpha_diversity('shannon', counts_df.values.astype(int), ids=list(counts_df.index), base=np.e)
    alpha_df['shannon'] = np.asarray(shannon, dtype=float)
    alpha_df['shannon_effective'] = np.exp(alpha_df['shannon'])

    return alpha_df


def calculate_beta_diversity(counts_df, metric='braycurtis', transform='hellinger'):
    """
    Transform the abundance table and compute pairwise sample dissimilarities.

    Parameters:
    -----------
    counts_df : pandas.DataFrame
        Counts with samples as rows, taxa as columns
    metric : str
        'braycurtis' (or 'bray'), 'jaccard' or 'euclidean'
    transform : str
        Transformation applied first (see transform_abundance)

    Returns:
    --------
    skbio.DistanceMatrix
        Beta diversity distance matrix
    """
    if metric.lower() not in BETA_METRICS:
        raise ValueError(f"Unknown distance metric: {metric}")
    scipy_metric = BETA_METRICS[metric.lower()]

    transformed = transform_abundance(counts_df, transform)
    values = transformed.values
    if scipy_metric == 'jaccard':
        # Jaccard on presence/absence
        values = values > 0

    log_print(f"Calculating {scipy_metric} distances on {transform}-transformed data "
              f"({values.shape[0]} samples)", level="info")
    distances = ssd.pdist(values, metric=scipy_metric)
    if np.isnan(distances).any():
        raise ValueError("Distance calculation produced NaN values (empty samples?)")

    return DistanceMatrix(ssd.squareform(distances), ids=[str(s) for s in transformed.index])


def run_pcoa(distance_matrix, n_axes=2):
    """
    Principal coordinates analysis of a distance matrix.

    Returns:
    --------
    tuple of (pandas.DataFrame, pandas.Series)
        Sample scores for the first ``n_axes`` axes (PC1, PC2, ...) and the
        proportion of variance explained by each of those axes
    """
    if distance_matrix.shape[0] < 3:
        raise ValueError("PCoA needs at least three samples")
    if np.allclose(distance_matrix.data, 0):
        raise ValueError("All pairwise distances are zero; nothing to ordinate")

    results = pcoa(distance_matrix)
    axes = list(results.samples.columns[:n_axes])

    scores = results.samples[axes].copy()
    scores.index = list(distance_matrix.ids)
    explained = pd.Series(np.asarray(results.proportion_explained)[:n_axes], index=axes)

    for axis, fraction in explained.items():
        log_print(f"  {axis}: {fraction * 100:.1f}% of variation explained", level="info")

    return scores, explained


def run_nmds(distance_matrix, n_axes=2, random_state=42):
    """
    Non-metric multidimensional scaling of a distance matrix.

    Returns:
    --------
    tuple of (pandas.DataFrame, float)
        Sample scores (NMDS1, NMDS2, ...) and the final stress
    """
    from sklearn.manifold import MDS

    mds = MDS(n_components=n_axes, dissimilarity='precomputed', random_state=random_state,
              metric=False, n_init=10, max_iter=500)
    coords = mds.fit_transform(distance_matrix.data)

    scores = pd.DataFrame(coords, index=list(distance_matrix.ids),
                          columns=[f'NMDS{i + 1}' for i in range(n_axes)])
    return scores, float(mds.stress_)
