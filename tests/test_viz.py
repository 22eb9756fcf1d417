import matplotlib.pyplot as plt
import pytest

from marsh_tools.marsh_diversity import calculate_alpha_diversity, calculate_beta_diversity, run_pcoa
from marsh_tools.marsh_stats import run_rda, scale_covariates
from marsh_tools.marsh_utils import collapse_taxa, join_environment, transform_abundance
from marsh_tools.marsh_viz import (
    level_palette,
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_rda_biplot,
    plot_stacked_bar,
    plot_taxon_group_boxplot,
    save_figure,
)

from conftest import COVARIATES, TREATMENTS


PALETTE = {'Control': '#1b9e77', 'Fresh': '#7570b3', 'Press': '#d95f02', 'Pulse': '#e7298a'}


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close('all')


def test_level_palette_fills_missing_levels():
    colors = level_palette(['Control', 'Fresh', 'Other'], {'Control': 'black'})
    assert colors['Control'] == 'black'
    assert set(colors) == {'Control', 'Fresh', 'Other'}


def test_alpha_boxplots(counts_df, metadata_df, tmp_path):
    alpha = calculate_alpha_diversity(counts_df)
    figures = plot_alpha_diversity_boxplot(alpha[['richness', 'shannon_effective']], metadata_df,
                                           palette=PALETTE)
    assert set(figures) == {'richness', 'shannon_effective'}

    ax = figures['richness'].axes[0]
    assert [t.get_text() for t in ax.get_xticklabels()] == TREATMENTS
    assert ax.get_ylabel() == 'Observed OTUs'

    path = save_figure(figures['richness'], tmp_path / 'figures' / 'alpha.png', dpi=50, figsize=(4, 3))
    assert path.exists() and path.stat().st_size > 0


def test_single_metric_returns_figure(counts_df, metadata_df):
    alpha = calculate_alpha_diversity(counts_df)
    fig = plot_alpha_diversity_boxplot(alpha, metadata_df, metric='shannon')
    assert fig.axes[0].get_ylabel() == 'Shannon diversity (H)'


def test_taxon_group_boxplot_uses_percent(metadata_df):
    import pandas as pd

    group_df = pd.DataFrame({'sulfate_reducers': 0.25}, index=metadata_df.index)
    fig = plot_taxon_group_boxplot(group_df, metadata_df, 'sulfate_reducers')
    ax = fig.axes[0]
    assert ax.get_ylabel() == 'Sulfate reducers (% of reads)'
    assert ax.get_ylim()[0] <= 25 <= ax.get_ylim()[1]


def test_pcoa_plot_labels(counts_df, metadata_df):
    scores, explained = run_pcoa(calculate_beta_diversity(counts_df))
    fig = plot_ordination(scores, metadata_df, 'Treatment', explained=explained, palette=PALETTE)
    ax = fig.axes[0]
    assert ax.get_xlabel().startswith('PC1 (')
    legend_labels = [t.get_text() for t in ax.get_legend().get_texts()]
    assert legend_labels == TREATMENTS


def test_rda_biplot_draws_covariate_labels(counts_df, metadata_df, environment_df):
    joined = join_environment(metadata_df, environment_df, covariates=COVARIATES)
    response = transform_abundance(counts_df.loc[joined.index], 'hellinger')
    result = run_rda(response, scale_covariates(joined, COVARIATES))

    fig = plot_rda_biplot(result, joined, 'Treatment', palette=PALETTE)
    texts = {t.get_text() for t in fig.axes[0].texts}
    assert set(COVARIATES) <= texts


def test_stacked_bar_groups_rare_taxa(counts_df, metadata_df, taxonomy_df):
    genera = collapse_taxa(counts_df, taxonomy_df, 'Genus')
    fig = plot_stacked_bar(genera, metadata_df, top_n=2, rank_label='Genus')
    labels = [t.get_text() for t in fig.axes[0].get_legend().get_texts()]
    assert len(labels) == 3
    assert labels[-1] == 'Other'
