"""
Visualization functions for the marsh microbiome data.

Plot functions take the treatment palette, level order and seaborn theme as
arguments and return the figure; they never change global plotting state.
"""

from contextlib import contextmanager
from pathlib import Path

import numpy as np
import pandas as pd
import matplotlib.pyplot as plt
import seaborn as sns


@contextmanager
def figure_theme(theme=None):
    """Apply a seaborn style and context only while figures are being built."""
    theme = theme or {}
    with sns.axes_style(theme.get('style', 'ticks')), sns.plotting_context(theme.get('context', 'paper')):
        yield


def level_palette(levels, palette=None):
    """Colour per level; levels missing from ``palette`` get seaborn defaults."""
    palette = dict(palette or {})
    defaults = sns.color_palette('colorblind', len(levels))
    return {level: palette.get(level, defaults[i]) for i, level in enumerate(levels)}


def _levels(metadata_df, group_var, order=None):
    present = set(metadata_df[group_var].dropna().astype(str))
    if order is None:
        groups = metadata_df[group_var]
        if isinstance(groups.dtype, pd.CategoricalDtype):
            order = [str(c) for c in groups.cat.categories]
        else:
            order = sorted(present)
    return [str(level) for level in order if str(level) in present]


def save_figure(fig, filepath, dpi=300, figsize=None):
    """Write a figure at a fixed size and resolution, then close it."""
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)
    if figsize is not None:
        fig.set_size_inches(*figsize)
    fig.savefig(filepath, dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    return filepath


def plot_group_boxplot(values_df, metadata_df, column, group_var='Treatment', order=None,
                       palette=None, ylabel=None, title=None, theme=None):
    """
    Create a boxplot of one value column by group, with the individual samples.

    Parameters:
    -----------
    values_df : pandas.DataFrame
        Per-sample values with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    column : str
        Column of values_df to plot
    group_var : str
        Grouping variable from metadata
    order : list, optional
        Level order on the x axis
    palette : dict, optional
        Colour per level

    Returns:
    --------
    matplotlib.figure.Figure
        Boxplot figure
    """
    if column not in values_df.columns:
        raise ValueError(f"Column '{column}' not found")

    samples = values_df.index
    plot_data = pd.DataFrame({
        column: values_df[column].values,
        group_var: metadata_df.loc[samples, group_var].astype(str).values,
    })
    levels = _levels(metadata_df.loc[samples], group_var, order)
    colors = level_palette(levels, palette)

    with figure_theme(theme):
        fig, ax = plt.subplots(figsize=(6, 4.5))
        sns.boxplot(x=group_var, y=column, data=plot_data, order=levels, hue=group_var,
                    hue_order=levels, palette=colors, dodge=False, showfliers=False, ax=ax)
        sns.stripplot(x=group_var, y=column, data=plot_data, order=levels,
                      color='black', size=4, alpha=0.6, ax=ax)
        if ax.get_legend() is not None:
            ax.get_legend().remove()

        ax.set_title(title or f'{column} by {group_var}')
        ax.set_xlabel(group_var)
        ax.set_ylabel(ylabel or column)
        sns.despine(ax=ax)
        fig.tight_layout()

    return fig


def plot_alpha_diversity_boxplot(alpha_df, metadata_df, group_var='Treatment', metric=None,
                                 order=None, palette=None, theme=None):
    """
    Boxplots of alpha diversity by group.

    Returns a single figure when ``metric`` is given, otherwise a dict of
    metric -> figure.
    """
    labels = {
        'richness': 'Observed OTUs',
        'shannon': 'Shannon diversity (H)',
        'shannon_effective': 'Effective number of OTUs (exp H)',
    }
    metrics = [metric] if metric is not None else list(alpha_df.columns)
    figures = {
        m: plot_group_boxplot(alpha_df, metadata_df, m, group_var, order=order, palette=palette,
                              ylabel=labels.get(m, m), title=f'{labels.get(m, m)} by {group_var}',
                              theme=theme)
        for m in metrics
    }
    return figures[metric] if metric is not None else figures


def plot_taxon_group_boxplot(group_df, metadata_df, group, group_var='Treatment', order=None,
                             palette=None, theme=None):
    """Boxplot of a taxon group's relative abundance (in percent) by group."""
    percent = group_df[[group]] * 100
    label = group.replace('_', ' ').capitalize()
    return plot_group_boxplot(percent, metadata_df, group, group_var, order=order, palette=palette,
                              ylabel=f'{label} (% of reads)', title=f'{label} by {group_var}',
                              theme=theme)


def plot_ordination(scores, metadata_df, variable='Treatment', explained=None, title=None,
                    stress=None, order=None, palette=None, theme=None):
    """
    Scatter plot of ordination scores coloured by a metadata variable.

    Parameters:
    -----------
    scores : pandas.DataFrame
        Sample scores; the first two columns are plotted
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    explained : pandas.Series, optional
        Proportion of variation explained per axis, shown on the axis labels
    stress : float, optional
        NMDS stress, shown in a corner

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    x_axis, y_axis = scores.columns[:2]
    plot_df = scores[[x_axis, y_axis]].copy()
    plot_df[variable] = metadata_df.loc[scores.index, variable].astype(str).values
    levels = _levels(metadata_df.loc[scores.index], variable, order)
    colors = level_palette(levels, palette)

    with figure_theme(theme):
        fig, ax = plt.subplots(figsize=(6, 5))
        sns.scatterplot(data=plot_df, x=x_axis, y=y_axis, hue=variable, hue_order=levels,
                        palette=colors, s=60, edgecolor='black', linewidth=0.4, ax=ax)

        if explained is not None:
            ax.set_xlabel(f'{x_axis} ({explained.iloc[0] * 100:.1f}%)')
            ax.set_ylabel(f'{y_axis} ({explained.iloc[1] * 100:.1f}%)')
        else:
            ax.set_xlabel(x_axis)
            ax.set_ylabel(y_axis)

        if stress is not None:
            ax.text(0.02, 0.98, f"Stress: {stress:.3f}",
                    transform=ax.transAxes, va='top', ha='left',
                    bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        ax.axhline(0, color='grey', linewidth=0.5, linestyle=':')
        ax.axvline(0, color='grey', linewidth=0.5, linestyle=':')
        ax.set_title(title or f'Ordination by {variable}')
        ax.legend(title=variable, bbox_to_anchor=(1.02, 1), loc='upper left')
        sns.despine(ax=ax)
        fig.tight_layout()

    return fig


def plot_rda_biplot(rda_result, metadata_df, variable='Treatment', order=None, palette=None,
                    theme=None, title=None):
    """
    RDA biplot: sample scores on the first two constrained axes and arrows for
    the environmental covariates.
    """
    fig = plot_ordination(rda_result['sample_scores'], metadata_df, variable,
                          explained=rda_result['proportion_explained'],
                          title=title or 'Redundancy analysis', order=order, palette=palette,
                          theme=theme)
    ax = fig.axes[0]

    biplot = rda_result['biplot_scores']
    if biplot.shape[1] < 2:
        return fig

    # Stretch arrows to the extent of the sample cloud
    scores = rda_result['sample_scores']
    reach = np.abs(scores.values).max()
    longest = np.sqrt((biplot.values ** 2).sum(axis=1)).max()
    stretch = 0.9 * reach / longest if longest > 0 else 1.0

    for covariate, (x, y) in biplot.iloc[:, :2].iterrows():
        ax.annotate('', xy=(x * stretch, y * stretch), xytext=(0, 0),
                    arrowprops=dict(arrowstyle='->', color='firebrick', linewidth=1))
        ax.text(x * stretch * 1.08, y * stretch * 1.08, covariate, color='firebrick',
                ha='center', va='center', fontsize=8)

    return fig


def plot_stacked_bar(rank_counts_df, metadata_df, group_var='Treatment', top_n=10,
                     other_category=True, order=None, rank_label='Taxon', theme=None):
    """
    Create a stacked bar plot of mean relative abundance of the most abundant
    taxa per group.

    Parameters:
    -----------
    rank_counts_df : pandas.DataFrame
        Counts collapsed to a taxonomic rank, samples as rows
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    group_var : str
        Grouping variable from metadata
    top_n : int
        Number of top taxa to include
    other_category : bool
        Whether to include an "Other" category for remaining taxa

    Returns:
    --------
    matplotlib.figure.Figure
        Stacked bar plot figure
    """
    rel = rank_counts_df.div(rank_counts_df.sum(axis=1), axis=0) * 100

    # Select taxa to display based on mean abundance
    top_taxa = rel.mean(axis=0).nlargest(top_n).index.tolist()
    plot_data = rel[top_taxa].copy()
    if other_category and len(top_taxa) < rel.shape[1]:
        plot_data['Other'] = rel.drop(columns=top_taxa).sum(axis=1)

    groups = metadata_df.loc[plot_data.index, group_var].astype(str)
    levels = _levels(metadata_df.loc[plot_data.index], group_var, order)
    group_means = plot_data.groupby(groups.values).mean().reindex(levels)

    with figure_theme(theme):
        fig, ax = plt.subplots(figsize=(7, 5))
        colors = sns.color_palette('tab20', group_means.shape[1])
        group_means.plot(kind='bar', stacked=True, ax=ax, color=colors, width=0.8, edgecolor='white')

        ax.set_title(f'Mean {rank_label} composition by {group_var}')
        ax.set_xlabel(group_var)
        ax.set_ylabel('Relative Abundance (%)')
        ax.tick_params(axis='x', rotation=0)
        ax.legend(title=rank_label, bbox_to_anchor=(1.02, 1), loc='upper left', fontsize=7)
        sns.despine(ax=ax)
        fig.tight_layout()

    return fig
