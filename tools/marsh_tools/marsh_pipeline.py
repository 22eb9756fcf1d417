"""
Analysis stages for the seawater-intrusion marsh study.

Each stage receives the prepared study data and the configuration and
returns its result tables; figures go to the directory it is given and the
statistics are printed to the console.
"""

from pathlib import Path

from .marsh_config import resolve_data_path
from .marsh_diversity import calculate_alpha_diversity, calculate_beta_diversity, run_nmds, run_pcoa
from .marsh_logger import log_print
from .marsh_stats import (
    compare_treatments,
    define_taxon_groups,
    pairwise_permanova,
    perform_permanova,
    perform_permdisp,
    rda_permutation_test,
    run_rda,
    scale_covariates,
    taxon_group_abundance,
)
from .marsh_utils import (
    collapse_taxa,
    filter_study_subset,
    join_environment,
    load_design_table,
    load_environment,
    load_otu_table,
    load_taxonomy,
    parse_taxonomy,
    rarefy,
    reconcile_samples,
    transform_abundance,
)
from .marsh_viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_rda_biplot,
    plot_stacked_bar,
    plot_taxon_group_boxplot,
    save_figure,
)


ANALYSES = ['alpha', 'beta', 'rda', 'taxon-groups', 'composition']
GROUP_VAR = 'Treatment'


def _check_file(path):
    if not Path(path).exists():
        raise FileNotFoundError(f"Input file not found: {path}")
    return path


def _viz_options(config):
    viz = config['visualization']
    return {
        'order': config['study']['treatments'],
        'palette': viz.get('palette'),
        'theme': {'style': viz.get('style'), 'context': viz.get('context')},
    }


def _save(fig, config, figures_dir, name):
    viz = config['visualization']
    path = save_figure(fig, Path(figures_dir) / name, dpi=viz['figure_dpi'], figsize=viz.get('figure_size'))
    log_print(f"Figure saved to {path}", level="info")
    return path


def _print_header(title):
    print("\n" + "=" * 70)
    print(f"  {title}")
    print("=" * 70)


def _print_comparisons(results):
    for name, result in results.items():
        print(f"\n--- {name}: one-way ANOVA ---")
        print(result['anova'].to_string())
        print(f"\n--- {name}: Tukey HSD ---")
        print(result['tukey'].to_string(index=False))


def prepare_study_data(config, molecule, project_root='.'):
    """
    Load, reconcile, subset and rarefy the data for one molecule type.

    Returns:
    --------
    dict
        'molecule', 'metadata', 'counts' (rarefied), 'raw_counts', 'depth',
        'taxonomy' and 'environment' (None when no file is configured)
    """
    data_cfg = config['data']
    study_cfg = config['study']
    default_molecule = study_cfg.get('default_molecule', 'DNA')

    design_df = load_design_table(
        _check_file(resolve_data_path(config, 'design_file', project_root)),
        sample_id_column=data_cfg.get('sample_id_column', 'SampleID'),
        default_molecule=default_molecule,
    )
    counts_df, otu_taxonomy = load_otu_table(
        _check_file(resolve_data_path(config, 'otu_table', project_root)),
        sep=data_cfg.get('otu_sep', '\t'),
    )

    if data_cfg.get('taxonomy_file'):
        taxonomy_df = load_taxonomy(
            _check_file(resolve_data_path(config, 'taxonomy_file', project_root)),
            sep=data_cfg.get('taxonomy_sep', '\t'),
        )
    elif otu_taxonomy is not None:
        taxonomy_df = parse_taxonomy(otu_taxonomy)
    else:
        raise ValueError("No taxonomy file configured and the OTU table has no taxonomy column")

    metadata_df, keyed_counts = reconcile_samples(design_df, counts_df, molecule,
                                                  default_molecule=default_molecule)
    metadata_df = filter_study_subset(metadata_df, study_cfg['treatments'], study_cfg.get('dates'))
    keyed_counts = keyed_counts.loc[metadata_df.index]

    rarefied, depth = rarefy(keyed_counts, config['rarefaction']['min_count'],
                             seed=config['rarefaction'].get('seed'))
    metadata_df = metadata_df.loc[rarefied.index]

    environment_df = None
    if data_cfg.get('environment_file'):
        environment_df = load_environment(_check_file(resolve_data_path(config, 'environment_file', project_root)))

    return {
        'molecule': molecule,
        'metadata': metadata_df,
        'counts': rarefied,
        'raw_counts': keyed_counts,
        'depth': depth,
        'taxonomy': taxonomy_df,
        'environment': environment_df,
    }


def run_alpha_stage(study, config, figures_dir):
    """Richness and effective Shannon diversity by treatment."""
    _print_header(f"Alpha diversity ({study['molecule']}, rarefied to {study['depth']} reads)")
    alpha_df = calculate_alpha_diversity(study['counts'])
    metrics = ['richness', 'shannon_effective']

    summary = alpha_df[metrics].groupby(study['metadata'][GROUP_VAR], observed=True).agg(['mean', 'std'])
    print(summary.to_string())

    comparisons = compare_treatments(alpha_df[metrics], study['metadata'], GROUP_VAR)
    _print_comparisons(comparisons)

    figures = plot_alpha_diversity_boxplot(alpha_df[metrics], study['metadata'], GROUP_VAR, **_viz_options(config))
    for metric, fig in figures.items():
        _save(fig, config, figures_dir, f"alpha_{metric}.png")

    return {'alpha': alpha_df, 'comparisons': comparisons}


def run_beta_stage(study, config, figures_dir):
    """Ordination and PERMANOVA of community composition by treatment."""
    div_cfg = config['diversity']
    perm_cfg = config['permanova']
    _print_header(f"Beta diversity ({study['molecule']})")

    dm = calculate_beta_diversity(study['counts'], metric=div_cfg['beta_metric'], transform=div_cfg['transform'])
    scores, explained = run_pcoa(dm, n_axes=div_cfg.get('pcoa_axes', 2))

    omnibus = perform_permanova(dm, study['metadata'], GROUP_VAR, permutations=perm_cfg['permutations'])
    print(f"PERMANOVA ({GROUP_VAR}): F={omnibus['test-statistic']:.3f}, R2={omnibus['R2']:.3f}, "
          f"p={omnibus['p-value']:.4f}, n={omnibus['sample size']}")

    pairwise = pairwise_permanova(dm, study['metadata'], GROUP_VAR, permutations=perm_cfg['permutations'],
                                  correction=perm_cfg.get('correction', 'none'))
    print("\n--- Pairwise PERMANOVA ---")
    print(pairwise.to_string(index=False))

    dispersion = perform_permdisp(dm, study['metadata'], GROUP_VAR, permutations=perm_cfg['permutations'])
    print(f"\nPERMDISP ({GROUP_VAR}): F={dispersion['test-statistic']:.3f}, p={dispersion['p-value']:.4f}")

    method = config['visualization'].get('ordination_method', 'PCoA').upper()
    if method == 'PCOA':
        fig = plot_ordination(scores, study['metadata'], GROUP_VAR, explained=explained,
                              title=f"PCoA ({div_cfg['beta_metric']}, {study['molecule']})",
                              **_viz_options(config))
    elif method == 'NMDS':
        nmds_scores, stress = run_nmds(dm)
        fig = plot_ordination(nmds_scores, study['metadata'], GROUP_VAR, stress=stress,
                              title=f"NMDS ({div_cfg['beta_metric']}, {study['molecule']})",
                              **_viz_options(config))
    else:
        raise ValueError(f"Unknown ordination method: {method}. Use 'PCoA' or 'NMDS'.")
    _save(fig, config, figures_dir, f"beta_{method.lower()}.png")

    return {
        'distance_matrix': dm,
        'scores': scores,
        'explained': explained,
        'permanova': omnibus,
        'pairwise': pairwise,
        'permdisp': dispersion,
    }


def run_rda_stage(study, config, figures_dir):
    """Redundancy analysis against the scaled environmental covariates."""
    rda_cfg = config['rda']
    if study['environment'] is None:
        raise ValueError("RDA requires an environmental table (data.environment_file)")
    _print_header(f"Redundancy analysis ({study['molecule']})")

    covariates = rda_cfg['covariates']
    metadata_env = join_environment(study['metadata'], study['environment'], covariates=covariates)
    response = transform_abundance(study['counts'].loc[metadata_env.index], rda_cfg['transform'])
    scaled = scale_covariates(metadata_env, covariates)

    result = run_rda(response, scaled)
    tests = rda_permutation_test(response, scaled, permutations=rda_cfg['permutations'], seed=rda_cfg.get('seed'))

    print(f"Constrained fraction of variation: {result['constrained_fraction']:.3f}")
    print("\n--- Overall model ---")
    print(tests['model'].to_string())
    print("\n--- Constrained axes ---")
    print(tests['axes'].to_string())
    print("\n--- Terms (sequential) ---")
    print(tests['terms'].to_string())
    print("\n--- Biplot scores ---")
    print(result['biplot_scores'].to_string())

    fig = plot_rda_biplot(result, metadata_env, GROUP_VAR, title=f"RDA ({study['molecule']})",
                          **_viz_options(config))
    _save(fig, config, figures_dir, "rda_biplot.png")

    result['tests'] = tests
    result['metadata'] = metadata_env
    return result


def run_taxon_group_stage(study, config, figures_dir):
    """Relative abundance of the configured taxon groups by treatment."""
    _print_header(f"Taxon groups ({study['molecule']})")
    taxon_groups = define_taxon_groups(study['taxonomy'], config['taxon_groups'])
    group_df = taxon_group_abundance(study['counts'], taxon_groups)

    print((group_df * 100).groupby(study['metadata'][GROUP_VAR], observed=True).agg(['mean', 'std']).to_string())

    testable = [g for g in group_df.columns if group_df[g].var() > 0]
    for group in group_df.columns.difference(testable):
        log_print(f"Taxon group '{group}' is constant across samples; not tested", level="warning")
    comparisons = compare_treatments(group_df[testable], study['metadata'], GROUP_VAR) if testable else {}
    _print_comparisons(comparisons)

    for group in group_df.columns:
        fig = plot_taxon_group_boxplot(group_df, study['metadata'], group, GROUP_VAR, **_viz_options(config))
        _save(fig, config, figures_dir, f"taxon_group_{group}.png")

    return {'taxon_groups': taxon_groups, 'abundance': group_df, 'comparisons': comparisons}


def run_composition_stage(study, config, figures_dir):
    """Stacked bar chart of mean composition at one taxonomic rank."""
    comp_cfg = config['composition']
    rank = comp_cfg['rank']
    rank_counts = collapse_taxa(study['counts'], study['taxonomy'], rank)
    options = _viz_options(config)

    fig = plot_stacked_bar(rank_counts, study['metadata'], GROUP_VAR, top_n=comp_cfg['top_n'],
                           order=options['order'], rank_label=rank, theme=options['theme'])
    _save(fig, config, figures_dir, f"composition_{rank.lower()}.png")
    return {'rank_counts': rank_counts}


STAGES = {
    'alpha': run_alpha_stage,
    'beta': run_beta_stage,
    'rda': run_rda_stage,
    'taxon-groups': run_taxon_group_stage,
    'composition': run_composition_stage,
}


def run_analyses(config, output_dir, molecules=None, analyses=None, project_root='.'):
    """
    Run the selected stages for each molecule type.

    Returns:
    --------
    dict
        molecule -> {'study': prepared data, <stage>: stage results}
    """
    molecules = molecules or config['study']['molecules']
    analyses = analyses or ANALYSES
    unknown = [a for a in analyses if a not in STAGES]
    if unknown:
        raise ValueError(f"Unknown analyses: {unknown}")

    results = {}
    for molecule in molecules:
        log_print(f"Preparing {molecule} data", level="info")
        study = prepare_study_data(config, molecule, project_root=project_root)
        figures_dir = Path(output_dir) / 'figures' / molecule
        molecule_results = {'study': study}
        for analysis in analyses:
            log_print(f"Running {analysis} analysis for {molecule}", level="info")
            molecule_results[analysis] = STAGES[analysis](study, config, figures_dir)
        results[molecule] = molecule_results

    return results
