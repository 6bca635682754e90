"""
Alpha and beta diversity analysis pipelines.

Both pipelines read the inputs named in the analysis configuration, run the
calculations and tests, and write tables and figures below
``output.results_dir``. Invalid inputs and degenerate groups abort the run.
"""

import logging
from pathlib import Path

import pandas as pd

from .ecodiv_diversity import (
    calculate_alpha_diversity,
    calculate_beta_diversity,
    ordination_coordinates,
    pcoa_ordination,
    prepare_beta_table,
    summarize_alpha_diversity,
    tidy_alpha_diversity,
)
from .ecodiv_report import ReportOptions, save_figure, write_distance_matrix, write_table
from .ecodiv_stats import (
    alpha_diversity_anova,
    check_anova_assumptions,
    perform_permanova,
    perform_permdisp,
    permanova_multi,
    tukey_hsd,
)
from .ecodiv_utils import (
    add_combined_factor,
    aggregate_by_rank,
    align_tables,
    load_abundance_table,
    load_metadata,
    load_taxonomy,
)
from .ecodiv_viz import plot_alpha_diversity_boxplot, plot_ordination, plot_stacked_bar

logger = logging.getLogger(__name__)


def _output_dirs(config):
    results_dir = Path(config['output']['results_dir'])
    tables_dir = results_dir / 'tables'
    figures_dir = results_dir / 'figures'
    tables_dir.mkdir(parents=True, exist_ok=True)
    figures_dir.mkdir(parents=True, exist_ok=True)
    return tables_dir, figures_dir


def grouping_columns(config):
    """Grouping variables from the configuration, plus their combination when configured."""
    group_vars = list(config['metadata']['group_variables'])
    combined = config['metadata'].get('combined_variable')
    if combined and len(group_vars) > 1:
        group_vars.append(combined)
    return group_vars


def load_inputs(config, with_taxonomy=False):
    """
    Load the abundance table, metadata and (optionally) taxonomy named in
    the configuration.

    Returns:
    --------
    tuple
        (abundance_df, metadata_df, taxonomy_df); metadata is aligned to the
        abundance samples and carries the combined grouping column.
        taxonomy_df is None unless requested and configured.
    """
    input_config = config['input']
    group_vars = list(config['metadata']['group_variables'])

    abundance_df = load_abundance_table(input_config['abundance_file'],
                                        samples_as_rows=input_config.get('samples_as_rows', True))
    metadata_df = load_metadata(input_config['metadata_file'],
                                sample_id_column=input_config.get('sample_id_column'),
                                categorical_columns=group_vars)
    metadata_df = align_tables(abundance_df, metadata_df)

    combined = config['metadata'].get('combined_variable')
    if combined and len(group_vars) > 1:
        metadata_df = add_combined_factor(metadata_df, group_vars, name=combined)

    taxonomy_df = None
    if with_taxonomy and input_config.get('taxonomy_file'):
        taxonomy_df = load_taxonomy(input_config['taxonomy_file'])

    return abundance_df, metadata_df, taxonomy_df


def run_alpha_diversity_analysis(config):
    """
    Calculate alpha diversity on the raw table and compare it between groups.

    Parameters:
    -----------
    config : dict
        Analysis configuration (see ``load_config``)

    Returns:
    --------
    dict
        'alpha' (wide table), 'tidy' (long table), 'anova' (effect table per
        index), 'tukey' (pairwise tables), 'assumptions' (DataFrame) and
        'summary' (per-group summaries)
    """
    options = ReportOptions.from_config(config['output'])
    tables_dir, figures_dir = _output_dirs(config)
    diversity_config = config['diversity']
    stats_config = config['statistics']

    abundance_df, metadata_df, _ = load_inputs(config)
    group_columns = grouping_columns(config)

    logger.info("Calculating alpha diversity metrics...")
    alpha_df = calculate_alpha_diversity(abundance_df, metadata_df,
                                         allow_empty=diversity_config['allow_empty_samples'])
    indices = list(diversity_config['indices'])
    tidy_df = tidy_alpha_diversity(alpha_df, metadata_df, group_columns, indices=indices)

    undefined = tidy_df[~tidy_df['defined']]
    for _, row in undefined.iterrows():
        logger.warning(f"{row['index']} undefined for sample {row['sample_id']}: {row['note']}")

    write_table(alpha_df, tables_dir / 'alpha_diversity.csv', options)
    write_table(tidy_df, tables_dir / 'alpha_diversity_long.csv', options, index=False)

    summaries = {}
    for var in group_columns:
        summaries[var] = summarize_alpha_diversity(tidy_df, var)
        write_table(summaries[var], tables_dir / f'alpha_diversity_summary_{var}.csv', options, index=False)

    factors = list(stats_config['anova_factors'])
    interaction = stats_config['interaction']
    alpha = stats_config['alpha']

    anova_results = {}
    tukey_results = {}
    assumption_rows = []
    for index in indices:
        logger.info(f"Analyzing differences in {index} by {' x '.join(factors)}")
        table = alpha_diversity_anova(tidy_df, index, factors,
                                      interaction=interaction, typ=stats_config['anova_type'])
        anova_results[index] = table

        for effect, p_value in table['p_value'].dropna().items():
            logger.info(f"  {effect}: F = {table.loc[effect, 'F']:.4f}, p-value = {p_value:.4f}")

        subset = tidy_df[tidy_df['index'] == index]
        assumptions = check_anova_assumptions(subset, 'value', factors, interaction=interaction, alpha=alpha)
        assumption_rows.append({'index': index, **assumptions})

        if stats_config['tukey']:
            for factor in factors:
                tukey_results[(index, factor)] = tukey_hsd(subset, 'value', factor, alpha=alpha)

    write_table(pd.concat(anova_results, names=['index', 'effect']), tables_dir / 'alpha_diversity_anova.csv', options)

    assumptions_df = pd.DataFrame(assumption_rows).set_index('index')
    write_table(assumptions_df, tables_dir / 'alpha_diversity_anova_assumptions.csv', options)

    if tukey_results:
        tukey_df = pd.concat(tukey_results, names=['index', 'factor', 'row']).reset_index(level='row', drop=True)
        write_table(tukey_df, tables_dir / 'alpha_diversity_tukey.csv', options)

    for var in group_columns:
        figures = plot_alpha_diversity_boxplot(tidy_df, var)
        for index, fig in figures.items():
            save_figure(fig, figures_dir / f'alpha_{index}_{var}', options)

    logger.info("Alpha diversity analysis complete")
    return {
        'alpha': alpha_df,
        'tidy': tidy_df,
        'anova': anova_results,
        'tukey': tukey_results,
        'assumptions': assumptions_df,
        'summary': summaries,
    }


def run_beta_diversity_analysis(config):
    """
    Filter and rarefy the table, compute distances, ordinate and test
    group differences.

    Parameters:
    -----------
    config : dict
        Analysis configuration (see ``load_config``)

    Returns:
    --------
    dict
        'table' (rarefied abundance), 'distance_matrix', 'ordination',
        'permanova' (per-variable results), 'permanova_multi' (effect table)
        and 'permdisp' (per-variable results)
    """
    options = ReportOptions.from_config(config['output'])
    tables_dir, figures_dir = _output_dirs(config)
    beta_config = config['beta']
    stats_config = config['statistics']

    abundance_df, metadata_df, taxonomy_df = load_inputs(config, with_taxonomy=True)
    group_columns = grouping_columns(config)

    exclude_config = beta_config['exclude_taxa']
    beta_table = prepare_beta_table(
        abundance_df,
        taxonomy_df=taxonomy_df,
        min_count=beta_config['filter']['min_count'],
        min_prevalence=beta_config['filter']['min_prevalence'],
        exclude_rank=exclude_config.get('rank'),
        exclude=exclude_config.get('labels'),
        depth=beta_config['rarefaction']['depth'],
        seed=beta_config['rarefaction']['seed'],
    )
    metadata_beta = metadata_df.loc[beta_table.index]
    write_table(beta_table, tables_dir / 'rarefied_abundance.csv', options)

    logger.info("Calculating beta diversity...")
    beta_dm = calculate_beta_diversity(beta_table, metric=beta_config['metric'])
    write_distance_matrix(beta_dm, tables_dir / f"beta_{beta_config['metric']}.csv", options)

    ordination = pcoa_ordination(beta_dm)
    n_axes = min(3, ordination.samples.shape[1])
    coords = ordination_coordinates(ordination, n_axes=n_axes)
    write_table(coords, tables_dir / 'pcoa_coordinates.csv', options)

    permutations = beta_config['permutations']
    seed = beta_config['permutation_seed']

    permanova_results = {}
    permdisp_results = {}
    for var in group_columns:
        logger.info(f"Performing PERMANOVA for {var}")
        permanova_results[var] = perform_permanova(beta_dm, metadata_beta, var,
                                                   permutations=permutations, seed=seed)
        permdisp_results[var] = perform_permdisp(beta_dm, metadata_beta, var,
                                                 permutations=permutations, seed=seed)
        logger.info(f"  pseudo-F = {permanova_results[var]['test-statistic']:.4f}, "
                    f"p-value = {permanova_results[var]['p-value']:.4f}")

    write_table(pd.DataFrame.from_dict(permanova_results, orient='index'),
                tables_dir / 'permanova_results.csv', options)
    write_table(pd.DataFrame.from_dict(permdisp_results, orient='index'),
                tables_dir / 'permdisp_results.csv', options)

    factors = list(stats_config['anova_factors'])
    multi = permanova_multi(beta_dm, metadata_beta, factors, interaction=stats_config['interaction'],
                            permutations=permutations, seed=seed)
    write_table(multi, tables_dir / 'permanova_terms.csv', options)

    shape_var = factors[1] if len(factors) > 1 else None
    for var in group_columns:
        fig = plot_ordination(ordination, metadata_beta, var,
                              shape_var=shape_var if shape_var != var else None)
        save_figure(fig, figures_dir / f'beta_pcoa_{var}', options)

    rank = beta_config.get('composition_rank')
    if rank and taxonomy_df is not None:
        composition = aggregate_by_rank(beta_table, taxonomy_df, rank)
        write_table(composition, tables_dir / f'composition_{rank}.csv', options)
        for var in group_columns:
            fig = plot_stacked_bar(composition, metadata_beta, var)
            save_figure(fig, figures_dir / f'composition_{rank}_{var}', options)

    logger.info("Beta diversity analysis complete")
    return {
        'table': beta_table,
        'distance_matrix': beta_dm,
        'ordination': ordination,
        'permanova': permanova_results,
        'permanova_multi': multi,
        'permdisp': permdisp_results,
    }
