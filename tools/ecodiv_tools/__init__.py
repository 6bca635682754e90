"""
Community diversity toolkit for microbial abundance data.

This module provides functions for loading count tables and sample groups,
computing alpha diversity (richness, Chao1, evenness, Shannon) and beta
diversity (Bray-Curtis, PCoA), and testing group differences with ANOVA and
PERMANOVA.

Usage:
    from ecodiv_tools import load_abundance_table, calculate_alpha_diversity, ...
"""

from .errors import (
    DegenerateGroupError,
    DiversityError,
    InvalidInputError,
    UndefinedStatisticError
)

from .ecodiv_utils import (
    DEFAULT_CONFIG,
    add_combined_factor,
    aggregate_by_rank,
    align_tables,
    filter_low_abundance,
    filter_taxa_by_label,
    load_abundance_table,
    load_config,
    load_metadata,
    load_taxonomy,
    missing_input_files,
    rarefy,
    resolve_config_paths,
    setup_logger,
    validate_abundance_table
)

from .ecodiv_diversity import (
    ALPHA_INDICES,
    DiversityResult,
    alpha_diversity_results,
    bray_curtis,
    calculate_alpha_diversity,
    calculate_beta_diversity,
    chao1,
    chao1_se,
    observed_richness,
    ordination_coordinates,
    pcoa_ordination,
    pielou_evenness,
    prepare_beta_table,
    shannon,
    summarize_alpha_diversity,
    tidy_alpha_diversity
)

from .ecodiv_stats import (
    alpha_diversity_anova,
    anova,
    check_anova_assumptions,
    perform_permanova,
    perform_permdisp,
    permanova_multi,
    tukey_hsd
)

from .ecodiv_report import (
    ReportOptions,
    format_table,
    save_figure,
    write_distance_matrix,
    write_table
)

from .ecodiv_viz import (
    plot_alpha_diversity_boxplot,
    plot_ordination,
    plot_stacked_bar
)

from .ecodiv_pipeline import (
    run_alpha_diversity_analysis,
    run_beta_diversity_analysis
)

__version__ = '0.1.0'

__all__ = [
    'DegenerateGroupError',
    'DiversityError',
    'InvalidInputError',
    'UndefinedStatisticError',
    'DEFAULT_CONFIG',
    'add_combined_factor',
    'aggregate_by_rank',
    'align_tables',
    'filter_low_abundance',
    'filter_taxa_by_label',
    'load_abundance_table',
    'load_config',
    'load_metadata',
    'load_taxonomy',
    'missing_input_files',
    'rarefy',
    'resolve_config_paths',
    'setup_logger',
    'validate_abundance_table',
    'ALPHA_INDICES',
    'DiversityResult',
    'alpha_diversity_results',
    'bray_curtis',
    'calculate_alpha_diversity',
    'calculate_beta_diversity',
    'chao1',
    'chao1_se',
    'observed_richness',
    'ordination_coordinates',
    'pcoa_ordination',
    'pielou_evenness',
    'prepare_beta_table',
    'shannon',
    'summarize_alpha_diversity',
    'tidy_alpha_diversity',
    'alpha_diversity_anova',
    'anova',
    'check_anova_assumptions',
    'perform_permanova',
    'perform_permdisp',
    'permanova_multi',
    'tukey_hsd',
    'ReportOptions',
    'format_table',
    'save_figure',
    'write_distance_matrix',
    'write_table',
    'plot_alpha_diversity_boxplot',
    'plot_ordination',
    'plot_stacked_bar',
    'run_alpha_diversity_analysis',
    'run_beta_diversity_analysis'
]
