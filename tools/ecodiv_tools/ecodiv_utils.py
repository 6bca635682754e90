"""
Utility functions for loading, validating and preparing community
abundance data.
"""

import copy
import logging
from pathlib import Path

import numpy as np
import pandas as pd
import yaml
from skbio.stats import subsample_counts

from .errors import InvalidInputError

logger = logging.getLogger(__name__)

LOGGER_NAME = 'ecodiv_tools'
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
UNASSIGNED = 'Unassigned'

# Configuration entries holding file or directory paths
CONFIG_PATHS = [
    ('input', 'abundance_file'),
    ('input', 'metadata_file'),
    ('input', 'taxonomy_file'),
    ('output', 'results_dir'),
    ('logging', 'file'),
]

DEFAULT_CONFIG = {
    'input': {
        'abundance_file': 'data/abundance.txt',
        'metadata_file': 'data/groups.txt',
        'taxonomy_file': 'data/taxonomy.txt',
        'sample_id_column': None,
        'samples_as_rows': True,
    },
    'metadata': {
        'group_variables': ['site', 'month'],
        'combined_variable': 'site_month',
    },
    'diversity': {
        'indices': ['observed', 'chao1', 'evenness', 'shannon'],
        'allow_empty_samples': False,
    },
    'statistics': {
        'anova_factors': ['site', 'month'],
        'interaction': True,
        'anova_type': 1,
        'tukey': True,
        'alpha': 0.05,
    },
    'beta': {
        'metric': 'braycurtis',
        'filter': {
            'min_count': 2,
            'min_prevalence': 0.11,
        },
        'exclude_taxa': {
            'rank': None,
            'labels': [],
        },
        'rarefaction': {
            'depth': None,
            'seed': 711,
        },
        'permutations': 999,
        'permutation_seed': 42,
        'composition_rank': None,
    },
    'output': {
        'results_dir': 'results',
        'figure_dpi': 300,
        'figure_format': 'png',
        'precision': 4,
        'scientific': False,
    },
    'logging': {
        'level': 'INFO',
        'file': None,
    },
}


def setup_logger(log_file=None, log_level='INFO'):
    """
    Set up the package logger with a console handler and an optional file
    handler. Calling it again replaces the previously attached handlers.

    Parameters:
    -----------
    log_file : str, optional
        Path to a log file
    log_level : str or int
        Logging level name or number

    Returns:
    --------
    logging.Logger
        The configured 'ecodiv_tools' logger
    """
    if isinstance(log_level, str):
        log_level = getattr(logging, log_level.upper(), logging.INFO)

    pkg_logger = logging.getLogger(LOGGER_NAME)
    pkg_logger.setLevel(log_level)

    for handler in list(pkg_logger.handlers):
        pkg_logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    pkg_logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(log_level)
        file_handler.setFormatter(formatter)
        pkg_logger.addHandler(file_handler)

    return pkg_logger


def load_config(filepath=None):
    """
    Load the YAML analysis configuration on top of the defaults.

    Parameters:
    -----------
    filepath : str or Path, optional
        Path to a YAML configuration file. When omitted the defaults are
        returned.

    Returns:
    --------
    dict
        Merged configuration
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    if filepath is None:
        return config

    with open(filepath, 'r') as f:
        user_config = yaml.safe_load(f) or {}

    if not isinstance(user_config, dict):
        raise ValueError(f"Configuration file {filepath} must contain a mapping")

    unknown = sorted(set(user_config) - set(DEFAULT_CONFIG))
    if unknown:
        raise ValueError(f"Unknown configuration section(s): {', '.join(unknown)}")

    return _deep_merge(config, user_config)


def resolve_config_paths(config, base_dir):
    """
    Anchor the relative paths of a configuration at a project directory.

    Parameters:
    -----------
    config : dict
        Analysis configuration
    base_dir : str or Path
        Directory the relative paths refer to

    Returns:
    --------
    dict
        Copy of the configuration with absolute paths
    """
    resolved = copy.deepcopy(config)
    for section, key in CONFIG_PATHS:
        value = resolved[section].get(key)
        if value and not Path(value).is_absolute():
            resolved[section][key] = str(Path(base_dir) / value)
    return resolved


def missing_input_files(config, keys=('abundance_file', 'metadata_file')):
    """Input files named in the configuration that do not exist."""
    input_config = config['input']
    return [input_config[k] for k in keys
            if input_config.get(k) and not Path(input_config[k]).exists()]


def _deep_merge(base, override):
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            base[key] = _deep_merge(base[key], value)
        else:
            base[key] = value
    return base


def _read_whitespace_table(filepath, id_column=None):
    """Read a whitespace-delimited table with a header row, indexed by its id column."""
    df = pd.read_csv(filepath, sep=r'\s+')

    if id_column is not None:
        if id_column not in df.columns:
            raise InvalidInputError(f"Identifier column '{id_column}' not found in {filepath}")
        df = df.set_index(id_column)
    elif isinstance(df.index, pd.RangeIndex):
        # No R-style row names: the first column holds the identifiers
        df = df.set_index(df.columns[0])

    df.index = df.index.astype(str)
    return df


def validate_abundance_table(abundance_df):
    """
    Check that an abundance table holds unique identifiers and
    non-negative integer counts.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index, taxa as columns

    Returns:
    --------
    pandas.DataFrame
        The same table, unchanged

    Raises:
    -------
    InvalidInputError
        If the table is empty or holds invalid values
    """
    if abundance_df.shape[0] == 0 or abundance_df.shape[1] == 0:
        raise InvalidInputError("Abundance table is empty")

    duplicated_samples = abundance_df.index[abundance_df.index.duplicated()].unique()
    if len(duplicated_samples):
        raise InvalidInputError("Duplicate sample identifiers", samples=duplicated_samples)

    duplicated_taxa = abundance_df.columns[abundance_df.columns.duplicated()].unique()
    if len(duplicated_taxa):
        raise InvalidInputError("Duplicate taxon identifiers", taxa=duplicated_taxa)

    non_numeric = [c for c in abundance_df.columns if not pd.api.types.is_numeric_dtype(abundance_df[c])]
    if non_numeric:
        raise InvalidInputError("Abundance table has non-numeric columns", taxa=non_numeric)

    missing = abundance_df.index[abundance_df.isna().any(axis=1)]
    if len(missing):
        raise InvalidInputError("Abundance table has missing values", samples=missing)

    negative = abundance_df.index[(abundance_df < 0).any(axis=1)]
    if len(negative):
        raise InvalidInputError("Abundance table has negative counts", samples=negative)

    values = abundance_df.to_numpy(dtype=float)
    fractional = abundance_df.index[(values != np.round(values)).any(axis=1)]
    if len(fractional):
        raise InvalidInputError("Abundance table has non-integer counts", samples=fractional)

    return abundance_df


def load_abundance_table(filepath, samples_as_rows=True):
    """
    Load a count table from a whitespace-delimited file.

    Parameters:
    -----------
    filepath : str or Path
        Path to the abundance table (first row is the header)
    samples_as_rows : bool
        Whether the file lists samples as rows and taxa as columns.
        Set to False for a taxa x samples file.

    Returns:
    --------
    pandas.DataFrame
        Integer abundance table with samples as index, taxa as columns
    """
    abundance_df = _read_whitespace_table(filepath)
    if not samples_as_rows:
        abundance_df = abundance_df.T
        abundance_df.index = abundance_df.index.astype(str)

    abundance_df.columns = abundance_df.columns.astype(str)
    validate_abundance_table(abundance_df)

    abundance_df = abundance_df.astype(np.int64)
    abundance_df.index.name = 'sample_id'
    abundance_df.columns.name = 'taxon'

    logger.info(f"Loaded abundance table: {abundance_df.shape[0]} samples, {abundance_df.shape[1]} taxa")
    return abundance_df


def load_metadata(filepath, sample_id_column=None, categorical_columns=None):
    """
    Load sample grouping metadata from a whitespace-delimited file.

    Parameters:
    -----------
    filepath : str or Path
        Path to the metadata file
    sample_id_column : str, optional
        Column name for sample IDs (default: row names or first column)
    categorical_columns : list, optional
        Columns to treat as categorical even if they look numeric

    Returns:
    --------
    pandas.DataFrame
        Metadata DataFrame with sample IDs as index
    """
    metadata_df = _read_whitespace_table(filepath, sample_id_column)

    duplicated = metadata_df.index[metadata_df.index.duplicated()].unique()
    if len(duplicated):
        raise InvalidInputError("Duplicate sample identifiers in metadata", samples=duplicated)

    categorical_columns = set(categorical_columns or [])
    for col in metadata_df.columns:
        # Grouping variables are compared as labels, never as numbers
        if (col in categorical_columns or metadata_df[col].dtype == 'object'
                or metadata_df[col].dtype.name == 'category'):
            metadata_df[col] = metadata_df[col].astype(str)

    metadata_df.index.name = 'sample_id'
    logger.info(f"Loaded metadata: {metadata_df.shape[0]} samples, {metadata_df.shape[1]} variables")
    return metadata_df


def load_taxonomy(filepath):
    """
    Load a taxonomy table mapping taxon identifiers to rank labels.

    Parameters:
    -----------
    filepath : str or Path
        Path to the taxonomy table

    Returns:
    --------
    pandas.DataFrame
        Taxonomy with taxa as index and ranks as columns
    """
    taxonomy_df = _read_whitespace_table(filepath)
    taxonomy_df = taxonomy_df.fillna(UNASSIGNED).astype(str)
    taxonomy_df = taxonomy_df.apply(lambda col: col.str.strip())
    taxonomy_df.index.name = 'taxon'

    logger.info(f"Loaded taxonomy: {taxonomy_df.shape[0]} taxa, ranks {list(taxonomy_df.columns)}")
    return taxonomy_df


def add_combined_factor(metadata_df, factors, name=None, sep='_'):
    """
    Add a grouping column combining several factors (e.g. site and month).

    Returns:
    --------
    pandas.DataFrame
        Copy of the metadata with the combined column added
    """
    missing = [f for f in factors if f not in metadata_df.columns]
    if missing:
        raise InvalidInputError(f"Metadata is missing grouping column(s): {', '.join(missing)}")

    if name is None:
        name = sep.join(factors)

    result = metadata_df.copy()
    result[name] = result[list(factors)].astype(str).agg(sep.join, axis=1)
    return result


def align_tables(abundance_df, metadata_df):
    """
    Match metadata rows to the samples of an abundance table.

    The two tables must describe exactly the same set of samples.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index

    Returns:
    --------
    pandas.DataFrame
        Copy of the metadata reordered to the abundance sample order
    """
    duplicated = metadata_df.index[metadata_df.index.duplicated()].unique()
    if len(duplicated):
        raise InvalidInputError("Duplicate sample identifiers in metadata", samples=duplicated)

    abundance_ids = set(abundance_df.index)
    metadata_ids = set(metadata_df.index)

    without_metadata = sorted(abundance_ids - metadata_ids)
    if without_metadata:
        raise InvalidInputError("Samples have no metadata entry", samples=without_metadata)

    without_abundance = sorted(metadata_ids - abundance_ids)
    if without_abundance:
        raise InvalidInputError("Metadata samples are missing from the abundance table",
                                samples=without_abundance)

    return metadata_df.loc[abundance_df.index].copy()


def filter_low_abundance(abundance_df, min_count=2, min_prevalence=0.11):
    """
    Filter out low abundance and low prevalence taxa.

    A taxon is kept when its count exceeds ``min_count`` in more than
    ``min_prevalence`` of the samples.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index, taxa as columns
    min_count : int
        Count a taxon must exceed in a sample to be considered present
    min_prevalence : float
        Fraction of samples in which a taxon must be present

    Returns:
    --------
    pandas.DataFrame
        Filtered abundance table
    """
    n_samples = abundance_df.shape[0]
    prevalence = (abundance_df > min_count).sum(axis=0)
    keep_taxa = prevalence > min_prevalence * n_samples

    logger.info(f"Filtering from {abundance_df.shape[1]} to {int(keep_taxa.sum())} taxa "
                f"(count > {min_count} in more than {min_prevalence * 100:.1f}% of samples)")

    return abundance_df.loc[:, keep_taxa]


def filter_taxa_by_label(abundance_df, taxonomy_df, rank, exclude):
    """
    Drop taxa whose label at a given rank is listed in ``exclude``
    (e.g. chloroplast or mitochondria sequences).
    """
    if rank not in taxonomy_df.columns:
        raise InvalidInputError(f"Rank '{rank}' not found in taxonomy table")

    labels = taxonomy_df[rank].reindex(abundance_df.columns).fillna(UNASSIGNED)
    drop = labels.isin(set(exclude))

    logger.info(f"Removing {int(drop.sum())} taxa labelled {sorted(set(exclude))} at rank '{rank}'")
    return abundance_df.loc[:, ~drop.to_numpy()]


def aggregate_by_rank(abundance_df, taxonomy_df, rank):
    """
    Sum taxon counts that share a label at a taxonomic rank.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index, taxa as columns
    taxonomy_df : pandas.DataFrame
        Taxonomy with taxa as index and ranks as columns
    rank : str
        Rank to aggregate to (e.g. 'Phylum')

    Returns:
    --------
    pandas.DataFrame
        Abundance table with one column per label
    """
    if rank not in taxonomy_df.columns:
        raise InvalidInputError(f"Rank '{rank}' not found in taxonomy table")

    labels = taxonomy_df[rank].reindex(abundance_df.columns).fillna(UNASSIGNED)
    aggregated = abundance_df.T.groupby(labels.to_numpy()).sum().T
    aggregated.columns.name = rank
    return aggregated


def rarefy(abundance_df, depth=None, seed=711, replace=False):
    """
    Subsample every sample to an even sequencing depth.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Integer abundance table with samples as index, taxa as columns
    depth : int, optional
        Target depth (default: smallest sample total)
    seed : int or numpy.random.Generator
        Seed of the random generator; identical seeds give identical tables
    replace : bool
        Whether to sample with replacement

    Returns:
    --------
    pandas.DataFrame
        Rarefied abundance table. Samples below the depth and taxa absent
        after subsampling are removed.
    """
    totals = abundance_df.sum(axis=1)
    if depth is None:
        depth = int(totals.min())

    if depth <= 0:
        raise InvalidInputError("Rarefaction depth must be positive",
                                samples=totals.index[totals <= 0])

    keep = totals >= depth
    dropped = totals.index[~keep]
    if len(dropped):
        logger.warning(f"Removing {len(dropped)} sample(s) with fewer than {depth} reads: {list(dropped)}")
    if not keep.any():
        raise InvalidInputError(f"No sample reaches the rarefaction depth of {depth}")

    rng = np.random.default_rng(seed)
    counts = abundance_df.loc[keep].to_numpy(dtype=np.int64)
    rarefied = np.empty_like(counts)

    for i, row in enumerate(counts):
        rarefied[i] = subsample_counts(row, int(depth), replace=replace, seed=rng)

    result = pd.DataFrame(rarefied, index=abundance_df.index[keep], columns=abundance_df.columns)

    empty_taxa = result.columns[result.sum(axis=0) == 0]
    if len(empty_taxa):
        logger.info(f"{len(empty_taxa)} taxa removed because they are absent after subsampling")
        result = result.drop(columns=empty_taxa)

    logger.info(f"Rarefied {result.shape[0]} samples to {depth} reads (seed={seed})")
    return result
