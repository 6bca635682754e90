"""
Functions for calculating alpha and beta diversity metrics for community
abundance data.

Alpha diversity is computed on the raw count table: singletons and
doubletons drive the Chao1 estimator, so no filtering or normalization is
applied beforehand. Beta diversity is computed on a filtered, rarefied copy
(see ``prepare_beta_table``).
"""

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from skbio.diversity.alpha import chao1 as _skbio_chao1
from skbio.diversity.alpha import shannon as _skbio_shannon
from skbio.stats.distance import DistanceMatrix
from skbio.stats.ordination import pcoa

from .ecodiv_utils import (
    align_tables,
    filter_low_abundance,
    filter_taxa_by_label,
    rarefy,
    validate_abundance_table,
)
from .errors import InvalidInputError, UndefinedStatisticError

logger = logging.getLogger(__name__)

ALPHA_INDICES = ('observed', 'chao1', 'chao1_se', 'evenness', 'shannon')
TIDY_COLUMNS = ['index', 'value', 'defined', 'note']
BETA_METRICS = {
    'braycurtis': 'braycurtis',
    'bray': 'braycurtis',
    'jaccard': 'jaccard',
}


@dataclass(frozen=True)
class DiversityResult:
    """
    Alpha diversity statistics of one sample. Undefined values are None and
    ``notes`` holds (index, reason) pairs explaining them.
    """
    sample_id: str
    observed: int
    chao1: float
    chao1_se: float
    evenness: float = None
    shannon: float = None
    notes: tuple = ()

    def is_defined(self, index):
        return getattr(self, index) is not None

    def note(self, index):
        return dict(self.notes).get(index, '')

    def as_dict(self):
        return {index: getattr(self, index) for index in ALPHA_INDICES}


# ---------------------------------------------------------------------------
# Single-sample indices
# ---------------------------------------------------------------------------

def _as_counts(counts):
    counts = np.asarray(counts)
    if counts.ndim != 1:
        raise InvalidInputError("Counts must be a one-dimensional vector")
    if (counts < 0).any():
        raise InvalidInputError("Counts must be non-negative")
    return counts.astype(np.int64)


def observed_richness(counts):
    """Number of taxa with a strictly positive count."""
    return int(np.count_nonzero(_as_counts(counts)))


def singles_doubles(counts):
    """Return (f1, f2): the number of taxa seen exactly once and exactly twice."""
    counts = _as_counts(counts)
    return int(np.sum(counts == 1)), int(np.sum(counts == 2))


def chao1(counts):
    """
    Bias-corrected Chao1 richness estimate.

    ``S.obs + f1 * (f1 - 1) / (2 * (f2 + 1))``, which stays finite when no
    doubletons are present.
    """
    return float(_skbio_chao1(_as_counts(counts), bias_corrected=True))


def chao1_se(counts):
    """
    Standard error of the bias-corrected Chao1 estimate.

    Parameters:
    -----------
    counts : array-like
        Integer counts of one sample

    Returns:
    --------
    float
        Square root of the bias-corrected Chao1 variance (0 without singletons)
    """
    f1, f2 = singles_doubles(counts)
    if f1 == 0:
        return 0.0

    if f2 == 0:
        # No doubletons: the variance needs the point estimate itself
        s_chao1 = chao1(counts)
        variance = (
            f1 * (f1 - 1) / 2
            + f1 * (2 * f1 - 1) ** 2 / 4
            - f1 ** 4 / (4 * s_chao1)
        )
        return float(np.sqrt(max(variance, 0.0)))

    d = f2 + 1.0
    variance = (
        f1 * (f1 - 1) / (2 * d)
        + f1 * (2 * f1 - 1) ** 2 / (4 * d ** 2)
        + f1 ** 2 * f2 * (f1 - 1) ** 2 / (4 * d ** 4)
    )
    return float(np.sqrt(variance))


def shannon(counts, sample=None):
    """
    Shannon index with natural logarithm, ``-sum(p_i * ln(p_i))``.

    Raises:
    -------
    UndefinedStatisticError
        If the sample has no reads
    """
    counts = _as_counts(counts)
    if counts.sum() == 0:
        raise UndefinedStatisticError('shannon', 'sample has zero total abundance', sample)
    if np.count_nonzero(counts) == 1:
        return 0.0
    return float(_skbio_shannon(counts, base=np.e))


def pielou_evenness(shannon_value, observed, sample=None):
    """
    Pielou's evenness, ``H / ln(S.obs)``.

    Raises:
    -------
    UndefinedStatisticError
        If fewer than two taxa are observed, since ln(S.obs) is not positive
    """
    if observed <= 1:
        raise UndefinedStatisticError(
            'evenness', f'observed richness is {observed}, ln(S.obs) is not positive', sample)
    return float(shannon_value / np.log(observed))


def _sample_result(sample_id, counts):
    notes = {}
    observed = observed_richness(counts)

    try:
        h = shannon(counts, sample=sample_id)
    except UndefinedStatisticError as e:
        h = None
        notes['shannon'] = e.reason

    if h is None:
        evenness = None
        notes['evenness'] = notes['shannon']
    else:
        try:
            evenness = pielou_evenness(h, observed, sample=sample_id)
        except UndefinedStatisticError as e:
            evenness = None
            notes['evenness'] = e.reason

    return DiversityResult(
        sample_id=sample_id,
        observed=observed,
        chao1=chao1(counts),
        chao1_se=chao1_se(counts),
        evenness=evenness,
        shannon=h,
        notes=tuple(notes.items()),
    )


# ---------------------------------------------------------------------------
# Table-level alpha diversity
# ---------------------------------------------------------------------------

def alpha_diversity_results(abundance_df, metadata_df=None, allow_empty=False):
    """
    Calculate alpha diversity for each sample of a raw count table.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Raw abundance table with samples as index, taxa as columns
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index. When given, it must cover
        exactly the samples of the abundance table.
    allow_empty : bool
        Record Shannon and evenness as undefined for samples without reads
        instead of failing

    Returns:
    --------
    list of DiversityResult
        One record per sample, in table order
    """
    validate_abundance_table(abundance_df)
    if metadata_df is not None:
        align_tables(abundance_df, metadata_df)

    totals = abundance_df.sum(axis=1)
    empty = totals.index[totals == 0]
    if len(empty):
        if not allow_empty:
            raise InvalidInputError("Samples have zero total abundance", samples=empty)
        logger.warning(f"{len(empty)} sample(s) have no reads; Shannon and evenness are undefined for them")

    counts = abundance_df.to_numpy(dtype=np.int64)
    return [_sample_result(str(sample_id), row) for sample_id, row in zip(abundance_df.index, counts)]


def calculate_alpha_diversity(abundance_df, metadata_df=None, allow_empty=False):
    """
    Calculate alpha diversity metrics for each sample.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Raw abundance table with samples as index, taxa as columns
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    allow_empty : bool
        Whether samples with no reads are tolerated

    Returns:
    --------
    pandas.DataFrame
        Alpha diversity with samples as index and one column per index.
        Undefined statistics are NaN; ``attrs['notes']`` maps
        sample -> index -> reason.
    """
    results = alpha_diversity_results(abundance_df, metadata_df, allow_empty)

    alpha_df = pd.DataFrame(
        [r.as_dict() for r in results],
        index=pd.Index([r.sample_id for r in results], name='sample_id'),
        columns=list(ALPHA_INDICES),
    )
    alpha_df['observed'] = alpha_df['observed'].astype(np.int64)
    for col in ALPHA_INDICES[1:]:
        alpha_df[col] = pd.to_numeric(alpha_df[col], errors='coerce').astype(float)

    alpha_df.attrs['notes'] = {r.sample_id: dict(r.notes) for r in results if r.notes}
    return alpha_df


def tidy_alpha_diversity(alpha_df, metadata_df=None, group_columns=None, indices=None):
    """
    Reshape a wide alpha diversity table into long form.

    Parameters:
    -----------
    alpha_df : pandas.DataFrame
        Output of ``calculate_alpha_diversity``
    metadata_df : pandas.DataFrame, optional
        Metadata DataFrame with samples as index
    group_columns : list, optional
        Metadata columns to carry over (default: all)
    indices : list, optional
        Indices to include (default: all columns of ``alpha_df``)

    Returns:
    --------
    pandas.DataFrame
        One row per sample and index with columns sample_id, the grouping
        columns, index, value, defined and note
    """
    notes = alpha_df.attrs.get('notes', {})
    indices = list(indices) if indices is not None else list(alpha_df.columns)

    long_df = (
        alpha_df[indices]
        .astype(float)
        .rename_axis('sample_id')
        .reset_index()
        .melt(id_vars='sample_id', var_name='index', value_name='value')
    )
    long_df['defined'] = long_df['value'].notna()
    long_df['note'] = [
        notes.get(sample, {}).get(index, '' if defined else 'undefined')
        for sample, index, defined in zip(long_df['sample_id'], long_df['index'], long_df['defined'])
    ]

    carried = []
    if metadata_df is not None:
        aligned = align_tables(alpha_df, metadata_df)
        carried = list(group_columns) if group_columns is not None else list(aligned.columns)
        groups = aligned[carried].rename_axis('sample_id').reset_index()
        long_df = long_df.merge(groups, on='sample_id', how='left')

    return long_df[['sample_id'] + carried + TIDY_COLUMNS]


def summarize_alpha_diversity(tidy_df, group_var):
    """
    Per-group mean, standard deviation and sample counts of each index.
    """
    grouped = tidy_df.groupby([group_var, 'index'], sort=True)['value']
    summary = grouped.agg(['mean', 'std', 'count']).rename(columns={'count': 'n'})
    summary['n_undefined'] = grouped.size() - summary['n']
    return summary.reset_index()


# ---------------------------------------------------------------------------
# Beta diversity
# ---------------------------------------------------------------------------

def bray_curtis(x, y):
    """Bray-Curtis dissimilarity of two count vectors."""
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    denominator = np.sum(x + y)
    if denominator == 0:
        raise InvalidInputError("Bray-Curtis dissimilarity is undefined for two empty samples")
    return float(np.sum(np.abs(x - y)) / denominator)


def calculate_beta_diversity(abundance_df, metric='braycurtis'):
    """
    Calculate a pairwise beta diversity distance matrix between samples.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index, taxa as columns, usually the
        output of ``prepare_beta_table``
    metric : str
        'braycurtis' (alias 'bray') or 'jaccard' (presence/absence)

    Returns:
    --------
    skbio.DistanceMatrix
        Symmetric distance matrix with a zero diagonal
    """
    key = metric.lower()
    if key not in BETA_METRICS:
        raise ValueError(f"Unknown beta diversity metric: {metric}. Use one of {sorted(BETA_METRICS)}.")

    validate_abundance_table(abundance_df)

    totals = abundance_df.sum(axis=1)
    empty = totals.index[totals == 0]
    if len(empty):
        raise InvalidInputError("Distances are undefined for samples with zero total abundance",
                                samples=empty)

    values = abundance_df.to_numpy(dtype=float)
    if BETA_METRICS[key] == 'jaccard':
        values = values > 0

    # squareform of the condensed vector is symmetric with a zero diagonal
    distances = squareform(pdist(values, metric=BETA_METRICS[key]))

    logger.info(f"Calculated {BETA_METRICS[key]} distances between {len(abundance_df)} samples")
    return DistanceMatrix(distances, ids=[str(i) for i in abundance_df.index])


def prepare_beta_table(abundance_df, taxonomy_df=None, min_count=2, min_prevalence=0.11,
                       exclude_rank=None, exclude=None, depth=None, seed=711):
    """
    Filter and rarefy a raw count table for beta diversity.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Raw abundance table with samples as index, taxa as columns
    taxonomy_df : pandas.DataFrame, optional
        Taxonomy used to drop unwanted lineages
    min_count, min_prevalence :
        Thresholds passed to ``filter_low_abundance``
    exclude_rank : str, optional
        Taxonomic rank the ``exclude`` labels refer to
    exclude : list, optional
        Labels to remove at ``exclude_rank``
    depth : int, optional
        Rarefaction depth (default: smallest remaining sample total)
    seed : int
        Rarefaction seed

    Returns:
    --------
    pandas.DataFrame
        Filtered, rarefied abundance table
    """
    validate_abundance_table(abundance_df)
    table = abundance_df.copy()

    if exclude:
        if taxonomy_df is None or exclude_rank is None:
            raise ValueError("Excluding taxa by label requires a taxonomy table and a rank")
        table = filter_taxa_by_label(table, taxonomy_df, exclude_rank, exclude)

    table = filter_low_abundance(table, min_count=min_count, min_prevalence=min_prevalence)
    if table.shape[1] == 0:
        raise InvalidInputError("No taxa pass the abundance and prevalence filter")

    totals = table.sum(axis=1)
    empty = totals.index[totals == 0]
    if len(empty):
        logger.warning(f"Removing {len(empty)} sample(s) left without reads after filtering: {list(empty)}")
        table = table.drop(index=empty)

    return rarefy(table, depth=depth, seed=seed)


def pcoa_ordination(distance_matrix):
    """
    Principal coordinates analysis of a distance matrix.

    Returns:
    --------
    skbio.OrdinationResults
        Ordination with sample coordinates and proportion explained
    """
    return pcoa(distance_matrix)


def ordination_coordinates(ordination, n_axes=2):
    """
    Sample coordinates on the first ``n_axes`` ordination axes.

    The proportion of variance explained by each axis is kept in
    ``attrs['proportion_explained']``.
    """
    coords = ordination.samples.iloc[:, :n_axes].copy()
    coords.index.name = 'sample_id'
    explained = ordination.proportion_explained.iloc[:n_axes]
    coords.attrs['proportion_explained'] = dict(zip(coords.columns, explained.to_numpy()))
    return coords
