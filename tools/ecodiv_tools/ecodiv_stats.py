"""
Statistical analysis functions for community diversity data.

ANOVA on alpha diversity indices assumes approximately normal residuals and
homogeneous group variances. These assumptions are not enforced:
``check_anova_assumptions`` reports them for the caller to judge.
"""

import logging

import numpy as np
import pandas as pd
from patsy import dmatrix
from scipy import stats
from skbio.stats.distance import permanova, permdisp
from statsmodels.formula.api import ols
from statsmodels.stats.anova import anova_lm
from statsmodels.stats.multicomp import pairwise_tukeyhsd

from .errors import DegenerateGroupError, InvalidInputError

logger = logging.getLogger(__name__)

EFFECT_COLUMNS = ['df', 'sum_sq', 'mean_sq', 'F', 'p_value']
MIN_GROUP_SIZE = 2


def _as_factor_list(factors):
    if isinstance(factors, str):
        return [factors]
    factors = list(factors)
    if not factors:
        raise ValueError("At least one grouping factor is required")
    return factors


def _factor_terms(factors):
    return {f: f'C(Q("{f}"))' for f in factors}


def _model_rhs(factors, interaction):
    terms = list(_factor_terms(factors).values())
    joiner = ' * ' if interaction else ' + '
    return joiner.join(terms)


def _effect_name(term, factors):
    name = term
    for factor, term_string in _factor_terms(factors).items():
        name = name.replace(term_string, factor)
    return name


def _check_groups(frame, factors, interaction, min_size=MIN_GROUP_SIZE):
    """
    Raise DegenerateGroupError when a factor has a single level or a level
    (or a level combination, for interaction models) has fewer than
    ``min_size`` samples.
    """
    for factor in factors:
        # value_counts keeps unused categories of categorical columns as zeros
        counts = frame[factor].value_counts(sort=False)
        if len(counts) < 2:
            raise DegenerateGroupError(factor, None, len(counts))
        small = counts[counts < min_size]
        if len(small):
            raise DegenerateGroupError(factor, small.index[0], int(small.iloc[0]), min_size)

    if interaction and len(factors) > 1:
        levels = [frame[f].astype(str).unique() for f in factors]
        full_index = pd.MultiIndex.from_product(levels, names=factors)
        cells = frame.astype({f: str for f in factors}).groupby(factors).size()
        cells = cells.reindex(full_index, fill_value=0)
        small = cells[cells < min_size]
        if len(small):
            raise DegenerateGroupError(':'.join(factors), ' / '.join(small.index[0]),
                                       int(small.iloc[0]), min_size)


def _prepare_frame(data, response, factors):
    missing = [c for c in [response] + factors if c not in data.columns]
    if missing:
        raise InvalidInputError(f"Columns not found in data: {', '.join(missing)}")

    frame = data[[response] + factors].copy()
    undefined = frame[response].isna()
    if undefined.any():
        logger.warning(f"Dropping {int(undefined.sum())} sample(s) with undefined '{response}' values")
        frame = frame.loc[~undefined]

    frame[response] = frame[response].astype(float)
    return frame


def _fit_model(frame, response, factors, interaction):
    formula = f'Q("{response}") ~ {_model_rhs(factors, interaction)}'
    model_frame = frame.astype({f: str for f in factors})
    return ols(formula, data=model_frame).fit()


def anova(data, response, factors, interaction=True, typ=1):
    """
    Analysis of variance of a response across one or more categorical factors.

    With one factor this is the classic between/within partition with
    F = MS_between / MS_within on (k - 1, n - k) degrees of freedom. With
    several factors the model holds all main effects plus their interaction
    (when ``interaction`` is True), each tested against the residual mean
    square.

    Parameters:
    -----------
    data : pandas.DataFrame
        One row per sample with the response and factor columns
    response : str
        Column holding the response (e.g. a diversity index)
    factors : str or list
        Categorical grouping column(s)
    interaction : bool
        Whether to include interaction terms between factors
    typ : int
        Sum of squares type passed to statsmodels (1 = sequential, as R's aov)

    Returns:
    --------
    pandas.DataFrame
        One row per effect plus 'Residual', with columns
        df, sum_sq, mean_sq, F, p_value

    Raises:
    -------
    DegenerateGroupError
        If a group has fewer than two samples or a factor has a single level
    """
    factors = _as_factor_list(factors)
    interaction = interaction and len(factors) > 1

    frame = _prepare_frame(data, response, factors)
    _check_groups(frame, factors, interaction)

    model = _fit_model(frame, response, factors, interaction)
    table = anova_lm(model, typ=typ)
    table = table.drop(index='Intercept', errors='ignore')

    result = pd.DataFrame({
        'df': table['df'].astype(float),
        'sum_sq': table['sum_sq'].astype(float),
    })
    result['mean_sq'] = result['sum_sq'] / result['df']
    result['F'] = table['F']
    result['p_value'] = table['PR(>F)']
    result.index = [_effect_name(term, factors) for term in result.index]
    result.index.name = 'effect'

    logger.info(f"ANOVA of '{response}' by {' x '.join(factors)} on {len(frame)} samples")
    return result[EFFECT_COLUMNS]


def alpha_diversity_anova(tidy_df, index, factors, interaction=True, typ=1):
    """
    Run ``anova`` for one diversity index of a tidy alpha diversity table.

    Parameters:
    -----------
    tidy_df : pandas.DataFrame
        Output of ``tidy_alpha_diversity`` with grouping columns
    index : str
        Diversity index to test (e.g. 'shannon')
    factors : str or list
        Grouping column(s)

    Returns:
    --------
    pandas.DataFrame
        Effect table as returned by ``anova``
    """
    subset = tidy_df[tidy_df['index'] == index]
    if subset.empty:
        raise InvalidInputError(f"No values found for diversity index '{index}'")
    return anova(subset, 'value', factors, interaction=interaction, typ=typ)


def check_anova_assumptions(data, response, factors, interaction=True, alpha=0.05):
    """
    Report normality of residuals (Shapiro-Wilk) and homogeneity of
    variances across groups (Levene). Purely informational.

    Returns:
    --------
    dict
        Test statistics, p-values and a note
    """
    factors = _as_factor_list(factors)
    interaction = interaction and len(factors) > 1
    frame = _prepare_frame(data, response, factors)

    result = {
        'shapiro W': np.nan,
        'shapiro p-value': np.nan,
        'levene W': np.nan,
        'levene p-value': np.nan,
        'note': '',
    }
    notes = []

    model = _fit_model(frame, response, factors, interaction)
    residuals = np.asarray(model.resid)
    if len(residuals) >= 3 and np.ptp(residuals) > 0:
        w, p = stats.shapiro(residuals)
        result['shapiro W'], result['shapiro p-value'] = float(w), float(p)
        if p < alpha:
            notes.append('residuals deviate from normality')
    else:
        notes.append('normality not assessable')

    groups = [g[response].to_numpy() for _, g in frame.groupby(factors) if len(g) > 1]
    if len(groups) >= 2:
        w, p = stats.levene(*groups)
        result['levene W'], result['levene p-value'] = float(w), float(p)
        if p < alpha:
            notes.append('group variances differ')
    else:
        notes.append('homogeneity not assessable')

    result['note'] = '; '.join(notes) if notes else 'no assumption violations detected'
    if notes:
        logger.info(f"ANOVA assumptions for '{response}': {result['note']}")
    return result


def tukey_hsd(data, response, factor, alpha=0.05):
    """
    Tukey's honest significant difference test between the levels of a factor.

    Returns:
    --------
    pandas.DataFrame
        One row per pair of levels with columns group1, group2, meandiff,
        p_adj, lower, upper, reject
    """
    frame = _prepare_frame(data, response, [factor])
    _check_groups(frame, [factor], interaction=False)

    res = pairwise_tukeyhsd(frame[response].to_numpy(), frame[factor].astype(str).to_numpy(), alpha=alpha)
    # Pairs follow the upper triangle of the sorted levels, as in res.summary()
    first, second = np.triu_indices(len(res.groupsunique), 1)
    confint = np.asarray(res.confint)
    return pd.DataFrame({
        'group1': res.groupsunique[first],
        'group2': res.groupsunique[second],
        'meandiff': np.asarray(res.meandiffs, dtype=float),
        'p_adj': np.asarray(res.pvalues, dtype=float),
        'lower': confint[:, 0],
        'upper': confint[:, 1],
        'reject': np.asarray(res.reject, dtype=bool),
    })


# ---------------------------------------------------------------------------
# Distance-based tests
# ---------------------------------------------------------------------------

def _grouping_for(distance_matrix, metadata_df, variable):
    ids = list(distance_matrix.ids)
    missing = sorted(set(ids) - set(metadata_df.index))
    if missing:
        raise InvalidInputError("Distance matrix samples have no metadata entry", samples=missing)
    if variable not in metadata_df.columns:
        raise InvalidInputError(f"Grouping variable '{variable}' not found in metadata")
    return metadata_df.loc[ids]


def _distance_test_result(results):
    return {
        'test-statistic': float(results['test statistic']),
        'p-value': float(results['p-value']),
        'sample size': int(results['sample size']),
        'number of groups': int(results['number of groups']),
        'permutations': int(results['number of permutations']),
        'note': 'Successful test',
    }


def perform_permanova(distance_matrix, metadata_df, variable, permutations=999, seed=None):
    """
    Perform PERMANOVA test to see if grouping variable explains community differences.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Grouping variable in metadata
    permutations : int
        Number of permutations to use
    seed : int, optional
        Seed of the permutation generator

    Returns:
    --------
    dict
        PERMANOVA results
    """
    metadata = _grouping_for(distance_matrix, metadata_df, variable)
    _check_groups(metadata, [variable], interaction=False)

    grouping = metadata[variable].astype(str).to_numpy()
    results = permanova(distance_matrix, grouping, permutations=permutations, seed=seed)
    return _distance_test_result(results)


def perform_permdisp(distance_matrix, metadata_df, variable, permutations=999, seed=None):
    """
    Test homogeneity of multivariate dispersions between groups (PERMDISP).

    A significant result means PERMANOVA differences may reflect spread
    rather than location.
    """
    metadata = _grouping_for(distance_matrix, metadata_df, variable)
    _check_groups(metadata, [variable], interaction=False)

    grouping = metadata[variable].astype(str).to_numpy()
    results = permdisp(distance_matrix, grouping, permutations=permutations, seed=seed)
    return _distance_test_result(results)


def permanova_multi(distance_matrix, metadata_df, factors, interaction=True, permutations=999, seed=None):
    """
    Multi-factor PERMANOVA with sequential sums of squares.

    Each term's sum of squares is the increase in trace(H G) when the term
    is added to the model, where G is the Gower-centred matrix of
    -d^2 / 2 and H the hat matrix of the design. Pseudo-F values are tested
    against the residual by permuting samples.

    Parameters:
    -----------
    distance_matrix : skbio.DistanceMatrix
        Beta diversity distance matrix
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    factors : str or list
        Categorical grouping column(s), entered in order
    interaction : bool
        Whether to include interaction terms between factors
    permutations : int
        Number of permutations
    seed : int, optional
        Seed of the permutation generator

    Returns:
    --------
    pandas.DataFrame
        One row per term plus 'Residual', with columns
        df, sum_sq, mean_sq, F, R2, p_value
    """
    factors = _as_factor_list(factors)
    interaction = interaction and len(factors) > 1

    metadata = _grouping_for(distance_matrix, metadata_df, factors[0])
    missing = [f for f in factors if f not in metadata.columns]
    if missing:
        raise InvalidInputError(f"Grouping variable(s) not found in metadata: {', '.join(missing)}")

    frame = metadata[factors].astype(str)
    _check_groups(frame, factors, interaction)

    n = distance_matrix.shape[0]
    centering = np.eye(n) - np.full((n, n), 1.0 / n)
    gower = centering @ (-0.5 * distance_matrix.data ** 2) @ centering
    total_ss = float(np.trace(gower))

    design = dmatrix(_model_rhs(factors, interaction), frame, return_type='dataframe')
    term_slices = [(name, s) for name, s in design.design_info.term_name_slices.items()
                   if name != 'Intercept']

    # Nested hat matrices: intercept, then each term added in order
    x = design.to_numpy()
    hats = [np.full((n, n), 1.0 / n)]
    ranks = [1]
    for _, term_slice in term_slices:
        x_k = x[:, :term_slice.stop]
        hats.append(x_k @ np.linalg.pinv(x_k))
        ranks.append(np.linalg.matrix_rank(x_k))

    df_terms = np.diff(ranks).astype(float)
    df_resid = float(n - ranks[-1])
    if df_resid <= 0:
        raise DegenerateGroupError(':'.join(factors), None, 0)

    def pseudo_f(g):
        traces = np.array([np.sum(h * g) for h in hats])
        ss_terms = np.diff(traces)
        ss_resid = np.trace(g) - traces[-1]
        return ss_terms, (ss_terms / df_terms) / (ss_resid / df_resid), ss_resid

    ss_terms, f_obs, ss_resid = pseudo_f(gower)

    rng = np.random.default_rng(seed)
    exceed = np.zeros(len(f_obs))
    for _ in range(permutations):
        order = rng.permutation(n)
        _, f_perm, _ = pseudo_f(gower[np.ix_(order, order)])
        exceed += f_perm >= f_obs - 1e-12

    if permutations > 0:
        p_values = (exceed + 1) / (permutations + 1)
    else:
        p_values = np.full(len(f_obs), np.nan)

    names = [_effect_name(name, factors) for name, _ in term_slices]
    result = pd.DataFrame({
        'df': np.append(df_terms, df_resid),
        'sum_sq': np.append(ss_terms, ss_resid),
    }, index=pd.Index(names + ['Residual'], name='effect'))
    result['mean_sq'] = result['sum_sq'] / result['df']
    result['F'] = np.append(f_obs, np.nan)
    result['R2'] = result['sum_sq'] / total_ss
    result['p_value'] = np.append(p_values, np.nan)

    logger.info(f"PERMANOVA by {' x '.join(factors)} on {n} samples with {permutations} permutations")
    return result
