import itertools

import numpy as np
import pandas as pd
import pytest
from scipy import stats

from ecodiv_tools import (
    DegenerateGroupError,
    InvalidInputError,
    alpha_diversity_anova,
    anova,
    calculate_alpha_diversity,
    check_anova_assumptions,
    tidy_alpha_diversity,
    tukey_hsd,
)


def site_effect_data():
    """Balanced 3 x 2 design: strong site effect, month means exactly equal."""
    site_means = {'North': 1.0, 'East': 3.0, 'South': 5.0}
    residuals = [-0.1, 0.0, 0.1]
    rows = []
    for site, mean in site_means.items():
        for month in ['Jan', 'Feb']:
            for r in residuals:
                rows.append({'site': site, 'month': month, 'shannon': mean + r})
    return pd.DataFrame(rows)


def test_one_way_matches_scipy():
    rng = np.random.default_rng(3)
    data = pd.DataFrame({
        'group': np.repeat(['a', 'b', 'c'], [4, 5, 6]),
        'value': rng.normal(size=15) + np.repeat([0.0, 0.5, 1.0], [4, 5, 6]),
    })

    table = anova(data, 'value', 'group')
    f_ref, p_ref = stats.f_oneway(*[g['value'] for _, g in data.groupby('group')])

    assert list(table.index) == ['group', 'Residual']
    assert table.loc['group', 'df'] == 2
    assert table.loc['Residual', 'df'] == 12
    assert table.loc['group', 'F'] == pytest.approx(f_ref)
    assert table.loc['group', 'p_value'] == pytest.approx(p_ref)
    assert table.loc['group', 'mean_sq'] == pytest.approx(table.loc['group', 'sum_sq'] / 2)
    assert np.isnan(table.loc['Residual', 'F'])


def test_two_way_detects_site_not_month():
    data = site_effect_data()

    table = anova(data, 'shannon', ['site', 'month'])

    assert list(table.index) == ['site', 'month', 'site:month', 'Residual']
    assert table.loc['site', 'p_value'] < 0.05
    assert table.loc['month', 'p_value'] > 0.05
    assert table.loc['site:month', 'p_value'] > 0.05


def test_two_way_decomposition_matches_hand_computation():
    data = site_effect_data()
    table = anova(data, 'shannon', ['site', 'month'])

    y = data['shannon']
    grand = y.mean()
    site_means = data.groupby('site')['shannon'].transform('mean')
    month_means = data.groupby('month')['shannon'].transform('mean')
    cell_means = data.groupby(['site', 'month'])['shannon'].transform('mean')

    ss_site = ((site_means - grand) ** 2).sum()
    ss_month = ((month_means - grand) ** 2).sum()
    ss_inter = ((cell_means - site_means - month_means + grand) ** 2).sum()
    ss_resid = ((y - cell_means) ** 2).sum()

    assert table.loc['site', 'sum_sq'] == pytest.approx(ss_site)
    assert table.loc['month', 'sum_sq'] == pytest.approx(ss_month, abs=1e-9)
    assert table.loc['site:month', 'sum_sq'] == pytest.approx(ss_inter, abs=1e-9)
    assert table.loc['Residual', 'sum_sq'] == pytest.approx(ss_resid)
    assert table['df'].tolist() == [2, 1, 2, 12]

    f_site = (ss_site / 2) / (ss_resid / 12)
    assert table.loc['site', 'F'] == pytest.approx(f_site)
    assert table.loc['site', 'p_value'] == pytest.approx(stats.f.sf(f_site, 2, 12))


def test_additive_model_has_no_interaction_row():
    table = anova(site_effect_data(), 'shannon', ['site', 'month'], interaction=False)
    assert list(table.index) == ['site', 'month', 'Residual']


def test_group_with_single_sample_is_degenerate():
    data = pd.DataFrame({'group': ['a', 'a', 'b', 'b', 'c'], 'value': [1.0, 1.2, 2.0, 2.1, 3.0]})

    with pytest.raises(DegenerateGroupError) as excinfo:
        anova(data, 'value', 'group')
    assert excinfo.value.factor == 'group'
    assert excinfo.value.level == 'c'
    assert excinfo.value.count == 1


def test_empty_category_is_degenerate():
    data = pd.DataFrame({
        'group': pd.Categorical(['a', 'a', 'b', 'b'], categories=['a', 'b', 'c']),
        'value': [1.0, 1.2, 2.0, 2.1],
    })

    with pytest.raises(DegenerateGroupError) as excinfo:
        anova(data, 'value', 'group')
    assert excinfo.value.level == 'c'
    assert excinfo.value.count == 0


def test_single_level_factor_is_degenerate():
    data = pd.DataFrame({'group': ['a'] * 4, 'value': [1.0, 1.2, 2.0, 2.1]})
    with pytest.raises(DegenerateGroupError):
        anova(data, 'value', 'group')


def test_interaction_requires_replicated_cells():
    data = site_effect_data()
    data = data.drop(index=data[(data['site'] == 'East') & (data['month'] == 'Feb')].index[:2])

    with pytest.raises(DegenerateGroupError) as excinfo:
        anova(data, 'shannon', ['site', 'month'])
    assert excinfo.value.factor == 'site:month'
    assert excinfo.value.count == 1


def test_undefined_responses_are_dropped():
    data = site_effect_data()
    data.loc[0, 'shannon'] = np.nan

    table = anova(data, 'shannon', ['site', 'month'])
    assert table.loc['Residual', 'df'] == 11


def test_missing_column_is_invalid_input():
    with pytest.raises(InvalidInputError):
        anova(site_effect_data(), 'chao1', 'site')


def test_alpha_diversity_anova_on_tidy_table(community_counts, balanced_metadata):
    alpha_df = calculate_alpha_diversity(community_counts, balanced_metadata)
    tidy = tidy_alpha_diversity(alpha_df, balanced_metadata)

    table = alpha_diversity_anova(tidy, 'observed', ['site', 'month'])
    assert list(table.index) == ['site', 'month', 'site:month', 'Residual']
    assert table['df'].sum() == len(balanced_metadata) - 1

    with pytest.raises(InvalidInputError):
        alpha_diversity_anova(tidy, 'simpson', 'site')


def test_tukey_hsd_pairs():
    data = site_effect_data()

    table = tukey_hsd(data, 'shannon', 'site')

    assert len(table) == len(list(itertools.combinations(['North', 'East', 'South'], 2)))
    assert {'group1', 'group2', 'meandiff', 'p_adj', 'reject'} <= set(table.columns)
    assert table['reject'].all()


def test_tukey_hsd_keeps_full_precision():
    data = site_effect_data()
    data['shannon'] = data['shannon'] * 1e-5
    means = data.groupby('site')['shannon'].mean()

    table = tukey_hsd(data, 'shannon', 'site')

    assert list(zip(table['group1'], table['group2'])) == [
        ('East', 'North'), ('East', 'South'), ('North', 'South')]
    expected = [means[b] - means[a] for a, b in zip(table['group1'], table['group2'])]
    np.testing.assert_allclose(table['meandiff'], expected, rtol=1e-9)
    assert (table['lower'] < table['meandiff']).all()
    assert table['reject'].all()


def test_assumption_checks_are_informational():
    result = check_anova_assumptions(site_effect_data(), 'shannon', ['site', 'month'])

    assert set(result) == {'shapiro W', 'shapiro p-value', 'levene W', 'levene p-value', 'note'}
    assert 0.0 <= result['shapiro p-value'] <= 1.0
    assert result['note']
