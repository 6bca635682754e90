import logging

import pandas as pd
import pytest

from ecodiv_tools import (
    InvalidInputError,
    add_combined_factor,
    aggregate_by_rank,
    align_tables,
    load_abundance_table,
    load_config,
    load_metadata,
    load_taxonomy,
    missing_input_files,
    resolve_config_paths,
    setup_logger,
)
from ecodiv_tools.ecodiv_utils import LOGGER_NAME


def test_load_r_style_abundance_table(community_files, community_counts):
    abundance = load_abundance_table(community_files['abundance'])

    assert abundance.shape == community_counts.shape
    assert list(abundance.index) == list(community_counts.index)
    assert abundance.loc['S01', 'OTU1'] == community_counts.loc['S01', 'OTU1']
    assert (abundance.dtypes == 'int64').all()


def test_load_abundance_with_id_column(tmp_path):
    path = tmp_path / 'counts.txt'
    path.write_text('sample t1 t2\ns1 1 0\ns2 4 2\n')

    abundance = load_abundance_table(path)

    assert list(abundance.index) == ['s1', 's2']
    assert list(abundance.columns) == ['t1', 't2']


def test_load_taxa_by_samples_table(tmp_path):
    path = tmp_path / 'counts.txt'
    path.write_text('taxon s1 s2\nt1 1 4\nt2 0 2\n')

    abundance = load_abundance_table(path, samples_as_rows=False)

    assert list(abundance.index) == ['s1', 's2']
    assert abundance.loc['s2', 't1'] == 4


@pytest.mark.parametrize('row, message', [
    ('s2 -4 2', 'negative'),
    ('s2 4.5 2', 'non-integer'),
    ('s2 four 2', 'non-numeric'),
])
def test_load_rejects_invalid_counts(tmp_path, row, message):
    path = tmp_path / 'counts.txt'
    path.write_text(f'sample t1 t2\ns1 1 0\n{row}\n')

    with pytest.raises(InvalidInputError, match=message):
        load_abundance_table(path)


def test_load_rejects_duplicate_samples(tmp_path):
    path = tmp_path / 'counts.txt'
    path.write_text('sample t1 t2\ns1 1 0\ns1 4 2\n')

    with pytest.raises(InvalidInputError) as excinfo:
        load_abundance_table(path)
    assert excinfo.value.samples == ['s1']


def test_load_metadata_treats_groups_as_labels(community_files):
    metadata = load_metadata(community_files['metadata'], categorical_columns=['month'])

    assert metadata.index.name == 'sample_id'
    assert set(metadata['month']) == {'1', '2'}
    assert set(metadata['site']) == {'North', 'East', 'South'}


def test_load_metadata_with_named_id_column(tmp_path):
    path = tmp_path / 'groups.txt'
    path.write_text('site id\nA s1\nB s2\n')

    metadata = load_metadata(path, sample_id_column='id')
    assert metadata.loc['s2', 'site'] == 'B'

    with pytest.raises(InvalidInputError):
        load_metadata(path, sample_id_column='sample')


def test_load_metadata_rejects_duplicates(tmp_path):
    path = tmp_path / 'groups.txt'
    path.write_text('sample site\ns1 A\ns1 B\n')

    with pytest.raises(InvalidInputError):
        load_metadata(path)


def test_align_tables_reorders_metadata(community_counts, balanced_metadata):
    shuffled = balanced_metadata.sample(frac=1.0, random_state=0)

    aligned = align_tables(community_counts, shuffled)

    assert list(aligned.index) == list(community_counts.index)
    assert list(shuffled.index) != list(aligned.index)


def test_align_tables_reports_missing_samples(community_counts, balanced_metadata):
    with pytest.raises(InvalidInputError) as excinfo:
        align_tables(community_counts, balanced_metadata.drop(index=['S03', 'S07']))
    assert excinfo.value.samples == ['S03', 'S07']

    with pytest.raises(InvalidInputError) as excinfo:
        align_tables(community_counts.drop(index=['S05']), balanced_metadata)
    assert excinfo.value.samples == ['S05']


def test_add_combined_factor(balanced_metadata):
    combined = add_combined_factor(balanced_metadata, ['site', 'month'])

    assert combined.loc['S01', 'site_month'] == 'North_1'
    assert 'site_month' not in balanced_metadata.columns

    with pytest.raises(InvalidInputError):
        add_combined_factor(balanced_metadata, ['site', 'depth'])


def test_taxonomy_and_rank_aggregation(community_files, community_counts):
    taxonomy = load_taxonomy(community_files['taxonomy'])

    phyla = aggregate_by_rank(community_counts, taxonomy, 'Phylum')

    assert set(phyla.columns) == {'Proteobacteria', 'Bacteroidetes'}
    pd.testing.assert_series_equal(phyla.sum(axis=1), community_counts.sum(axis=1), check_names=False)

    with pytest.raises(InvalidInputError):
        aggregate_by_rank(community_counts, taxonomy, 'Genus')


def test_load_config_merges_defaults(tmp_path):
    path = tmp_path / 'params.yml'
    path.write_text('beta:\n  rarefaction:\n    seed: 99\noutput:\n  precision: 2\n')

    config = load_config(path)

    assert config['beta']['rarefaction']['seed'] == 99
    assert config['beta']['rarefaction']['depth'] is None
    assert config['beta']['filter']['min_prevalence'] == 0.11
    assert config['output']['precision'] == 2
    assert load_config()['beta']['rarefaction']['seed'] == 711


def test_load_config_rejects_unknown_sections(tmp_path):
    path = tmp_path / 'params.yml'
    path.write_text('plots:\n  dpi: 10\n')

    with pytest.raises(ValueError, match='plots'):
        load_config(path)


def test_resolve_config_paths(tmp_path):
    config = load_config()
    config['input']['taxonomy_file'] = str(tmp_path / 'taxonomy.txt')

    resolved = resolve_config_paths(config, tmp_path)

    assert resolved['input']['abundance_file'] == str(tmp_path / 'data' / 'abundance.txt')
    assert resolved['input']['taxonomy_file'] == str(tmp_path / 'taxonomy.txt')
    assert resolved['output']['results_dir'] == str(tmp_path / 'results')
    assert resolved['logging']['file'] is None
    assert config['input']['abundance_file'] == 'data/abundance.txt'


def test_missing_input_files(tmp_path):
    (tmp_path / 'data').mkdir()
    (tmp_path / 'data' / 'abundance.txt').write_text('sample t1\nS01 1\n')
    config = resolve_config_paths(load_config(), tmp_path)

    assert missing_input_files(config) == [str(tmp_path / 'data' / 'groups.txt')]


def test_setup_logger_is_idempotent(tmp_path):
    log_file = tmp_path / 'run.log'

    setup_logger(log_file=str(log_file), log_level='DEBUG')
    logger = setup_logger(log_file=str(log_file), log_level='DEBUG')

    assert logger.name == LOGGER_NAME
    assert len(logger.handlers) == 2
    assert logger.level == logging.DEBUG

    logging.getLogger(f'{LOGGER_NAME}.ecodiv_stats').info('hello')
    for handler in logger.handlers:
        handler.flush()
    assert 'hello' in log_file.read_text()

    setup_logger()
