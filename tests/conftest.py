import matplotlib

matplotlib.use('Agg')

import numpy as np
import pandas as pd
import pytest

from ecodiv_tools import load_config

SITES = ['North', 'East', 'South']
MONTHS = [1, 2]
TAXA = [f'OTU{i}' for i in range(1, 9)]
TAXON_RATES = [50, 20, 10, 5, 2, 1, 0.5, 0.3]


@pytest.fixture
def example_abundance():
    """Two samples: A has two singletons and no doubletons, B has a single taxon."""
    return pd.DataFrame(
        {'taxon1': [5, 10], 'taxon2': [3, 0], 'taxon3': [1, 0], 'taxon4': [1, 0]},
        index=pd.Index(['A', 'B'], name='sample_id'),
    )


def balanced_design(reps=3):
    rows = []
    for site in SITES:
        for month in MONTHS:
            for rep in range(reps):
                rows.append({'site': site, 'month': str(month)})
    metadata = pd.DataFrame(rows)
    metadata.index = pd.Index([f'S{i + 1:02d}' for i in range(len(metadata))], name='sample_id')
    return metadata


@pytest.fixture
def balanced_metadata():
    return balanced_design()


@pytest.fixture
def community_counts(balanced_metadata):
    rng = np.random.default_rng(7)
    site_boost = {'North': 1.0, 'East': 2.0, 'South': 4.0}
    counts = []
    for site in balanced_metadata['site']:
        rates = np.array(TAXON_RATES) * site_boost[site]
        counts.append(rng.poisson(rates))
    abundance = pd.DataFrame(counts, index=balanced_metadata.index, columns=TAXA)
    abundance['OTU1'] += 1
    return abundance


@pytest.fixture
def community_files(tmp_path, community_counts, balanced_metadata):
    """Whitespace-delimited inputs in the layout the pipelines read."""
    abundance_file = tmp_path / 'abundance.txt'
    # R-style table: the header has no field for the row names
    lines = [' '.join(community_counts.columns)]
    for sample, row in community_counts.iterrows():
        lines.append(' '.join([sample] + [str(v) for v in row]))
    abundance_file.write_text('\n'.join(lines) + '\n')

    metadata_file = tmp_path / 'groups.txt'
    lines = ['sample site month']
    for sample, row in balanced_metadata.iterrows():
        lines.append(f"{sample} {row['site']} {row['month']}")
    metadata_file.write_text('\n'.join(lines) + '\n')

    taxonomy_file = tmp_path / 'taxonomy.txt'
    lines = ['taxon Kingdom Phylum Order']
    for i, taxon in enumerate(TAXA):
        order = 'Chloroplast' if taxon == 'OTU8' else f'Order{i % 3}'
        phylum = 'Proteobacteria' if i % 2 else 'Bacteroidetes'
        lines.append(f'{taxon} Bacteria {phylum} {order}')
    taxonomy_file.write_text('\n'.join(lines) + '\n')

    return {
        'abundance': abundance_file,
        'metadata': metadata_file,
        'taxonomy': taxonomy_file,
    }


@pytest.fixture
def pipeline_config(tmp_path, community_files):
    config = load_config()
    config['input']['abundance_file'] = str(community_files['abundance'])
    config['input']['metadata_file'] = str(community_files['metadata'])
    config['input']['taxonomy_file'] = str(community_files['taxonomy'])
    config['output']['results_dir'] = str(tmp_path / 'results')
    config['output']['figure_dpi'] = 50
    config['beta']['permutations'] = 99
    config['beta']['exclude_taxa'] = {'rank': 'Order', 'labels': ['Chloroplast']}
    config['beta']['composition_rank'] = 'Phylum'
    return config
