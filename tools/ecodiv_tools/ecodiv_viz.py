"""
Visualization functions for community diversity data.
"""

import matplotlib.pyplot as plt
import seaborn as sns

from .ecodiv_diversity import ordination_coordinates


def plot_alpha_diversity_boxplot(tidy_df, group_var, index=None):
    """
    Create a boxplot of alpha diversity by group.

    Parameters:
    -----------
    tidy_df : pandas.DataFrame
        Long-form alpha diversity table with grouping columns
    group_var : str
        Grouping variable to put on the x axis
    index : str, optional
        Diversity index to plot (if None, plots all indices)

    Returns:
    --------
    matplotlib.figure.Figure or dict
        Boxplot figure(s)
    """
    if group_var not in tidy_df.columns:
        raise ValueError(f"Grouping variable '{group_var}' not found in alpha diversity data")

    available = list(tidy_df['index'].unique())
    if index is None:
        return {i: _create_diversity_boxplot(tidy_df, group_var, i) for i in available}

    if index not in available:
        raise ValueError(f"Index '{index}' not found in alpha diversity data")

    return _create_diversity_boxplot(tidy_df, group_var, index)


def _create_diversity_boxplot(tidy_df, group_var, index):
    """Helper function to create a diversity boxplot."""
    subset = tidy_df[tidy_df['index'] == index]
    plot_data = subset[subset['defined']]
    n_undefined = int((~subset['defined']).sum())

    fig, ax = plt.subplots(figsize=(10, 6))

    sns.boxplot(x=group_var, y='value', data=plot_data, ax=ax)

    # Add individual points
    sns.stripplot(x=group_var, y='value', data=plot_data,
                  color='black', size=4, alpha=0.5, ax=ax)

    title = f'{index} by {group_var}'
    if n_undefined:
        title += f'\n({n_undefined} sample(s) with undefined {index} not shown)'
    ax.set_title(title)
    ax.set_xlabel(group_var)
    ax.set_ylabel(index)

    longest = max((len(str(v)) for v in plot_data[group_var]), default=0)
    ax.tick_params(axis='x', rotation=45 if longest > 10 else 0)

    fig.tight_layout()
    return fig


def plot_ordination(ordination, metadata_df, variable, shape_var=None):
    """
    Create a PCoA scatter plot coloured by a metadata variable.

    Parameters:
    -----------
    ordination : skbio.OrdinationResults
        Output of ``pcoa_ordination``
    metadata_df : pandas.DataFrame
        Metadata DataFrame with samples as index
    variable : str
        Metadata variable for coloring points
    shape_var : str, optional
        Metadata variable for marker shapes

    Returns:
    --------
    matplotlib.figure.Figure
        Ordination plot figure
    """
    coords = ordination_coordinates(ordination, n_axes=2)
    explained = coords.attrs['proportion_explained']
    pc1, pc2 = coords.columns[:2]

    columns = [variable] + ([shape_var] if shape_var else [])
    plot_df = coords.join(metadata_df[columns], how='left')

    fig, ax = plt.subplots(figsize=(10, 8))

    sns.scatterplot(
        data=plot_df.reset_index(),
        x=pc1,
        y=pc2,
        hue=variable,
        style=shape_var,
        s=100,
        ax=ax
    )

    ax.set_xlabel(f'{pc1} ({explained[pc1] * 100:.1f}% variance explained)')
    ax.set_ylabel(f'{pc2} ({explained[pc2] * 100:.1f}% variance explained)')
    ax.set_title(f'PCoA of Beta Diversity ({variable})')
    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')

    fig.tight_layout()
    return fig


def plot_stacked_bar(abundance_df, metadata_df, group_var, top_n=10, other_category=True):
    """
    Create a stacked bar plot of the most abundant taxa by group.

    Parameters:
    -----------
    abundance_df : pandas.DataFrame
        Abundance table with samples as index, taxa (or rank labels) as columns
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
    # Relative abundance per sample
    totals = abundance_df.sum(axis=1)
    relative = abundance_df.loc[totals > 0].div(totals[totals > 0], axis=0) * 100

    top_taxa = relative.mean(axis=0).nlargest(top_n).index.tolist()
    plot_data = relative[top_taxa].copy()
    if other_category and relative.shape[1] > len(top_taxa):
        plot_data['Other'] = relative.drop(columns=top_taxa).sum(axis=1)

    groups = metadata_df.loc[plot_data.index, group_var]
    group_means = plot_data.groupby(groups).mean()

    fig, ax = plt.subplots(figsize=(12, 8))
    group_means.plot(kind='bar', stacked=True, ax=ax, colormap='tab20')

    ax.set_title(f'Mean Taxa Abundance by {group_var}')
    ax.set_xlabel(group_var)
    ax.set_ylabel('Relative Abundance (%)')
    ax.legend(bbox_to_anchor=(1.05, 1), loc='upper left')

    fig.tight_layout()
    return fig
