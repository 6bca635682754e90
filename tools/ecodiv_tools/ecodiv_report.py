"""
Writing result tables and figures.

Number formatting is passed explicitly through ``ReportOptions``; nothing in
here changes global pandas or matplotlib settings.
"""

import logging
from dataclasses import dataclass
from pathlib import Path

import matplotlib.pyplot as plt
import pandas as pd

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReportOptions:
    precision: int = 4
    scientific: bool = False
    na_rep: str = 'NA'
    figure_dpi: int = 300
    figure_format: str = 'png'

    @property
    def float_format(self):
        return f"%.{self.precision}{'e' if self.scientific else 'f'}"

    @classmethod
    def from_config(cls, output_config):
        """Build options from the 'output' section of the analysis configuration."""
        return cls(
            precision=int(output_config.get('precision', cls.precision)),
            scientific=bool(output_config.get('scientific', cls.scientific)),
            figure_dpi=int(output_config.get('figure_dpi', cls.figure_dpi)),
            figure_format=output_config.get('figure_format', cls.figure_format),
        )


def format_table(df, options=None):
    """
    Render the float columns of a table as strings.

    Parameters:
    -----------
    df : pandas.DataFrame
        Table to format
    options : ReportOptions, optional
        Formatting options (default: fixed notation, 4 decimals)

    Returns:
    --------
    pandas.DataFrame
        Formatted copy; the input is left untouched
    """
    options = options or ReportOptions()
    formatted = df.copy()
    for col in formatted.columns:
        if pd.api.types.is_float_dtype(formatted[col]):
            formatted[col] = [
                options.na_rep if pd.isna(v) else options.float_format % v
                for v in formatted[col]
            ]
    return formatted


def write_table(df, filepath, options=None, index=True):
    """Write a table to CSV using the float format of ``options``."""
    options = options or ReportOptions()
    filepath = Path(filepath)
    filepath.parent.mkdir(parents=True, exist_ok=True)

    df.to_csv(filepath, float_format=options.float_format, na_rep=options.na_rep, index=index)
    logger.info(f"Table saved to {filepath}")
    return filepath


def write_distance_matrix(distance_matrix, filepath, options=None):
    """Write a distance matrix as a square CSV table labelled by sample."""
    table = pd.DataFrame(distance_matrix.data, index=list(distance_matrix.ids),
                         columns=list(distance_matrix.ids))
    table.index.name = 'sample_id'
    return write_table(table, filepath, options)


def save_figure(fig, filepath, options=None):
    """
    Save a figure with the configured resolution and format, then close it.

    Returns:
    --------
    pathlib.Path
        Path of the written figure
    """
    options = options or ReportOptions()
    filepath = Path(filepath).with_suffix(f'.{options.figure_format}')
    filepath.parent.mkdir(parents=True, exist_ok=True)

    fig.savefig(filepath, dpi=options.figure_dpi, bbox_inches='tight')
    plt.close(fig)
    logger.info(f"Figure saved to {filepath}")
    return filepath
