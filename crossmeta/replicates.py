"""
replicates.py — Collapse replicated features to one row per identifier.

Several measured features (probes, transcripts) often map to the same
biological identifier (gene symbol, Entrez ID).  ``dedupe`` keeps, for
each identifier, the feature with the highest interquartile range over
the currently selected samples, then names features by identifier.

Tie-break: when several features share an identifier and the same
maximal IQR, the first one in input row order is kept.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from crossmeta.config import LAYER_ADJUSTED, LAYER_STABILIZED
from crossmeta.errors import ConfigurationError
from crossmeta.expression import ExpressionMatrix

logger = logging.getLogger(__name__)


def row_iqr(values: np.ndarray) -> np.ndarray:
    """Interquartile range of each row (linear interpolation, NaN-aware)."""
    q75, q25 = np.nanpercentile(values, [75, 25], axis=1)
    return q75 - q25


def which_max_iqr(identifiers: pd.Series, ranking: np.ndarray) -> np.ndarray:
    """Positions of the highest-IQR row for each identifier, in row order."""
    frame = pd.DataFrame({
        "annot": identifiers.to_numpy(),
        "iqr": row_iqr(ranking),
        "pos": np.arange(len(identifiers)),
    })
    frame["iqr"] = frame["iqr"].fillna(-np.inf)
    # Stable sort keeps the first occurrence ahead of later ties
    frame = frame.sort_values("iqr", ascending=False, kind="mergesort")
    frame = frame.drop_duplicates("annot", keep="first")
    return np.sort(frame["pos"].to_numpy())


def dedupe(
    matrix: ExpressionMatrix,
    annot: str,
    ranking_layer: str = LAYER_STABILIZED,
    rm_dup: bool = False,
) -> ExpressionMatrix:
    """
    Keep one feature per value of ``features[annot]``.

    Parameters
    ----------
    matrix : ExpressionMatrix
        Matrix restricted to the selected samples.
    annot : str
        Feature metadata column holding the identifier.  Features
        without a value are dropped.
    ranking_layer : str
        Layer the IQRs are computed from.
    rm_dup : bool
        Also drop features whose ``"adjusted"`` values duplicate an
        earlier retained feature (one measurement mapped to several
        identifiers).

    Returns
    -------
    ExpressionMatrix
        Features renamed to their (unique) identifier values.

    Raises
    ------
    ConfigurationError
        If *annot* is not a feature metadata column.
    """
    if annot not in matrix.features.columns:
        raise ConfigurationError(
            f"Dataset '{matrix.name}': column '{annot}' missing from feature "
            f"metadata. Available: {list(matrix.features.columns)}"
        )

    ids = matrix.features[annot]
    present = ids.notna().to_numpy()

    if not ids[present].duplicated().any():
        keep = np.flatnonzero(present)
    else:
        ranking = matrix.layer(ranking_layer).to_numpy(dtype=float)[present]
        keep = np.flatnonzero(present)[which_max_iqr(ids[present], ranking)]

    n_before = matrix.n_features
    matrix = matrix.select_features(keep)
    matrix = matrix.rename_features(matrix.features[annot].astype(str).to_numpy())

    if rm_dup:
        values = pd.DataFrame(matrix.layer(LAYER_ADJUSTED).to_numpy())
        matrix = matrix.select_features(~values.duplicated().to_numpy())

    logger.info(
        "Collapsed %d features to %d unique '%s' values.",
        n_before, matrix.n_features, annot,
    )
    return matrix
