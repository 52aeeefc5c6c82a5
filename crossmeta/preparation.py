"""
preparation.py — Expression matrix preparation before model fitting.

Three steps, applied in order by the pipeline:

1. ``filter_low_count`` — drops features with too few counts to model
   (count-based assays only).
2. ``stabilize_variance`` — attaches the ``"vsd"`` layer: a
   variance-stabilising transform of counts (pydeseq2), or a copy of
   the intensities for microarrays.
3. ``adjust_for_nuisance`` — attaches the ``"adjusted"`` layer: the
   ``"vsd"`` values with pair effects and surrogate variables regressed
   out.  Used only to rank replicated features; the final fit always
   models nuisance terms as covariates instead.

Every function returns a new ``ExpressionMatrix``; the original layers
are never modified.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd

from pydeseq2.dds import DeseqDataSet

from crossmeta.config import (
    FILTER_DEFAULTS,
    LAYER_ADJUSTED,
    LAYER_STABILIZED,
)
from crossmeta.design import ModelMatrices, surrogate_frame
from crossmeta.errors import ConfigurationError, CrossmetaError, EstimationError
from crossmeta.expression import ExpressionMatrix
from crossmeta.protocols import Outcome

logger = logging.getLogger(__name__)


# ──────────────────────────────────────────────────────────────────────
# Low-count filter
# ──────────────────────────────────────────────────────────────────────

def filter_low_count(
    matrix: ExpressionMatrix,
    min_count: float = FILTER_DEFAULTS["min_count"],
    min_total_count: float = FILTER_DEFAULTS["min_total_count"],
    large_n: int = FILTER_DEFAULTS["large_n"],
    min_prop: float = FILTER_DEFAULTS["min_prop"],
) -> ExpressionMatrix:
    """
    Remove features whose counts are too low for reliable modelling.

    Filtering criteria
    ------------------
    A feature is **kept** if BOTH conditions are met:

    1. CPM ≥ ``min_count / median(library size) × 1e6`` in at least
       ``n`` samples, where ``n`` is the smallest group size (all
       samples when no ``group`` column is present).  Above
       ``large_n``, only ``min_prop`` of the extra samples are
       required.
    2. Total count across samples ≥ ``min_total_count``.

    Library sizes are ``lib_size × norm_factors``.  Non-count assays are
    returned unchanged.
    """
    if not matrix.is_count_based:
        return matrix

    counts = matrix.exprs.to_numpy(dtype=float)
    lib = matrix.effective_lib_size

    if "group" in matrix.samples.columns:
        sizes = matrix.samples["group"].dropna().value_counts()
        n = float(sizes[sizes > 0].min()) if len(sizes) else float(matrix.n_samples)
    else:
        n = float(matrix.n_samples)
    if n > large_n:
        n = large_n + (n - large_n) * min_prop

    cpm_cutoff = min_count / np.median(lib) * 1e6
    cpm = counts / lib[None, :] * 1e6
    tol = 1e-14
    keep_cpm = np.sum(cpm >= cpm_cutoff, axis=1) >= n - tol
    keep_total = counts.sum(axis=1) >= min_total_count - tol
    keep = keep_cpm & keep_total
    if not keep.any():
        raise ConfigurationError(
            f"Dataset '{matrix.name}': no features pass the low-count filter "
            f"(min_count={min_count}, min_total_count={min_total_count})."
        )

    logger.info(
        "Low-count filter kept %d of %d features (%s).",
        int(keep.sum()), matrix.n_features, matrix.name or "dataset",
    )
    return matrix.select_features(keep)


# ──────────────────────────────────────────────────────────────────────
# Variance stabilisation
# ──────────────────────────────────────────────────────────────────────

def _vst_counts(matrix: ExpressionMatrix) -> pd.DataFrame:
    """Variance-stabilising transform of the raw counts via pydeseq2.

    pydeseq2 expects samples × genes; the result is transposed back to
    features × samples.
    """
    exprs = matrix.exprs
    counts_t = pd.DataFrame(
        np.rint(exprs.to_numpy().T).astype(int),
        index=exprs.columns.astype(str),
        columns=exprs.index.astype(str),
    )

    metadata = pd.DataFrame(index=counts_t.index)
    design = "~ 1"
    if "group" in matrix.samples.columns:
        groups = matrix.samples["group"].astype(str).to_numpy()
        if len(set(groups)) > 1:
            metadata["group"] = groups
            design = "~ group"

    try:
        dds = DeseqDataSet(
            counts=counts_t,
            metadata=metadata,
            design=design,
            quiet=True,
        )
        dds.vst(use_design=False)
    except ValueError as exc:
        logger.error(
            "pydeseq2 VST failed for %s: counts %s, metadata columns %s.",
            matrix.name or "dataset", counts_t.shape, list(metadata.columns),
        )
        raise CrossmetaError(
            f"Dataset '{matrix.name}': variance-stabilising transform failed "
            f"(pandas/pydeseq2): {exc}"
        ) from exc
    vst = np.asarray(dds.layers["vst_counts"], dtype=float)
    return pd.DataFrame(vst.T, index=exprs.index, columns=exprs.columns)


def stabilize_variance(
    matrix: ExpressionMatrix,
    is_count_based: bool | None = None,
) -> ExpressionMatrix:
    """
    Attach the variance-stabilised ``"vsd"`` layer.

    Idempotent: a matrix that already has a ``"vsd"`` layer (computed
    earlier or supplied externally) is returned unchanged.

    Parameters
    ----------
    matrix : ExpressionMatrix
    is_count_based : bool or None
        Override for ``matrix.is_count_based``.

    Returns
    -------
    ExpressionMatrix
        Same matrix with a ``"vsd"`` layer.  For microarrays the layer
        is the (already normalised) intensities.
    """
    if matrix.has_layer(LAYER_STABILIZED):
        return matrix

    if is_count_based is None:
        is_count_based = matrix.is_count_based

    if is_count_based:
        vsd = _vst_counts(matrix)
    else:
        vsd = matrix.exprs
    return matrix.with_layer(LAYER_STABILIZED, vsd)


# ──────────────────────────────────────────────────────────────────────
# Nuisance adjustment
# ──────────────────────────────────────────────────────────────────────

def clean_expression(y: np.ndarray, mod: np.ndarray, nuisance: np.ndarray) -> np.ndarray:
    """Remove the *nuisance* part of a joint fit of ``[mod, nuisance]``.

    Raises
    ------
    EstimationError
        If the joint design is rank deficient.
    """
    if nuisance.shape[1] == 0:
        return y
    x = np.column_stack([mod, nuisance])
    if np.linalg.matrix_rank(x) < x.shape[1]:
        raise EstimationError(
            f"Adjustment design is rank deficient ({x.shape[1]} columns, "
            f"rank {np.linalg.matrix_rank(x)})."
        )
    beta = np.linalg.solve(x.T @ x, x.T @ y.T)
    p = mod.shape[1]
    return y - (nuisance @ beta[p:, :]).T


def compute_adjusted(
    matrix: ExpressionMatrix,
    models: ModelMatrices,
    surrogate_columns=None,
    n_surrogates: int = 0,
) -> Outcome:
    """Nuisance-adjusted ``"vsd"`` values, or the error that prevented them."""
    y = matrix.layer(LAYER_STABILIZED)
    pair_cols = list(models.pair_columns)

    mod = models.full.drop(columns=pair_cols)
    svs = surrogate_frame(surrogate_columns, n_surrogates, models.full.index)
    nuisance = pd.concat([models.null[pair_cols], svs], axis=1)

    try:
        adj = clean_expression(
            y.to_numpy(dtype=float),
            mod.to_numpy(dtype=float),
            nuisance.to_numpy(dtype=float),
        )
    except (EstimationError, np.linalg.LinAlgError) as exc:
        error = exc if isinstance(exc, EstimationError) else EstimationError(str(exc))
        return Outcome.failure(error)
    return Outcome.success(pd.DataFrame(adj, index=y.index, columns=y.columns))


def adjust_for_nuisance(
    matrix: ExpressionMatrix,
    models: ModelMatrices,
    surrogate_columns=None,
    n_surrogates: int = 0,
    notices: list | None = None,
) -> ExpressionMatrix:
    """
    Attach the ``"adjusted"`` layer: ``"vsd"`` with pairs and surrogate
    variables regressed out.

    Group effects stay in the model while the pair columns of the null
    model and the first *n_surrogates* surrogate variables are removed.
    On failure the unadjusted ``"vsd"`` layer is used and a notice is
    recorded.
    """
    if notices is None:
        notices = []
    outcome = compute_adjusted(matrix, models, surrogate_columns, n_surrogates)
    adjusted = outcome.unwrap_or(matrix.layer(LAYER_STABILIZED), notices, "adjust")
    return matrix.with_layer(LAYER_ADJUSTED, adjusted)
