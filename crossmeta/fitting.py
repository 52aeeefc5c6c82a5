"""
fitting.py — Per-dataset linear model fitting.

The fitting strategy depends on the shape of the assay, detected from
the prepared matrix:

=========================  ===============================================
AssayShape                 Strategy
=========================  ===============================================
TWO_CHANNEL                channels as observations, intra-spot
                           correlation as a fixed block term
COUNT_PAIRED               voom + quality weights, two rounds of pair
                           correlation, fallback ladder on failure
COUNT_UNPAIRED             voom + quality weights
SINGLE_CHANNEL_PAIRED      pair correlation on intensities, fallback
                           ladder when undefined
SINGLE_CHANNEL_UNPAIRED    ordinary least squares
=========================  ===============================================

Fallback ladder (paired designs)
--------------------------------
When the within-pair correlation cannot be estimated, pairs are modelled
as fixed-effect columns instead.  If that leaves no residual degrees of
freedom, pairing is dropped and the model is refit with group and
surrogate-variable columns only.  Every step records a ``Notice``.

Each strategy returns a ``ModelFit`` whose design matrix is exactly the
one the coefficients were estimated with, and which carries the
feature annotation columns needed downstream.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

import numpy as np
import pandas as pd

from crossmeta.config import CARRY_FEATURE_COLUMNS, CHANNEL_SUFFIXES
from crossmeta.design import build, pair_blocks, residual_df
from crossmeta.errors import EstimationError
from crossmeta.expression import ExpressionMatrix
from crossmeta.limma import (
    LinearFit,
    duplicate_correlation,
    lm_fit,
    voom_with_quality_weights,
)
from crossmeta.protocols import Notice
from crossmeta.sva import SurrogateVariableResult

logger = logging.getLogger(__name__)


class AssayShape(Enum):
    SINGLE_CHANNEL_UNPAIRED = "single_channel_unpaired"
    SINGLE_CHANNEL_PAIRED = "single_channel_paired"
    TWO_CHANNEL = "two_channel"
    COUNT_PAIRED = "count_paired"
    COUNT_UNPAIRED = "count_unpaired"


@dataclass(frozen=True, eq=False)
class ModelFit:
    """Fitted model for one dataset (all contrasts are taken from it).

    Attributes
    ----------
    fit : LinearFit
    design : pd.DataFrame
        Design matrix actually used, columns aligned to coefficients.
    genes : pd.DataFrame
        Feature annotation carried to the top tables, indexed by feature.
    shape : AssayShape
    fallback : str or None
        ``"fixed_effect_pairs"`` or ``"dropped_pairs"`` when the
        fallback ladder was used.
    """

    fit: LinearFit
    design: pd.DataFrame
    genes: pd.DataFrame
    shape: AssayShape
    fallback: str | None = None

    @property
    def feature_names(self) -> pd.Index:
        return self.genes.index

    @property
    def df_residual(self) -> np.ndarray:
        return self.fit.df_residual


# ──────────────────────────────────────────────────────────────────────
# Shape detection
# ──────────────────────────────────────────────────────────────────────

def _strip_channel(name: str) -> str | None:
    for suffix in CHANNEL_SUFFIXES:
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return None


def channel_arrays(sample_names) -> pd.Series:
    """Array identifier per channel column (None for non-channel names)."""
    names = [str(s) for s in sample_names]
    return pd.Series([_strip_channel(s) for s in names], index=names, dtype=object)


def is_two_channel(matrix: ExpressionMatrix) -> bool:
    """True when both channels of at least one array are present."""
    arrays = channel_arrays(matrix.sample_names).dropna()
    return bool(len(arrays)) and bool((arrays.value_counts() > 1).any())


def pairing_of(matrix: ExpressionMatrix) -> pd.Series | None:
    if "pair" not in matrix.samples.columns:
        return None
    pairs = matrix.samples["pair"]
    if pairs.dropna().nunique() < 2:
        return None
    return pairs


def detect_assay_shape(matrix: ExpressionMatrix) -> AssayShape:
    if is_two_channel(matrix):
        return AssayShape.TWO_CHANNEL
    paired = pairing_of(matrix) is not None
    if matrix.is_count_based:
        return AssayShape.COUNT_PAIRED if paired else AssayShape.COUNT_UNPAIRED
    if paired:
        return AssayShape.SINGLE_CHANNEL_PAIRED
    return AssayShape.SINGLE_CHANNEL_UNPAIRED


# ──────────────────────────────────────────────────────────────────────
# Fit context
# ──────────────────────────────────────────────────────────────────────

@dataclass
class FitContext:
    """Everything a strategy needs besides the expression values."""

    matrix: ExpressionMatrix
    surrogates: SurrogateVariableResult | None = None
    n_surrogates: int = 0
    notices: list = field(default_factory=list)

    @property
    def groups(self) -> pd.Series:
        return self.matrix.samples["group"]

    @property
    def pairing(self) -> pd.Series | None:
        return pairing_of(self.matrix)

    @property
    def block(self) -> np.ndarray:
        return pair_blocks(self.pairing, self.matrix.sample_names).to_numpy()

    def design(self, pairing_as_fixed_effect: bool = False, drop_pairing: bool = False) -> pd.DataFrame:
        sv = None if self.surrogates is None else self.surrogates.sv
        return build(
            self.groups,
            pairing=None if drop_pairing else self.pairing,
            surrogate_columns=sv,
            n_surrogates=self.n_surrogates,
            pairing_as_fixed_effect=pairing_as_fixed_effect and not drop_pairing,
        )

    def note(self, message: str) -> None:
        logger.warning(message)
        self.notices.append(Notice("fit", message))


def _max_df(fit: LinearFit) -> int:
    return int(np.max(fit.df_residual)) if fit.df_residual.size else 0


def fixed_effect_fallback(
    context: FitContext,
    fit_fun: Callable[[pd.DataFrame], LinearFit],
) -> tuple[LinearFit, pd.DataFrame, str]:
    """Model pairs as fixed effects; drop them if no residual df remain."""
    design = context.design(pairing_as_fixed_effect=True)
    if residual_df(design) > 0:
        fit = fit_fun(design)
        if _max_df(fit) > 0:
            return fit, design, "fixed_effect_pairs"

    context.note(
        f"{context.matrix.name or 'dataset'}: no residual degrees of freedom with "
        f"pair fixed effects - refitting without pairs."
    )
    design = context.design(drop_pairing=True)
    return fit_fun(design), design, "dropped_pairs"


# ──────────────────────────────────────────────────────────────────────
# Strategies
# ──────────────────────────────────────────────────────────────────────

class FitStrategy(ABC):
    """One fitting procedure per ``AssayShape``."""

    shape: AssayShape

    @abstractmethod
    def fit(self, context: FitContext) -> tuple[LinearFit, pd.DataFrame, str | None]:
        """Return the fit, the design it used and the fallback taken (or None)."""


class OrdinaryFit(FitStrategy):
    shape = AssayShape.SINGLE_CHANNEL_UNPAIRED

    def fit(self, context):
        design = context.design()
        y = context.matrix.exprs.to_numpy(dtype=float)
        return lm_fit(y, design), design, None


class BlockCorrelationFit(FitStrategy):
    """Microarray, paired: pair correlation estimated from intensities."""

    shape = AssayShape.SINGLE_CHANNEL_PAIRED

    def fit(self, context):
        y = context.matrix.exprs.to_numpy(dtype=float)
        design = context.design()
        block = context.block

        corfit = duplicate_correlation(y, design, block=block)
        correlation = corfit["consensus_correlation"]
        if np.isfinite(correlation):
            fit = lm_fit(y, design, block=block, correlation=correlation)
            return fit, design, None

        context.note(
            f"{context.matrix.name or 'dataset'}: within-pair correlation could not "
            f"be estimated - modelling pairs as fixed effects."
        )
        return fixed_effect_fallback(context, lambda d: lm_fit(y, d))


class QualityWeightsFit(FitStrategy):
    """RNA-seq, unpaired: voom with sample quality weights."""

    shape = AssayShape.COUNT_UNPAIRED

    def fit(self, context):
        counts = context.matrix.exprs.to_numpy(dtype=float)
        lib_size = context.matrix.effective_lib_size
        design = context.design()
        v = voom_with_quality_weights(counts, design, lib_size=lib_size)
        return lm_fit(v.E, design, weights=v.weights), design, None


class PairedQualityWeightsFit(FitStrategy):
    """RNA-seq, paired: two rounds of voom and pair correlation."""

    shape = AssayShape.COUNT_PAIRED

    def fit(self, context):
        counts = context.matrix.exprs.to_numpy(dtype=float)
        lib_size = context.matrix.effective_lib_size
        design = context.design()
        block = context.block

        try:
            # First round: weights without correlation
            v = voom_with_quality_weights(counts, design, lib_size=lib_size)
            corfit = duplicate_correlation(v.E, design, block=block, weights=v.weights)
            correlation = corfit["consensus_correlation"]
            if not np.isfinite(correlation):
                raise EstimationError("first-round within-pair correlation is undefined")

            # Second round: weights and correlation estimated together
            v = voom_with_quality_weights(
                counts, design, lib_size=lib_size, block=block, correlation=correlation,
            )
            corfit = duplicate_correlation(v.E, design, block=block, weights=v.weights)
            correlation = corfit["consensus_correlation"]
            if not np.isfinite(correlation):
                raise EstimationError("second-round within-pair correlation is undefined")
            fit = lm_fit(v.E, design, weights=v.weights, block=block, correlation=correlation)
            return fit, design, None
        except (EstimationError, np.linalg.LinAlgError, ValueError) as exc:
            context.note(
                f"{context.matrix.name or 'dataset'}: correlated fit failed ({exc}) - "
                f"modelling pairs as fixed effects."
            )

        def fit_fun(d: pd.DataFrame) -> LinearFit:
            v = voom_with_quality_weights(counts, d, lib_size=lib_size)
            return lm_fit(v.E, d, weights=v.weights)

        return fixed_effect_fallback(context, fit_fun)


class TwoChannelFit(FitStrategy):
    """Two-colour arrays: each channel is an observation, arrays are blocks."""

    shape = AssayShape.TWO_CHANNEL

    def fit(self, context):
        matrix = context.matrix
        y = matrix.exprs.to_numpy(dtype=float)
        arrays = channel_arrays(matrix.sample_names)
        # Unsuffixed columns are single observations
        block = np.array([
            a if a is not None else "single." + s for s, a in arrays.items()
        ])
        design = build(context.groups)

        corfit = duplicate_correlation(y, design, block=block)
        correlation = corfit["consensus_correlation"]
        if not np.isfinite(correlation):
            context.note(
                f"{matrix.name or 'dataset'}: intra-spot correlation could not be "
                f"estimated - treating channels as independent."
            )
            return lm_fit(y, design), design, None
        return lm_fit(y, design, block=block, correlation=correlation), design, None


STRATEGIES: dict = {
    AssayShape.SINGLE_CHANNEL_UNPAIRED: OrdinaryFit(),
    AssayShape.SINGLE_CHANNEL_PAIRED: BlockCorrelationFit(),
    AssayShape.COUNT_UNPAIRED: QualityWeightsFit(),
    AssayShape.COUNT_PAIRED: PairedQualityWeightsFit(),
    AssayShape.TWO_CHANNEL: TwoChannelFit(),
}


# ──────────────────────────────────────────────────────────────────────
# Entry point
# ──────────────────────────────────────────────────────────────────────

def feature_annotation(matrix: ExpressionMatrix) -> pd.DataFrame:
    cols = [c for c in CARRY_FEATURE_COLUMNS if c in matrix.features.columns]
    return matrix.features[cols].copy()


def fit(
    matrix: ExpressionMatrix,
    surrogates: SurrogateVariableResult | None = None,
    n_surrogates: int = 0,
    notices: list | None = None,
    shape: AssayShape | None = None,
) -> ModelFit:
    """
    Fit the linear model for one prepared, deduplicated dataset.

    Parameters
    ----------
    matrix : ExpressionMatrix
        Must carry a ``group`` sample column; ``pair`` is optional.
    surrogates : SurrogateVariableResult, optional
    n_surrogates : int
        Surrogate variables to include as covariates.
    notices : list, optional
        Receives a ``Notice`` for every fallback taken.
    shape : AssayShape, optional
        Override for ``detect_assay_shape(matrix)``.

    Returns
    -------
    ModelFit
    """
    if notices is None:
        notices = []
    if shape is None:
        shape = detect_assay_shape(matrix)

    context = FitContext(
        matrix=matrix,
        surrogates=surrogates,
        n_surrogates=n_surrogates,
        notices=notices,
    )
    linear_fit, design, fallback = STRATEGIES[shape].fit(context)
    logger.info(
        "Fitted %s model for %s (%d features, max residual df %d).",
        shape.value, matrix.name or "dataset", matrix.n_features, _max_df(linear_fit),
    )
    return ModelFit(
        fit=linear_fit,
        design=design,
        genes=feature_annotation(matrix),
        shape=shape,
        fallback=fallback,
    )
