"""
sva.py — Surrogate variable estimation.

Estimates latent confounders (batch effects and other unmodelled
variation) from an expression matrix given a full model (groups +
pairs) and a null model (intercept + pairs).

How are the surrogate variables found?
---------------------------------------
1. The number of significant factors is estimated with a permutation
   test on the singular values of the full-model residuals
   (``estimate_n_surrogates``; Buja & Eyuboglu).
2. For each significant residual eigengene, features associated with it
   (BH q < 0.10) and not with the primary variables are collected, and
   the surrogate variable is the right singular vector of those
   features that best matches the eigengene ("two-step" construction).

Count data are log-transformed first.  Exact duplicate rows (an
artefact of one-to-many feature→identifier maps upstream) are removed
before estimation because they bias the factor estimates.

The random generator is seeded per call, never globally, so results are
reproducible regardless of how datasets are scheduled.  Estimation
failures are returned as an ``Outcome`` failure; ``run_sva`` turns them
into zero surrogate variables plus a notice.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import numpy as np
import pandas as pd
from scipy import stats
from statsmodels.stats.multitest import multipletests

from crossmeta.config import SVA_DEFAULTS
from crossmeta.design import ModelMatrices
from crossmeta.errors import EstimationError
from crossmeta.expression import ExpressionMatrix
from crossmeta.protocols import Outcome

logger = logging.getLogger(__name__)


@dataclass(frozen=True, eq=False)
class SurrogateVariableResult:
    """Surrogate variables aligned to samples.

    Attributes
    ----------
    sv : np.ndarray
        Samples × ``n_sv`` matrix (zero columns when none were found).
    n_sv : int
        Number of significant surrogate variables.
    sample_names : pd.Index
    """

    sv: np.ndarray
    n_sv: int
    sample_names: pd.Index

    @classmethod
    def empty(cls, sample_names) -> SurrogateVariableResult:
        sample_names = pd.Index(sample_names)
        return cls(sv=np.zeros((len(sample_names), 0)), n_sv=0, sample_names=sample_names)

    def as_frame(self) -> pd.DataFrame:
        names = [f"SV{i + 1}" for i in range(self.sv.shape[1])]
        return pd.DataFrame(self.sv, index=self.sample_names, columns=names)


# ──────────────────────────────────────────────────────────────────────
# Numerical helpers
# ──────────────────────────────────────────────────────────────────────

def _projection(mod: np.ndarray) -> np.ndarray:
    return mod @ np.linalg.pinv(mod)


def f_pvalue(dat: np.ndarray, mod: np.ndarray, mod0: np.ndarray) -> np.ndarray:
    """Per-feature F-test p-values comparing nested models *mod0* ⊂ *mod*."""
    n = dat.shape[1]
    df1 = np.linalg.matrix_rank(mod)
    df0 = np.linalg.matrix_rank(mod0)
    if df1 <= df0 or n <= df1:
        return np.ones(dat.shape[0])

    rss1 = np.sum((dat - dat @ _projection(mod)) ** 2, axis=1)
    rss0 = np.sum((dat - dat @ _projection(mod0)) ** 2, axis=1)
    with np.errstate(invalid="ignore", divide="ignore"):
        fstats = ((rss0 - rss1) / (df1 - df0)) / (rss1 / (n - df1))
    p = stats.f.sf(fstats, df1 - df0, n - df1)
    return np.where(np.isfinite(p), p, 1.0)


def _orient(v: np.ndarray) -> np.ndarray:
    """Fix the SVD sign ambiguity: largest-magnitude entry positive."""
    return v if v[np.argmax(np.abs(v))] >= 0 else -v


def estimate_n_surrogates(
    dat: np.ndarray,
    mod: np.ndarray,
    seed: int = SVA_DEFAULTS["seed"],
    n_permutations: int = SVA_DEFAULTS["n_permutations"],
    threshold: float = SVA_DEFAULTS["num_sv_threshold"],
) -> int:
    """Number of significant latent factors (permutation test).

    Each permutation shuffles every feature's residuals independently
    across samples and records the share of variance explained by each
    singular value; a factor is significant when its observed share is
    rarely matched by the permuted ones.
    """
    rng = np.random.default_rng(seed)
    h = _projection(mod)
    res = dat - dat @ h
    ndf = dat.shape[1] - int(np.ceil(np.trace(h)))
    if ndf <= 0:
        return 0

    d = np.linalg.svd(res, compute_uv=False)[:ndf]
    k = d.shape[0]
    dstat = d ** 2 / np.sum(d ** 2)

    dstat0 = np.zeros((n_permutations, k))
    for b in range(n_permutations):
        res0 = rng.permuted(res, axis=1)
        res0 = res0 - res0 @ h
        d0 = np.linalg.svd(res0, compute_uv=False)[:k]
        dstat0[b] = d0 ** 2 / np.sum(d0 ** 2)

    psv = np.mean(dstat0 >= dstat[None, :], axis=0)
    psv = np.maximum.accumulate(psv)
    return int(np.sum(psv <= threshold))


def two_step_surrogates(
    dat: np.ndarray,
    mod: np.ndarray,
    mod0: np.ndarray,
    n_sv: int,
    q_threshold: float = SVA_DEFAULTS["qvalue_threshold"],
) -> np.ndarray:
    """Construct *n_sv* surrogate variables (samples × n_sv)."""
    n = dat.shape[1]
    res = dat - dat @ _projection(mod)
    _, _, vt = np.linalg.svd(res, full_matrices=False)
    res_sv = vt[:n_sv].T

    primary_q = multipletests(f_pvalue(dat, mod, mod0), method="fdr_bh")[1]
    primary = primary_q < q_threshold

    ones = np.ones((n, 1))
    sv = np.zeros((n, n_sv))
    for i in range(n_sv):
        eigengene = res_sv[:, i]
        p = f_pvalue(dat, np.column_stack([ones, eigengene]), ones)
        use = (multipletests(p, method="fdr_bh")[1] < q_threshold) & ~primary

        v = eigengene
        if use.sum() >= 2:
            sub = dat[use] - dat[use].mean(axis=1, keepdims=True)
            _, _, vt_sub = np.linalg.svd(sub, full_matrices=False)
            cors = np.abs([np.corrcoef(row, eigengene)[0, 1] for row in vt_sub])
            cors = np.where(np.isfinite(cors), cors, -1.0)
            v = vt_sub[int(np.argmax(cors))]
        sv[:, i] = _orient(v)
    return sv


# ──────────────────────────────────────────────────────────────────────
# Data preparation
# ──────────────────────────────────────────────────────────────────────

def _estimation_data(matrix: ExpressionMatrix) -> np.ndarray:
    """Raw values (log for counts) with duplicate and constant rows removed."""
    exprs = matrix.exprs
    features = matrix.features

    probe = None
    if "PROBE" in features.columns:
        probe = features["PROBE"]
    elif matrix.is_count_based and features.shape[1] > 0:
        probe = features.iloc[:, 0]

    frame = exprs.reset_index(drop=True)
    if probe is not None:
        frame = frame.assign(_probe=probe.to_numpy())
    keep = ~frame.duplicated().to_numpy()

    dat = exprs.to_numpy(dtype=float)[keep]
    if matrix.is_count_based:
        dat = np.log(dat + 1.0)

    finite = np.all(np.isfinite(dat), axis=1)
    dat = dat[finite]
    dat = dat[np.var(dat, axis=1) > 0]
    return dat


# ──────────────────────────────────────────────────────────────────────
# Public API
# ──────────────────────────────────────────────────────────────────────

def estimate(
    matrix: ExpressionMatrix,
    full_model: pd.DataFrame,
    null_model: pd.DataFrame,
    enabled: bool = True,
    seed: int = SVA_DEFAULTS["seed"],
    n_permutations: int = SVA_DEFAULTS["n_permutations"],
) -> Outcome:
    """Estimate surrogate variables.

    Returns
    -------
    Outcome[SurrogateVariableResult]
        Zero surrogate variables when *enabled* is False (no
        computation is attempted).  A failure outcome wraps any
        numerical error.
    """
    if not enabled:
        return Outcome.success(SurrogateVariableResult.empty(matrix.sample_names))

    if not full_model.index.equals(matrix.sample_names) or not null_model.index.equals(
        matrix.sample_names
    ):
        return Outcome.failure(
            EstimationError("Model matrices are not aligned to the expression samples.")
        )

    mod = full_model.to_numpy(dtype=float)
    mod0 = null_model.to_numpy(dtype=float)
    try:
        dat = _estimation_data(matrix)
        if dat.shape[0] < 2:
            raise EstimationError("Too few informative features for surrogate variable analysis.")
        n_sv = estimate_n_surrogates(dat, mod, seed=seed, n_permutations=n_permutations)
        if n_sv == 0:
            return Outcome.success(SurrogateVariableResult.empty(matrix.sample_names))
        sv = two_step_surrogates(dat, mod, mod0, n_sv)
        if not np.all(np.isfinite(sv)):
            raise EstimationError("Surrogate variables contain non-finite values.")
    except EstimationError as exc:
        return Outcome.failure(exc)
    except (np.linalg.LinAlgError, ValueError, ArithmeticError, IndexError) as exc:
        return Outcome.failure(EstimationError(f"{type(exc).__name__}: {exc}"))

    logger.info("Found %d surrogate variable(s) (%s).", n_sv, matrix.name or "dataset")
    return Outcome.success(
        SurrogateVariableResult(sv=sv, n_sv=n_sv, sample_names=matrix.sample_names)
    )


def run_sva(
    matrix: ExpressionMatrix,
    models: ModelMatrices,
    enabled: bool = True,
    notices: list | None = None,
    seed: int = SVA_DEFAULTS["seed"],
) -> SurrogateVariableResult:
    """``estimate`` with the zero-surrogate fallback applied."""
    if notices is None:
        notices = []
    outcome = estimate(matrix, models.full, models.null, enabled=enabled, seed=seed)
    return outcome.unwrap_or(SurrogateVariableResult.empty(matrix.sample_names), notices, "sva")
