"""
contrasts.py — Top tables for single test-vs-control contrasts.

Functions
---------
get_top_table(model_fit, groups, with_es, robust, trend, allow_no_resid)
    → DataFrame with one row per feature: annotation columns, ``logFC``,
      ``AveExpr``, ``t``, ``P.Value``, ``adj.P.Val`` and, optionally,
      ``dprime`` / ``vardprime``.  Sorted by adjusted p-value.

evaluate(model_fit, test_group, control_group, **options)
    → Same, with the groups given separately.

effect_size(t, ntilde, df)
    → Unbiased standardised effect size (Hedges' g) and its variance,
      from moderated t-statistics.

When the contrast has no residual degrees of freedom and the caller
passes ``allow_no_resid=True``, no testing is possible: the table holds
only ``logFC`` and ``AveExpr`` and is ordered by absolute fold change.
"""

from __future__ import annotations

import logging

import numpy as np
import pandas as pd
from scipy.special import gammaln
from statsmodels.stats.multitest import multipletests

from crossmeta.config import DIFF_EXPR_DEFAULTS, EBAYES_DEFAULTS
from crossmeta.design import contrast_name, make_name
from crossmeta.errors import ConfigurationError, DegenerateDesignError
from crossmeta.fitting import ModelFit
from crossmeta.limma import LinearFit, contrasts_fit, ebayes

logger = logging.getLogger(__name__)


def effect_size(t, ntilde: float, df) -> pd.DataFrame:
    """
    Standardised effect sizes from moderated t-statistics.

    ``d = t / sqrt(ntilde)`` is bias-corrected by
    ``c(m) = Γ(m/2) / (sqrt(m/2) Γ((m-1)/2))`` with ``m`` the total
    degrees of freedom.

    Parameters
    ----------
    t : array-like
        Moderated t-statistics.
    ntilde : float
        Effective sample size ``n_ctrl * n_test / (n_ctrl + n_test)``.
    df : float or array-like
        Total degrees of freedom per feature.

    Returns
    -------
    pd.DataFrame
        Columns ``d``, ``vard``, ``dprime``, ``vardprime``.
    """
    t = np.asarray(t, dtype=float)
    m = np.broadcast_to(np.asarray(df, dtype=float), t.shape)

    with np.errstate(invalid="ignore", divide="ignore"):
        cm = np.exp(gammaln(m / 2.0) - gammaln((m - 1.0) / 2.0)) / np.sqrt(m / 2.0)
        d = t / np.sqrt(ntilde)
        dprime = cm * d
        terme1 = m / ((m - 2.0) * ntilde)
        vard = terme1 + d ** 2 * (terme1 * ntilde - 1.0)
        vardprime = cm ** 2 * (terme1 + dprime ** 2 * (terme1 * ntilde - 1.0 / cm ** 2))

    return pd.DataFrame({"d": d, "vard": vard, "dprime": dprime, "vardprime": vardprime})


def _contrast_vector(design: pd.DataFrame, test_group: str, control_group: str) -> np.ndarray:
    test_col, ctrl_col = make_name(test_group), make_name(control_group)
    for group, col in ((test_group, test_col), (control_group, ctrl_col)):
        if col not in design.columns:
            raise ConfigurationError(
                f"Group '{group}' (column '{col}') not in design. "
                f"Available: {list(design.columns)}"
            )
    vec = np.zeros(design.shape[1])
    vec[design.columns.get_loc(test_col)] = 1.0
    vec[design.columns.get_loc(ctrl_col)] = -1.0
    return vec


def _bh_adjust(p: np.ndarray) -> np.ndarray:
    adj = np.full(p.shape, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        adj[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return adj


def _fold_change_table(cfit: LinearFit, model_fit: ModelFit) -> pd.DataFrame:
    tab = model_fit.genes.copy()
    tab["logFC"] = cfit.coefficients[:, 0]
    tab["AveExpr"] = cfit.amean
    order = np.argsort(-np.abs(tab["logFC"].to_numpy()), kind="mergesort")
    return tab.iloc[order]


def get_top_table(
    model_fit: ModelFit,
    groups=("test", "ctrl"),
    with_es: bool = EBAYES_DEFAULTS["with_es"],
    robust: bool = EBAYES_DEFAULTS["robust"],
    trend: bool = EBAYES_DEFAULTS["trend"],
    allow_no_resid: bool = EBAYES_DEFAULTS["allow_no_resid"],
) -> pd.DataFrame:
    """
    Moderated statistics for ``groups[0] - groups[1]``.

    Parameters
    ----------
    model_fit : ModelFit
    groups : tuple[str, str]
        ``(test_group, control_group)`` labels as in the selection.
    with_es : bool
        Append ``dprime`` and ``vardprime`` columns.
    robust, trend : bool
        Empirical Bayes options.
    allow_no_resid : bool
        Return the fold-change-only table instead of raising when the
        contrast has no residual degrees of freedom.

    Raises
    ------
    ConfigurationError
        If a group has no column in the design matrix.
    DegenerateDesignError
        No residual degrees of freedom and *allow_no_resid* is False.
    """
    test_group, control_group = groups
    name = contrast_name(test_group, control_group)
    design = model_fit.design

    vec = _contrast_vector(design, test_group, control_group)
    cfit = contrasts_fit(model_fit.fit, vec, names=[name])

    if np.max(cfit.df_residual) == 0:
        if allow_no_resid:
            logger.warning("%s: no residual degrees of freedom, ranking by fold change only.", name)
            return _fold_change_table(cfit, model_fit)
        raise DegenerateDesignError(
            f"Contrast '{name}' has no residual degrees of freedom."
        )

    eb = ebayes(cfit, robust=robust, trend=trend)

    tab = model_fit.genes.copy()
    tab["logFC"] = eb.coefficients[:, 0]
    tab["AveExpr"] = eb.amean
    tab["t"] = eb.t[:, 0]
    tab["P.Value"] = eb.p_value[:, 0]
    tab["adj.P.Val"] = _bh_adjust(tab["P.Value"].to_numpy())

    if with_es:
        ni = float(design[make_name(control_group)].sum())
        nj = float(design[make_name(test_group)].sum())
        es = effect_size(tab["t"].to_numpy(), ni * nj / (ni + nj), eb.df_total)
        tab["dprime"] = es["dprime"].to_numpy()
        tab["vardprime"] = es["vardprime"].to_numpy()

    return tab.sort_values(
        ["adj.P.Val", "P.Value"], kind="mergesort", na_position="last",
    )


def evaluate(model_fit: ModelFit, test_group: str, control_group: str, **options) -> pd.DataFrame:
    """``get_top_table`` for ``test_group - control_group``."""
    return get_top_table(model_fit, groups=(test_group, control_group), **options)


def count_significant(top_table: pd.DataFrame, alpha: float = DIFF_EXPR_DEFAULTS["alpha"]) -> int:
    """Features with adjusted p below *alpha* (0 for fold-change-only tables)."""
    if "adj.P.Val" not in top_table.columns:
        return 0
    return int((top_table["adj.P.Val"] < alpha).sum())
