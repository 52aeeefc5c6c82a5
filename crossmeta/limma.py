"""
limma.py — Linear-model primitives for expression data.

numpy/scipy implementations of the limma building blocks the pipeline
orchestrates.  Every function works on plain arrays (features × samples
for data, samples × coefficients for designs) so the orchestration
modules stay free of numerical detail.

What is provided?
-----------------
lm_fit
    Per-feature (generalised) least squares with optional observation
    weights and a fixed within-block correlation.
duplicate_correlation
    Consensus within-block correlation (pairs, array channels).
voom / array_weights / voom_with_quality_weights
    log-CPM transform of counts with mean-variance precision weights and
    per-sample quality weights.
contrasts_fit
    Re-parameterise a fit in terms of contrasts of its coefficients.
squeeze_var / ebayes
    Empirical Bayes moderation of the residual variances and moderated
    t-statistics.

Notes
-----
Block correlation is estimated with the one-way ANOVA (intraclass)
estimator on residuals rather than limma's REML; the consensus value is
the tanh of the trimmed mean of per-feature atanh correlations, as in
limma.  Robust moderation Winsorises the log-variances before the
moment fit instead of running limma's full ``fitFDistRobustly``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace

import numpy as np
from scipy import linalg, special, stats
from statsmodels.nonparametric.smoothers_lowess import lowess

from crossmeta.config import EBAYES_DEFAULTS, FIT_DEFAULTS
from crossmeta.errors import DegenerateDesignError, EstimationError

logger = logging.getLogger(__name__)

_RANK_TOL = 1e-7


# ══════════════════════════════════════════════════════════════════════
# Fit container
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class LinearFit:
    """Per-feature linear model fit.

    Arrays are aligned to features (rows) and coefficients (columns).
    Non-estimable coefficients are NaN.  The moderated fields are filled
    in by ``ebayes``.
    """

    coefficients: np.ndarray
    stdev_unscaled: np.ndarray
    sigma: np.ndarray
    df_residual: np.ndarray
    amean: np.ndarray
    design: np.ndarray
    coef_names: tuple
    cov_coefficients: np.ndarray
    block: np.ndarray | None = None
    correlation: float | None = None
    contrasts: np.ndarray | None = None

    s2_prior: np.ndarray | float | None = None
    df_prior: float | None = None
    s2_post: np.ndarray | None = None
    df_total: np.ndarray | None = None
    t: np.ndarray | None = None
    p_value: np.ndarray | None = None

    @property
    def n_features(self) -> int:
        return self.coefficients.shape[0]

    @property
    def is_moderated(self) -> bool:
        return self.t is not None

    def column(self, name: str) -> int:
        try:
            return list(self.coef_names).index(name)
        except ValueError:
            raise KeyError(
                f"Coefficient '{name}' not in fit. Available: {list(self.coef_names)}"
            ) from None


# ══════════════════════════════════════════════════════════════════════
# Least squares
# ══════════════════════════════════════════════════════════════════════

def _estimable_columns(x: np.ndarray) -> tuple[np.ndarray, int]:
    """Columns of *x* kept by pivoted QR, in their original order."""
    if x.shape[1] == 0:
        return np.array([], dtype=int), 0
    _, r, piv = linalg.qr(x, mode="economic", pivoting=True)
    d = np.abs(np.diag(r))
    if d.size == 0 or d[0] == 0:
        return np.array([], dtype=int), 0
    rank = int(np.sum(d > _RANK_TOL * d[0]))
    return np.sort(piv[:rank]), rank


def _block_correlation_matrix(block: np.ndarray, correlation: float) -> np.ndarray:
    same = block[:, None] == block[None, :]
    c = np.where(same, correlation, 0.0)
    np.fill_diagonal(c, 1.0)
    return c


def _as_weight_matrix(weights, shape) -> np.ndarray | None:
    if weights is None:
        return None
    w = np.asarray(weights, dtype=float)
    if w.ndim == 1:
        if w.shape[0] == shape[1]:
            return np.broadcast_to(w[None, :], shape)
        if w.shape[0] == shape[0]:
            return np.broadcast_to(w[:, None], shape)
        raise ValueError(f"weights of length {w.shape[0]} do not match data {shape}")
    if w.shape != shape:
        raise ValueError(f"weights shape {w.shape} does not match data {shape}")
    return w


def _whiten(y, x, w, cor):
    """Transform one feature's observations to independent unit variance."""
    if w is None and cor is None:
        return y, x
    sw = np.ones_like(y) if w is None else np.sqrt(w)
    if cor is None:
        return y * sw, x * sw[:, None]
    v = cor / np.outer(sw, sw)
    chol = linalg.cholesky(v, lower=True)
    return (
        linalg.solve_triangular(chol, y, lower=True),
        linalg.solve_triangular(chol, x, lower=True),
    )


def _fit_rows(y, x, weights, cor, with_residuals=False):
    """Feature-by-feature fit, dropping missing observations."""
    n_features, n_samples = y.shape
    p = x.shape[1]
    coef = np.full((n_features, p), np.nan)
    su = np.full((n_features, p), np.nan)
    sigma = np.full(n_features, np.nan)
    df = np.zeros(n_features, dtype=int)
    resid = np.full((n_features, n_samples), np.nan) if with_residuals else None

    for g in range(n_features):
        yg = y[g]
        ok = np.isfinite(yg)
        wg = None
        if weights is not None:
            wg = weights[g]
            ok &= np.isfinite(wg) & (wg > 0)
            wg = wg[ok]
        cg = None if cor is None else cor[np.ix_(ok, ok)]
        ys, xs = _whiten(yg[ok], x[ok], wg, cg)
        est, rank = _estimable_columns(xs)
        if rank == 0:
            continue
        xe = xs[:, est]
        xtx_inv = linalg.inv(xe.T @ xe)
        b = xtx_inv @ (xe.T @ ys)
        r = ys - xe @ b
        df[g] = ys.shape[0] - rank
        if df[g] > 0:
            sigma[g] = np.sqrt(r @ r / df[g])
        coef[g, est] = b
        su[g, est] = np.sqrt(np.diag(xtx_inv))
        if with_residuals:
            resid[g, np.flatnonzero(ok)] = r
    return coef, su, sigma, df, resid


def _fit_dense(y, x, cor, with_residuals=False):
    """Vectorised fit when there are no weights and no missing values."""
    n_features, n_samples = y.shape
    p = x.shape[1]
    if cor is not None:
        chol = linalg.cholesky(cor, lower=True)
        x = linalg.solve_triangular(chol, x, lower=True)
        y = linalg.solve_triangular(chol, y.T, lower=True).T

    est, rank = _estimable_columns(x)
    coef = np.full((n_features, p), np.nan)
    su = np.full((n_features, p), np.nan)
    df_value = n_samples - rank
    df = np.full(n_features, df_value, dtype=int)
    if rank == 0:
        return coef, su, np.full(n_features, np.nan), df, None

    xe = x[:, est]
    xtx_inv = linalg.inv(xe.T @ xe)
    b = y @ xe @ xtx_inv
    r = y - b @ xe.T
    sigma = (
        np.sqrt(np.sum(r * r, axis=1) / df_value)
        if df_value > 0
        else np.full(n_features, np.nan)
    )
    coef[:, est] = b
    su[:, est] = np.sqrt(np.diag(xtx_inv))[None, :]
    return coef, su, sigma, df, (r if with_residuals else None)


def _cov_coefficients(x, cor=None) -> np.ndarray:
    p = x.shape[1]
    if cor is not None:
        chol = linalg.cholesky(cor, lower=True)
        x = linalg.solve_triangular(chol, x, lower=True)
    est, rank = _estimable_columns(x)
    cov = np.full((p, p), np.nan)
    if rank:
        xe = x[:, est]
        cov[np.ix_(est, est)] = linalg.inv(xe.T @ xe)
    return cov


def _fit(y, design, weights=None, block=None, correlation=None, with_residuals=False):
    y = np.asarray(y, dtype=float)
    x = np.asarray(design, dtype=float)
    if y.ndim != 2 or x.shape[0] != y.shape[1]:
        raise ValueError(
            f"Design has {x.shape[0]} rows but data has {y.shape[-1]} samples."
        )

    cor = None
    if block is not None and correlation is not None:
        if not np.isfinite(correlation):
            raise EstimationError("Block correlation is not finite.")
        cor = _block_correlation_matrix(np.asarray(block), float(correlation))

    w = _as_weight_matrix(weights, y.shape)
    if w is None and np.all(np.isfinite(y)):
        out = _fit_dense(y, x, cor, with_residuals)
    else:
        out = _fit_rows(y, x, w, cor, with_residuals)
    return out, x, cor


def lm_fit(
    y,
    design,
    weights=None,
    block=None,
    correlation: float | None = None,
    coef_names=None,
) -> LinearFit:
    """Fit a linear model to every feature (row) of *y*.

    Parameters
    ----------
    y : array-like
        Features × samples expression values (log scale).
    design : array-like or pd.DataFrame
        Samples × coefficients design matrix.
    weights : array-like, optional
        Observation weights, features × samples or one per sample.
    block : array-like, optional
        Block (pair / array) identifier per sample.
    correlation : float, optional
        Within-block correlation; used only together with *block*.
    coef_names : sequence of str, optional
        Coefficient names; taken from the DataFrame columns when omitted.

    Returns
    -------
    LinearFit
    """
    if coef_names is None:
        coef_names = tuple(getattr(design, "columns", range(np.asarray(design).shape[1])))
    (coef, su, sigma, df, _), x, cor = _fit(y, design, weights, block, correlation)
    y = np.asarray(y, dtype=float)
    with np.errstate(invalid="ignore"):
        amean = np.nanmean(y, axis=1) if y.shape[1] else np.full(y.shape[0], np.nan)
    return LinearFit(
        coefficients=coef,
        stdev_unscaled=su,
        sigma=sigma,
        df_residual=df,
        amean=amean,
        design=x,
        coef_names=tuple(str(c) for c in coef_names),
        cov_coefficients=_cov_coefficients(x, cor),
        block=None if block is None else np.asarray(block),
        correlation=correlation if block is not None else None,
    )


def residuals(y, design, weights=None) -> np.ndarray:
    """Standardised (weight-scaled) residuals of an ordinary fit."""
    (_, _, _, _, resid), _, _ = _fit(y, design, weights, with_residuals=True)
    return resid


def fitted_values(fit: LinearFit) -> np.ndarray:
    coef = np.where(np.isfinite(fit.coefficients), fit.coefficients, 0.0)
    return coef @ fit.design.T


# ══════════════════════════════════════════════════════════════════════
# Block correlation
# ══════════════════════════════════════════════════════════════════════

def _trimmed_mean(x: np.ndarray, trim: float) -> float:
    x = np.sort(x)
    k = int(np.floor(x.size * trim))
    if x.size - 2 * k <= 0:
        return float(np.mean(x))
    return float(np.mean(x[k: x.size - k]))


def duplicate_correlation(
    y,
    design,
    block,
    weights=None,
    trim: float = FIT_DEFAULTS["correlation_trim"],
) -> dict:
    """Consensus within-block correlation of the model residuals.

    Returns
    -------
    dict
        ``consensus_correlation`` (float, NaN when undefined) and
        ``correlation`` (per-feature array).
    """
    block = np.asarray(block)
    r = residuals(y, design, weights)
    n_features, n_samples = r.shape
    if block.shape[0] != n_samples:
        raise ValueError("block must have one entry per sample")

    gene_corr = np.full(n_features, np.nan)
    levels = [np.flatnonzero(block == lv) for lv in np.unique(block)]
    if len(levels) >= 2:
        m = np.array([idx.size for idx in levels], dtype=float)
        complete = np.all(np.isfinite(r), axis=1)
        rc = r[complete]

        means = np.column_stack([rc[:, idx].mean(axis=1) for idx in levels])
        grand = rc.mean(axis=1, keepdims=True)
        ss_between = np.sum(m[None, :] * (means - grand) ** 2, axis=1)
        ss_within = np.zeros(rc.shape[0])
        for j, idx in enumerate(levels):
            d = rc[:, idx] - means[:, [j]]
            ss_within += np.sum(d * d, axis=1)

        n = m.sum()
        g = len(levels)
        ms_between = ss_between / (g - 1.0)
        ms_within = ss_within / max(n - g, 1.0)
        n0 = (n - np.sum(m * m) / n) / (g - 1.0)
        denom = ms_between + (n0 - 1.0) * ms_within

        rho = np.full(rc.shape[0], np.nan)
        ok = denom > 0
        rho[ok] = (ms_between[ok] - ms_within[ok]) / denom[ok]
        gene_corr[complete] = rho

    limit = FIT_DEFAULTS["max_abs_correlation"]
    finite = gene_corr[np.isfinite(gene_corr)]
    if finite.size == 0:
        consensus = np.nan
    else:
        z = np.arctanh(np.clip(finite, -limit, limit))
        consensus = float(np.tanh(_trimmed_mean(z, trim)))
    return {"consensus_correlation": consensus, "correlation": gene_corr}


# ══════════════════════════════════════════════════════════════════════
# voom
# ══════════════════════════════════════════════════════════════════════

@dataclass(frozen=True, eq=False)
class VoomResult:
    """log-CPM values with precision weights."""

    E: np.ndarray
    weights: np.ndarray
    lib_size: np.ndarray
    design: np.ndarray
    sample_weights: np.ndarray | None = None


def _lowess_trend(x, y, span):
    ok = np.isfinite(x) & np.isfinite(y)
    if ok.sum() < 3:
        raise EstimationError("Too few features to fit the mean-variance trend.")
    curve = lowess(y[ok], x[ok], frac=span, return_sorted=True)
    return curve[:, 0], curve[:, 1]


def voom(
    counts,
    design,
    lib_size=None,
    sample_weights=None,
    block=None,
    correlation: float | None = None,
    span: float = FIT_DEFAULTS["lowess_span"],
) -> VoomResult:
    """log2-CPM transform with observation-level precision weights."""
    counts = np.asarray(counts, dtype=float)
    design = np.asarray(design, dtype=float)
    if lib_size is None:
        lib_size = counts.sum(axis=0)
    lib_size = np.asarray(lib_size, dtype=float)

    prior = FIT_DEFAULTS["voom_prior_count"]
    E = np.log2((counts + prior) / (lib_size[None, :] + 1.0) * 1e6)

    fit = lm_fit(E, design, weights=sample_weights, block=block, correlation=correlation)
    ok = fit.df_residual > 0
    if not np.any(ok):
        raise EstimationError("voom requires residual degrees of freedom.")

    sx = fit.amean + np.mean(np.log2(lib_size + 1.0)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma)
    lx, ly = _lowess_trend(sx[ok], sy[ok], span)

    fitted_cpm = 2.0 ** fitted_values(fit)
    fitted_count = 1e-6 * fitted_cpm * (lib_size[None, :] + 1.0)
    trend = np.interp(np.log2(fitted_count), lx, ly)
    trend = np.maximum(trend, np.finfo(float).tiny ** 0.25)
    weights = 1.0 / trend ** 4

    return VoomResult(E=E, weights=weights, lib_size=lib_size, design=design)


def _hat_diag(x: np.ndarray) -> np.ndarray:
    est, rank = _estimable_columns(x)
    if rank == 0:
        return np.zeros(x.shape[0])
    q, _ = np.linalg.qr(x[:, est])
    return np.sum(q * q, axis=1)


def array_weights(
    E,
    design,
    weights=None,
    prior_n: float = FIT_DEFAULTS["prior_n"],
) -> np.ndarray:
    """Per-sample quality weights, normalised to a geometric mean of one.

    Each sample's variance factor is the average squared standardised
    residual across features, shrunk towards one by ``prior_n``
    pseudo-features.
    """
    E = np.asarray(E, dtype=float)
    x = np.asarray(design, dtype=float)
    r = residuals(E, x, weights)
    df = x.shape[0] - _estimable_columns(x)[1]
    if df <= 0:
        return np.ones(E.shape[1])

    with np.errstate(invalid="ignore", divide="ignore"):
        s2 = np.nansum(r * r, axis=1) / df
        leverage = 1.0 - _hat_diag(x)
        z = r * r / (s2[:, None] * leverage[None, :])
    z[:, leverage <= 1e-10] = np.nan
    z[~np.isfinite(z)] = np.nan

    n_ok = np.sum(np.isfinite(z), axis=0)
    total = np.nansum(z, axis=0)
    factor = (total + prior_n) / (n_ok + prior_n)
    w = 1.0 / factor
    return w / np.exp(np.mean(np.log(w)))


def voom_with_quality_weights(
    counts,
    design,
    lib_size=None,
    block=None,
    correlation: float | None = None,
) -> VoomResult:
    """voom, then per-sample quality weights, iterated once."""
    v = voom(counts, design, lib_size, block=block, correlation=correlation)
    aw = array_weights(v.E, design, weights=v.weights)
    v = voom(counts, design, lib_size, sample_weights=aw, block=block, correlation=correlation)
    aw = array_weights(v.E, design, weights=v.weights)
    return replace(v, weights=v.weights * aw[None, :], sample_weights=aw)


# ══════════════════════════════════════════════════════════════════════
# Contrasts
# ══════════════════════════════════════════════════════════════════════

def _cov2cor(cov: np.ndarray) -> np.ndarray:
    cov = np.where(np.isfinite(cov), cov, 0.0)
    d = np.sqrt(np.diag(cov))
    d[d == 0] = 1.0
    cor = cov / np.outer(d, d)
    np.fill_diagonal(cor, 1.0)
    return cor


def contrasts_fit(fit: LinearFit, contrasts, names=None) -> LinearFit:
    """Re-express *fit* in terms of contrasts (coefficients × contrasts)."""
    cmat = np.asarray(contrasts, dtype=float)
    if cmat.ndim == 1:
        cmat = cmat[:, None]
    if cmat.shape[0] != fit.coefficients.shape[1]:
        raise ValueError(
            f"Contrast has {cmat.shape[0]} rows for {fit.coefficients.shape[1]} coefficients."
        )
    if names is None:
        names = [f"C{i + 1}" for i in range(cmat.shape[1])]

    coef = fit.coefficients
    missing = ~np.isfinite(coef)
    used = cmat != 0
    bad = (missing.astype(float) @ used.astype(float)) > 0

    coef0 = np.where(missing, 0.0, coef)
    su0 = np.where(missing, 0.0, fit.stdev_unscaled)
    new_coef = coef0 @ cmat

    cor = _cov2cor(fit.cov_coefficients)
    if np.allclose(cor, np.eye(cor.shape[0])):
        new_var = (su0 ** 2) @ (cmat ** 2)
    else:
        u = su0[:, :, None] * cmat[None, :, :]
        new_var = np.einsum("gpk,pq,gqk->gk", u, cor, u)

    new_coef[bad] = np.nan
    new_su = np.sqrt(new_var)
    new_su[bad] = np.nan

    return replace(
        fit,
        coefficients=new_coef,
        stdev_unscaled=new_su,
        coef_names=tuple(names),
        contrasts=cmat,
        cov_coefficients=cmat.T @ np.where(np.isfinite(fit.cov_coefficients),
                                           fit.cov_coefficients, 0.0) @ cmat,
        s2_prior=None, df_prior=None, s2_post=None, df_total=None, t=None, p_value=None,
    )


# ══════════════════════════════════════════════════════════════════════
# Empirical Bayes
# ══════════════════════════════════════════════════════════════════════

def _logmdigamma(x):
    return np.log(x) - special.digamma(x)


def _trigamma_inverse(x: float) -> float:
    """Solve ``trigamma(y) = x`` by Newton's method."""
    if x > 1e7:
        return 1.0 / np.sqrt(x)
    if x < 1e-6:
        return 1.0 / x
    y = 0.5 + 1.0 / x
    for _ in range(50):
        tri = special.polygamma(1, y)
        dif = tri * (1.0 - tri / x) / special.polygamma(2, y)
        y += dif
        if -dif / y < 1e-8:
            break
    else:
        logger.warning("trigamma inverse: iteration limit exceeded")
    return float(y)


def _fit_f_dist(x, df1, covariate=None, winsor_tail_p=None):
    """Moment estimates of the prior scale and degrees of freedom.

    Returns ``(s2_prior, df_prior)``; ``s2_prior`` is an array when a
    covariate is given.
    """
    n = x.shape[0]
    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15) & (x > -1e-15)
    n_ok = int(ok.sum())
    if n_ok <= 1:
        s2 = float(np.nanmean(x[ok])) if n_ok else np.nan
        return s2, 0.0

    xo = np.maximum(x[ok], 0.0)
    med = np.median(xo)
    if med == 0:
        logger.warning("More than half of residual variances are exactly zero")
        med = 1.0
    xo = np.maximum(xo, 1e-5 * med)
    e = np.log(xo) + _logmdigamma(df1[ok] / 2.0)

    if winsor_tail_p is not None:
        lo, hi = np.quantile(e, [winsor_tail_p[0], 1.0 - winsor_tail_p[1]])
        e = np.clip(e, lo, hi)

    if covariate is None:
        emean = np.full(n_ok, e.mean())
    else:
        emean = lowess(e, covariate[ok], frac=0.5, return_sorted=False)
    evar = np.sum((e - emean) ** 2) / (n_ok - 1)
    evar -= np.mean(special.polygamma(1, df1[ok] / 2.0))

    if evar > 0:
        df2 = 2.0 * _trigamma_inverse(evar)
        s20 = np.exp(emean - _logmdigamma(df2 / 2.0))
    else:
        df2 = np.inf
        s20 = np.exp(emean) if covariate is not None else np.full(n_ok, xo.mean())

    if covariate is None:
        return float(s20[0]), float(df2)

    # Interpolate the trend for features left out of the fit
    full = np.interp(covariate, np.sort(covariate[ok]), s20[np.argsort(covariate[ok])])
    return full, float(df2)


def squeeze_var(
    var,
    df,
    covariate=None,
    robust: bool = EBAYES_DEFAULTS["robust"],
    winsor_tail_p=EBAYES_DEFAULTS["winsor_tail_p"],
) -> dict:
    """Shrink per-feature variances towards a common (or trended) prior.

    Returns
    -------
    dict
        ``var_post``, ``var_prior``, ``df_prior``.
    """
    var = np.asarray(var, dtype=float).copy()
    df = np.broadcast_to(np.asarray(df, dtype=float), var.shape).copy()
    var[df == 0] = 0.0
    if covariate is not None:
        covariate = np.asarray(covariate, dtype=float)

    s2_prior, df_prior = _fit_f_dist(
        var, df, covariate, winsor_tail_p if robust else None,
    )

    if np.isinf(df_prior):
        var_post = np.broadcast_to(np.asarray(s2_prior, dtype=float), var.shape).copy()
    else:
        with np.errstate(invalid="ignore", divide="ignore"):
            var_post = (df * var + df_prior * s2_prior) / (df + df_prior)
    return {"var_post": var_post, "var_prior": s2_prior, "df_prior": df_prior}


def ebayes(
    fit: LinearFit,
    robust: bool = EBAYES_DEFAULTS["robust"],
    trend: bool = EBAYES_DEFAULTS["trend"],
    winsor_tail_p=EBAYES_DEFAULTS["winsor_tail_p"],
) -> LinearFit:
    """Moderated t-statistics and p-values for every coefficient."""
    df = np.asarray(fit.df_residual, dtype=float)
    if not np.any(df > 0):
        raise DegenerateDesignError("No residual degrees of freedom in linear model fit.")

    covariate = fit.amean if trend else None
    sq = squeeze_var(fit.sigma ** 2, df, covariate, robust, winsor_tail_p)
    df_prior = sq["df_prior"]

    df_pooled = float(np.sum(df[np.isfinite(fit.sigma)]))
    df_total = np.minimum(df + df_prior, df_pooled)

    with np.errstate(invalid="ignore", divide="ignore"):
        t = fit.coefficients / fit.stdev_unscaled / np.sqrt(sq["var_post"])[:, None]
    p_value = 2.0 * stats.t.sf(np.abs(t), df_total[:, None])

    return replace(
        fit,
        s2_prior=sq["var_prior"],
        df_prior=df_prior,
        s2_post=sq["var_post"],
        df_total=df_total,
        t=t,
        p_value=p_value,
    )
