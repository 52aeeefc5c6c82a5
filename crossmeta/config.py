"""
config.py — Central configuration for the crossmeta analysis engine.

This module centralises ALL default parameters and thresholds used
throughout the differential expression pipeline. Keeping them in a
single place avoids magic numbers scattered across the code and makes
modification easier without touching the logic.

Sections
--------
1. DIFF_EXPR_DEFAULTS : dict
   → Top-level defaults for a ``diff_expr`` run.

2. FILTER_DEFAULTS : dict
   → Low-count feature filter for count-based assays.

3. SVA_DEFAULTS : dict
   → Surrogate variable estimation.

4. FIT_DEFAULTS : dict
   → Linear model fitting (voom, array weights, block correlation).

5. EBAYES_DEFAULTS : dict
   → Moderated statistics and top-table construction.

6. Sample / feature column conventions.

Usage example
-------------
    from crossmeta.config import SVA_DEFAULTS, EBAYES_DEFAULTS

    seed = SVA_DEFAULTS["seed"]
    robust = EBAYES_DEFAULTS["robust"]
"""

# ──────────────────────────────────────────────────────────────────────
# 1. diff_expr run
# ──────────────────────────────────────────────────────────────────────

DIFF_EXPR_DEFAULTS: dict = {
    # Feature column used to collapse replicated features.  "SPECIES"
    # resolves to the first "<taxid>_SYMBOL" column of the first dataset.
    "annot": "SYMBOL",
    # Run surrogate variable analysis?
    "svanal": True,
    # Ask the selector again even when a previous selection is supplied
    "recheck": False,
    # Only used for the per-contrast summary line
    "alpha": 0.05,
}

# ──────────────────────────────────────────────────────────────────────
# 2. Low-count filter (edgeR filterByExpr constants)
# ──────────────────────────────────────────────────────────────────────

FILTER_DEFAULTS: dict = {
    # Minimum count required in at least ``n`` samples, expressed on the
    # CPM scale relative to the median library size.
    "min_count": 10,
    # Minimum total count across all samples
    "min_total_count": 15,
    # Group size above which only ``min_prop`` of the samples are required
    "large_n": 10,
    "min_prop": 0.7,
}

# ──────────────────────────────────────────────────────────────────────
# 3. Surrogate variable analysis
# ──────────────────────────────────────────────────────────────────────

SVA_DEFAULTS: dict = {
    # Seed for the permutation test; scoped to each estimation call.
    "seed": 100,
    # Permutations for the number-of-factors test
    "n_permutations": 20,
    # Permutation p-value cutoff for counting a factor as significant
    "num_sv_threshold": 0.10,
    # BH cutoff for features associated with a residual eigengene
    "qvalue_threshold": 0.10,
}

# ──────────────────────────────────────────────────────────────────────
# 4. Linear model fitting
# ──────────────────────────────────────────────────────────────────────

FIT_DEFAULTS: dict = {
    # Trim fraction for the consensus (atanh) correlation
    "correlation_trim": 0.15,
    # Per-feature correlations are clipped to ±this before atanh
    "max_abs_correlation": 0.99,
    # LOWESS span for the voom mean-variance trend
    "lowess_span": 0.5,
    # Prior sample size for the array (sample quality) weights
    "prior_n": 10.0,
    # Offset added to counts before log-CPM
    "voom_prior_count": 0.5,
}

# ──────────────────────────────────────────────────────────────────────
# 5. Moderated statistics
# ──────────────────────────────────────────────────────────────────────

EBAYES_DEFAULTS: dict = {
    "robust": False,
    "trend": False,
    # Return the un-moderated contrast fit when there are no residual
    # degrees of freedom instead of raising.
    "allow_no_resid": False,
    # Append dprime / vardprime effect sizes to the top table
    "with_es": True,
    # Winsorisation tails for robust variance moderation
    "winsor_tail_p": (0.05, 0.1),
}

# ──────────────────────────────────────────────────────────────────────
# 6. Column conventions
# ──────────────────────────────────────────────────────────────────────

# Sample-metadata columns present only for count-based assays
COUNT_COLUMNS: tuple = ("lib_size", "norm_factors")

# Two-channel arrays carry one column per channel
CHANNEL_SUFFIXES: tuple = ("_red", "_green")

# Feature columns carried through to fits and top tables
CARRY_FEATURE_COLUMNS: tuple = ("ENTREZID", "PROBE")

# Layer names on ExpressionMatrix
LAYER_RAW = "exprs"
LAYER_STABILIZED = "vsd"
LAYER_ADJUSTED = "adjusted"
