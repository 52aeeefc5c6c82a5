"""
crossmeta/audit.py -- Audit record for reproducibility.

One ``DatasetPipeline`` run is summarised as a nested, JSON-safe dict:
environment and library versions, the parameter snapshot, the SVA
seed, the selection the contrasts came from, the fitted model (assay
shape, design columns, fallback taken), every recoverable ``Notice``
and the number of significant features per contrast.

``format_audit_text`` renders the same record for a lab notebook.
"""

from __future__ import annotations

import datetime
import importlib
import math
import platform
from dataclasses import asdict
from typing import Any

import numpy as np
import pandas as pd

from crossmeta.contrasts import count_significant

AUDITED_LIBRARIES: tuple[str, ...] = (
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
    "pydeseq2",
    "anndata",
)


# ══════════════════════════════════════════════════════════════════════
# Library versions
# ══════════════════════════════════════════════════════════════════════

def get_library_versions() -> dict[str, str]:
    """``{library: version}`` for ``AUDITED_LIBRARIES``; absent ones read ``"not installed"``."""
    versions: dict[str, str] = {}
    for name in AUDITED_LIBRARIES:
        try:
            module = importlib.import_module(name)
        except ImportError:
            versions[name] = "not installed"
            continue
        versions[name] = str(getattr(module, "__version__", "unknown"))
    return versions


# ══════════════════════════════════════════════════════════════════════
# JSON-safe serialiser
# ══════════════════════════════════════════════════════════════════════

def _safe_serialize(obj: Any) -> Any:
    """Recursively convert *obj* to strict-JSON primitives (NaN becomes None)."""
    if obj is None or isinstance(obj, (str, bool)):
        return obj
    if isinstance(obj, np.bool_):
        return bool(obj)
    if isinstance(obj, (int, np.integer)):
        return int(obj)
    if isinstance(obj, (float, np.floating)):
        value = float(obj)
        return value if math.isfinite(value) else None
    if isinstance(obj, (np.ndarray, pd.Index, pd.Series)):
        return [_safe_serialize(v) for v in obj.tolist()]
    if isinstance(obj, dict):
        return {str(k): _safe_serialize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, set)):
        return [_safe_serialize(v) for v in obj]
    if isinstance(obj, (datetime.datetime, pd.Timestamp)):
        return obj.isoformat()
    return str(obj)


# ══════════════════════════════════════════════════════════════════════
# Audit builder
# ══════════════════════════════════════════════════════════════════════

def _model_section(pipeline) -> dict:
    section: dict[str, Any] = {"n_sv": pipeline.n_sv}
    model_fit = pipeline.model_fit
    if model_fit is None:
        return section
    section["assay_shape"] = model_fit.shape.value
    section["fallback"] = model_fit.fallback
    section["design_columns"] = list(model_fit.design.columns)
    section["max_df_residual"] = int(np.max(model_fit.df_residual))
    section["block_correlation"] = model_fit.fit.correlation
    return section


def _contrast_summary(pipeline) -> dict:
    alpha = pipeline.params.alpha
    summary = {}
    for name, tt in pipeline.top_tables.items():
        summary[name] = {
            "n_features": int(tt.shape[0]),
            "tested": "adj.P.Val" in tt.columns,
            "n_significant_adj_p": count_significant(tt, alpha),
        }
    return summary


def build_audit(pipeline) -> dict:
    """Audit record of a completed ``DatasetPipeline``.

    Parameters
    ----------
    pipeline : DatasetPipeline
        Pipeline whose ``run()`` (or every stage) has completed.

    Returns
    -------
    dict
        Nested record; every value passes ``json.dumps(..., allow_nan=False)``.
    """
    matrix = pipeline.matrix
    timings = dict(pipeline.step_timings)

    audit = {
        "crossmeta": {
            "dataset": pipeline.dataset_id,
            "created_utc": datetime.datetime.now(datetime.timezone.utc),
            "steps_completed": list(pipeline._step_log),
        },
        "environment": {
            "python": platform.python_version(),
            "platform": platform.platform(),
            "libraries": get_library_versions(),
        },
        "input_data": {
            "count_based": matrix.is_count_based,
            "n_samples_selected": matrix.n_samples,
            "n_features_input": pipeline.n_features_input,
            "n_features_tested": matrix.n_features,
        },
        "parameters": asdict(pipeline.params),
        "seeds": {"sva_seed": pipeline.params.seed},
        "selection": pipeline.selection.to_dict(),
        "model": _model_section(pipeline),
        "notices": [n._asdict() for n in pipeline.notices],
        "execution": {
            "step_timings_seconds": timings,
            "total_seconds": sum(timings.values()),
        },
        "results_summary": _contrast_summary(pipeline),
    }
    return _safe_serialize(audit)


# ══════════════════════════════════════════════════════════════════════
# Human-readable text formatter
# ══════════════════════════════════════════════════════════════════════

_TEXT_SECTIONS = (
    ("Environment", "environment"),
    ("Input data", "input_data"),
    ("Parameters", "parameters"),
    ("Seeds", "seeds"),
    ("Model", "model"),
)


def _format_section(title: str, section: dict) -> list[str]:
    out = [f"[{title}]"]
    for key, value in section.items():
        if isinstance(value, dict):
            out.append(f"  {key}:")
            out.extend(f"    {k} = {v}" for k, v in value.items())
        else:
            out.append(f"  {key} = {value}")
    return out


def format_audit_text(audit: dict) -> str:
    """Render an audit record as plain text."""
    header = audit.get("crossmeta", {})
    rule = "-" * 60
    lines = [
        rule,
        f"crossmeta audit: {header.get('dataset', 'unknown')}",
        f"created {header.get('created_utc', 'unknown')}",
        rule,
    ]

    for title, key in _TEXT_SECTIONS:
        if audit.get(key):
            lines.extend(_format_section(title, audit[key]))
            lines.append("")

    notices = audit.get("notices", [])
    if notices:
        lines.append("[Fallbacks]")
        lines.extend(f"  {n['stage']}: {n['message']}" for n in notices)
        lines.append("")

    execution = audit.get("execution", {})
    if execution:
        lines.append(f"[Execution] {execution.get('total_seconds', 0.0):.1f}s")
        lines.extend(
            f"  {step}: {secs:.2f}s"
            for step, secs in execution.get("step_timings_seconds", {}).items()
        )
        lines.append("")

    alpha = audit.get("parameters", {}).get("alpha")
    lines.append("[Contrasts]")
    for name, summary in audit.get("results_summary", {}).items():
        lines.append(f"  {name} (# p < {alpha}): {summary['n_significant_adj_p']}")
    lines.append(rule)
    return "\n".join(lines)
