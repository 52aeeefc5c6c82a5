"""
crossmeta -- Differential expression engine for cross-study meta-analysis.

Importable for headless use, testing, notebooks or pipelines.  Raw data
acquisition, annotation and the interactive contrast selection live
outside this package and hand over an annotated ``ExpressionMatrix``
plus a ``DesignSpecification``.

Usage:
    from crossmeta import ExpressionMatrix, DesignSpecification, diff_expr

    anals = diff_expr({"GSE1": em}, previous={"GSE1": selection}, svanal=False)
"""

from crossmeta.audit import build_audit, format_audit_text, get_library_versions
from crossmeta.contrasts import effect_size, evaluate, get_top_table
from crossmeta.replicates import dedupe, which_max_iqr
from crossmeta.design import (
    DesignSpecification,
    ModelMatrices,
    build,
    build_models,
    make_name,
)
from crossmeta.errors import (
    ConfigurationError,
    CrossmetaError,
    DegenerateDesignError,
    EstimationError,
    ShapeMismatchError,
)
from crossmeta.expression import ExpressionMatrix
from crossmeta.fitting import AssayShape, ModelFit, detect_assay_shape, fit
from crossmeta.pipeline import (
    DatasetAnalysis,
    DatasetPipeline,
    PipelineParams,
    diff_expr,
    run_limma_setup,
)
from crossmeta.preparation import adjust_for_nuisance, filter_low_count, stabilize_variance
from crossmeta.protocols import ContrastSelector, Notice, Outcome, ProgressCallback
from crossmeta.sva import SurrogateVariableResult, estimate, run_sva

__version__ = "0.1.0"

__all__ = [
    "ExpressionMatrix",
    "DesignSpecification",
    "ModelMatrices",
    "build",
    "build_models",
    "make_name",
    "filter_low_count",
    "stabilize_variance",
    "adjust_for_nuisance",
    "SurrogateVariableResult",
    "estimate",
    "run_sva",
    "dedupe",
    "which_max_iqr",
    "AssayShape",
    "ModelFit",
    "detect_assay_shape",
    "fit",
    "get_top_table",
    "evaluate",
    "effect_size",
    "DatasetAnalysis",
    "DatasetPipeline",
    "PipelineParams",
    "diff_expr",
    "run_limma_setup",
    "ProgressCallback",
    "ContrastSelector",
    "Notice",
    "Outcome",
    "CrossmetaError",
    "ConfigurationError",
    "ShapeMismatchError",
    "EstimationError",
    "DegenerateDesignError",
    "build_audit",
    "format_audit_text",
    "get_library_versions",
]
