"""
crossmeta/pipeline.py — Per-dataset differential expression pipeline.

Runs one annotated ``ExpressionMatrix`` plus its ``DesignSpecification``
through every stage and collects one top table per contrast.
``diff_expr`` loops the pipeline over several datasets.

Usage
-----
Fluent chaining (full pipeline)::

    pipeline = (
        DatasetPipeline(matrix, selection, dataset_id="GSE1")
        .configure(svanal=False)
        .setup()
        .prepare()
        .estimate_surrogates()
        .adjust()
        .dedupe()
        .fit()
        .compute_contrasts()
    )
    analysis = pipeline.result()

Several datasets::

    anals = diff_expr({"GSE1": em1, "GSE2": em2}, previous=prev_anals)
    anals["GSE1"].top_tables["GSE1_test-ctrl"]

Stages never modify their inputs: each one replaces ``self.matrix``
with a new ``ExpressionMatrix``.
"""

from __future__ import annotations

import dataclasses
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Callable, Mapping

import numpy as np
import pandas as pd

from crossmeta import contrasts, fitting
from crossmeta.config import DIFF_EXPR_DEFAULTS, EBAYES_DEFAULTS, LAYER_ADJUSTED, SVA_DEFAULTS
from crossmeta.replicates import dedupe
from crossmeta.design import (
    DesignSpecification,
    ModelMatrices,
    build_models,
    contrast_name,
)
from crossmeta.errors import ConfigurationError, CrossmetaError, DegenerateDesignError
from crossmeta.expression import ExpressionMatrix
from crossmeta.preparation import adjust_for_nuisance, filter_low_count, stabilize_variance
from crossmeta.protocols import ContrastSelector, Notice
from crossmeta.sva import SurrogateVariableResult, run_sva

logger = logging.getLogger(__name__)


# ─────────────────────────────────────────────────────────────────────
# Parameter snapshot
# ─────────────────────────────────────────────────────────────────────

@dataclass
class PipelineParams:
    """Parameter snapshot for reproducibility.

    Stores every tuneable knob of a per-dataset run so the exact
    configuration can be recorded in the audit alongside the results.
    """

    annot: str = DIFF_EXPR_DEFAULTS["annot"]
    svanal: bool = DIFF_EXPR_DEFAULTS["svanal"]
    alpha: float = DIFF_EXPR_DEFAULTS["alpha"]
    seed: int = SVA_DEFAULTS["seed"]

    # Preparation
    filter_counts: bool = True
    rm_dup: bool = False

    # Top tables
    with_es: bool = EBAYES_DEFAULTS["with_es"]
    robust: bool = EBAYES_DEFAULTS["robust"]
    trend: bool = EBAYES_DEFAULTS["trend"]
    allow_no_resid: bool = EBAYES_DEFAULTS["allow_no_resid"]


# ─────────────────────────────────────────────────────────────────────
# Result container
# ─────────────────────────────────────────────────────────────────────

def _frame_to_dict(df: pd.DataFrame) -> dict:
    return {
        "index": [str(i) for i in df.index],
        "index_name": df.index.name,
        "columns": [str(c) for c in df.columns],
        "data": {str(c): df[c].tolist() for c in df.columns},
    }


def _frame_from_dict(data: dict) -> pd.DataFrame:
    index = pd.Index(data["index"], name=data.get("index_name"))
    return pd.DataFrame(data["data"], index=index, columns=data["columns"])


@dataclass
class DatasetAnalysis:
    """Output of one dataset, handed to the persistence collaborator.

    Attributes
    ----------
    dataset_id : str
    top_tables : dict[str, pd.DataFrame]
        Keyed by ``"<dataset>_<test>-<ctrl>"``.
    annot : str
        Feature column used for deduplication.
    selection : DesignSpecification
        Selection the results were derived from, reusable on later runs.
    n_sv : int
        Surrogate variables included in the model.
    notices : list[Notice]
        Recoverable fallbacks taken.
    """

    dataset_id: str
    top_tables: dict
    annot: str
    selection: DesignSpecification
    n_sv: int = 0
    notices: list = field(default_factory=list)

    def to_dict(self) -> dict:
        """JSON-safe representation; floats are stored unrounded."""
        return {
            "dataset_id": self.dataset_id,
            "annot": self.annot,
            "selection": self.selection.to_dict(),
            "n_sv": int(self.n_sv),
            "notices": [[n.stage, n.message] for n in self.notices],
            "top_tables": {k: _frame_to_dict(v) for k, v in self.top_tables.items()},
        }

    @classmethod
    def from_dict(cls, data: dict) -> DatasetAnalysis:
        return cls(
            dataset_id=data["dataset_id"],
            top_tables={k: _frame_from_dict(v) for k, v in data["top_tables"].items()},
            annot=data["annot"],
            selection=DesignSpecification.from_dict(data["selection"]),
            n_sv=data.get("n_sv", 0),
            notices=[Notice(*n) for n in data.get("notices", [])],
        )


# ─────────────────────────────────────────────────────────────────────
# Selection matching
# ─────────────────────────────────────────────────────────────────────

def run_limma_setup(
    matrix: ExpressionMatrix,
    selection: DesignSpecification,
) -> ExpressionMatrix:
    """
    Restrict *matrix* to the selected samples and attach the selection.

    Adds the sample columns ``group``, ``treatment`` (``"test"`` /
    ``"ctrl"`` for the first contrast) and, for paired designs,
    ``pair``.  A two-channel dataset where only one channel of each
    array is selected is thereby reduced to a single-channel one.

    Raises
    ------
    ConfigurationError
        Invalid selection, or selected samples absent from the matrix.
    """
    selection.validate(matrix.name)

    selected = selection.selected_samples
    unknown = selected.difference(matrix.sample_names)
    if len(unknown):
        raise ConfigurationError(
            f"Dataset '{matrix.name}': selected samples not in expression data: "
            f"{list(unknown[:5])}"
        )

    # Keep the matrix's sample order
    order = [s for s in matrix.sample_names if s in set(selected)]
    matrix = matrix.select_samples(order)

    samples = matrix.samples.copy()
    samples["group"] = selection.groups.reindex(order).astype(str).to_numpy()
    samples["treatment"] = selection.treatment().reindex(order).to_numpy()
    if selection.is_paired:
        samples["pair"] = selection.pairs.reindex(order).to_numpy()
    elif "pair" in samples.columns:
        samples = samples.drop(columns="pair")
    return matrix.with_samples(samples)


def resolve_annot(annot: str, matrices: Mapping[str, ExpressionMatrix]) -> str:
    """Map ``"SPECIES"`` to the first ``<taxid>_SYMBOL`` column of the first dataset."""
    if annot != "SPECIES" or not matrices:
        return annot
    first_id, first = next(iter(matrices.items()))
    for col in first.features.columns:
        if re.match(r"^\d+_SYMBOL$", str(col)):
            return str(col)
    raise ConfigurationError(
        f"Dataset '{first_id}': annot='SPECIES' but no '<taxid>_SYMBOL' feature column. "
        f"Available: {list(first.features.columns)}"
    )


# ─────────────────────────────────────────────────────────────────────
# Pipeline class
# ─────────────────────────────────────────────────────────────────────

class DatasetPipeline:
    """Orchestrator for one dataset.

    Every stage method returns ``self`` for fluent chaining.

    Pipeline stages
    ~~~~~~~~~~~~~~~~
    1. ``setup()``               — subset to the selection, build full/null models
    2. ``prepare()``             — low-count filter + variance stabilisation
    3. ``estimate_surrogates()`` — surrogate variables (zero on failure)
    4. ``adjust()``              — nuisance-adjusted layer for ranking
    5. ``dedupe()``              — one feature per ``annot`` value
    6. ``fit()``                 — strategy chosen by assay shape
    7. ``compute_contrasts()``   — one top table per contrast
    8. ``run()``                 — all of the above

    Key attributes
    ~~~~~~~~~~~~~~~
    matrix : ExpressionMatrix
        Current matrix (replaced by each stage).
    models : ModelMatrices | None
    surrogates : SurrogateVariableResult | None
    model_fit : ModelFit | None
    top_tables : dict[str, pd.DataFrame]
    notices : list[Notice]
    step_timings : dict[str, float]
    """

    TOTAL_STEPS: int = 8

    def __init__(
        self,
        matrix: ExpressionMatrix,
        selection: DesignSpecification,
        dataset_id: str | None = None,
    ) -> None:
        self.dataset_id: str = dataset_id or matrix.name or "dataset"
        if matrix.name != self.dataset_id:
            matrix = dataclasses.replace(matrix, name=self.dataset_id)

        self._matrix_input: ExpressionMatrix = matrix
        self.selection: DesignSpecification = selection
        self.params: PipelineParams = PipelineParams()

        self.matrix: ExpressionMatrix = matrix
        self.models: ModelMatrices | None = None
        self.surrogates: SurrogateVariableResult | None = None
        self.model_fit: fitting.ModelFit | None = None
        self.top_tables: dict[str, pd.DataFrame] = {}
        self.notices: list[Notice] = []
        self.n_features_input: int = matrix.n_features

        self.step_timings: dict[str, float] = {}
        self._step_log: list[str] = []
        self._step: int = 0

        self.progress_callback: Callable[[int, int, str], None] | None = None

    # ── Configuration ──────────────────────────────────────────────

    def configure(self, **kwargs) -> DatasetPipeline:
        """Set pipeline parameters.  Unknown keys raise ``ConfigurationError``."""
        for key, value in kwargs.items():
            if hasattr(self.params, key):
                setattr(self.params, key, value)
            else:
                raise ConfigurationError(
                    f"Unknown parameter: '{key}'.  "
                    f"Valid keys: {[f.name for f in dataclasses.fields(self.params)]}"
                )
        return self

    # ── Progress helpers ───────────────────────────────────────────

    def _report(self, key: str) -> None:
        if self.progress_callback:
            self.progress_callback(self._step, self.TOTAL_STEPS, key)
        self._step += 1

    def _require(self, attr: str, stage: str) -> None:
        if getattr(self, attr) is None:
            raise RuntimeError(f"Run {stage}() before this step.")

    # ── Step 1: Setup ──────────────────────────────────────────────

    def setup(self) -> DatasetPipeline:
        """Match the selection to the matrix and build the full/null models."""
        self._report("progress.setup")
        t0 = time.monotonic()

        self.matrix = run_limma_setup(self.matrix, self.selection)
        samples = self.matrix.samples
        self.models = build_models(samples["group"], samples.get("pair"))

        self.step_timings["setup"] = time.monotonic() - t0
        self._step_log.append("setup")
        return self

    # ── Step 2: Preparation ────────────────────────────────────────

    def prepare(self) -> DatasetPipeline:
        """Low-count filter (counts only) and the ``"vsd"`` layer."""
        self._report("progress.prepare")
        t0 = time.monotonic()

        if self.params.filter_counts:
            self.matrix = filter_low_count(self.matrix)
        self.matrix = stabilize_variance(self.matrix)

        self.step_timings["prepare"] = time.monotonic() - t0
        self._step_log.append("prepare")
        return self

    # ── Step 3: Surrogate variables ────────────────────────────────

    def estimate_surrogates(self) -> DatasetPipeline:
        self._require("models", "setup")
        self._report("progress.sva")
        t0 = time.monotonic()

        self.surrogates = run_sva(
            self.matrix,
            self.models,
            enabled=self.params.svanal,
            notices=self.notices,
            seed=self.params.seed,
        )

        self.step_timings["sva"] = time.monotonic() - t0
        self._step_log.append("sva")
        return self

    @property
    def n_sv(self) -> int:
        return 0 if self.surrogates is None else self.surrogates.n_sv

    # ── Step 4: Nuisance adjustment ────────────────────────────────

    def adjust(self) -> DatasetPipeline:
        self._require("models", "setup")
        self._report("progress.adjust")
        t0 = time.monotonic()

        sv = None if self.surrogates is None else self.surrogates.sv
        self.matrix = adjust_for_nuisance(
            self.matrix, self.models, sv, self.n_sv, notices=self.notices,
        )

        self.step_timings["adjust"] = time.monotonic() - t0
        self._step_log.append("adjust")
        return self

    # ── Step 5: Deduplication ──────────────────────────────────────

    def dedupe(self) -> DatasetPipeline:
        """One feature per ``annot`` value, ranked on the nuisance-adjusted layer."""
        self._report("progress.dedupe")
        t0 = time.monotonic()

        self.matrix = dedupe(
            self.matrix,
            self.params.annot,
            ranking_layer=LAYER_ADJUSTED,
            rm_dup=self.params.rm_dup,
        )

        self.step_timings["dedupe"] = time.monotonic() - t0
        self._step_log.append("dedupe")
        return self

    # ── Step 6: Model fit ──────────────────────────────────────────

    def fit(self) -> DatasetPipeline:
        self._report("progress.fit")
        t0 = time.monotonic()

        self.model_fit = fitting.fit(
            self.matrix,
            surrogates=self.surrogates,
            n_surrogates=self.n_sv,
            notices=self.notices,
        )

        self.step_timings["fit"] = time.monotonic() - t0
        self._step_log.append("fit")
        return self

    # ── Step 7: Contrasts ──────────────────────────────────────────

    def compute_contrasts(self) -> DatasetPipeline:
        """One top table per selected contrast.

        A contrast without residual degrees of freedom (when degraded
        tables are not allowed) is skipped with a notice; the remaining
        contrasts are still computed.
        """
        self._require("model_fit", "fit")
        self._report("progress.contrasts")
        t0 = time.monotonic()

        p = self.params
        for test_group, control_group in self.selection.contrasts:
            key = f"{self.dataset_id}_{contrast_name(test_group, control_group)}"
            try:
                tt = contrasts.get_top_table(
                    self.model_fit,
                    groups=(test_group, control_group),
                    with_es=p.with_es,
                    robust=p.robust,
                    trend=p.trend,
                    allow_no_resid=p.allow_no_resid,
                )
            except DegenerateDesignError as exc:
                logger.error("%s skipped: %s", key, exc)
                self.notices.append(Notice("contrast", f"{key} skipped: {exc}"))
                continue

            n_sig = contrasts.count_significant(tt, p.alpha)
            logger.info("%s (# p < %s): %d", key, p.alpha, n_sig)
            self.top_tables[key] = tt

        self.step_timings["contrasts"] = time.monotonic() - t0
        self._step_log.append("contrasts")
        return self

    # ── Full run ───────────────────────────────────────────────────

    def run(self) -> DatasetPipeline:
        self._step = 0
        (
            self
            .setup()
            .prepare()
            .estimate_surrogates()
            .adjust()
            .dedupe()
            .fit()
            .compute_contrasts()
        )
        self._report("progress.done")
        self._step_log.append("run_complete")
        return self

    # ── Output accessors ───────────────────────────────────────────

    def result(self) -> DatasetAnalysis:
        if "contrasts" not in self._step_log:
            raise RuntimeError(
                "Pipeline has not been run yet. Call .run() or "
                "execute steps individually first."
            )
        return DatasetAnalysis(
            dataset_id=self.dataset_id,
            top_tables=dict(self.top_tables),
            annot=self.params.annot,
            selection=self.selection,
            n_sv=self.n_sv,
            notices=list(self.notices),
        )

    def build_audit(self) -> dict:
        """JSON-serialisable audit of the completed run."""
        from crossmeta.audit import build_audit
        return build_audit(self)

    # ── Serialisation ──────────────────────────────────────────────

    def __getstate__(self) -> dict:
        state = self.__dict__.copy()
        state["progress_callback"] = None
        return state

    def __setstate__(self, state: dict) -> None:
        self.__dict__.update(state)
        if not hasattr(self, "progress_callback"):
            self.progress_callback = None

    def __repr__(self) -> str:
        status = self._step_log[-1] if self._step_log else "not started"
        return (
            f"<DatasetPipeline "
            f"dataset={self.dataset_id!r} "
            f"status={status!r} "
            f"features={self.matrix.n_features} "
            f"n_sv={self.n_sv}>"
        )


# ─────────────────────────────────────────────────────────────────────
# Multi-dataset runner
# ─────────────────────────────────────────────────────────────────────

def _previous_selection(prev) -> DesignSpecification | None:
    if prev is None:
        return None
    if isinstance(prev, DatasetAnalysis):
        return prev.selection
    if isinstance(prev, DesignSpecification):
        return prev
    if isinstance(prev, dict):
        return DesignSpecification.from_dict(prev.get("selection", prev))
    raise ConfigurationError(f"Unsupported previous result type: {type(prev).__name__}")


def diff_expr(
    matrices: Mapping[str, ExpressionMatrix],
    annot: str = DIFF_EXPR_DEFAULTS["annot"],
    previous: Mapping | None = None,
    svanal: bool = DIFF_EXPR_DEFAULTS["svanal"],
    recheck: bool = DIFF_EXPR_DEFAULTS["recheck"],
    select_contrasts: ContrastSelector | None = None,
    progress_callback: Callable[[int, int, str], None] | None = None,
    **params,
) -> dict[str, DatasetAnalysis]:
    """
    Differential expression analysis of several datasets.

    Parameters
    ----------
    matrices : Mapping[str, ExpressionMatrix]
        Annotated matrices keyed by dataset identifier.
    annot : str
        Feature column used to collapse replicated features.
        ``"SPECIES"`` selects the first ``<taxid>_SYMBOL`` column.
    previous : Mapping, optional
        Earlier results per dataset (``DatasetAnalysis``, its
        ``to_dict()`` form, or a bare ``DesignSpecification``).  Their
        selections are reused.
    svanal : bool
        Run surrogate variable analysis?
    recheck : bool
        Ask *select_contrasts* again even when a previous selection exists.
    select_contrasts : ContrastSelector, optional
        Supplies a selection when none is available.
    progress_callback : callable, optional
        Passed to each ``DatasetPipeline``.
    **params
        Further ``PipelineParams`` fields.

    Returns
    -------
    dict[str, DatasetAnalysis]
        Datasets that failed fatally are logged and left out.
    """
    annot = resolve_annot(annot, matrices)
    previous = previous or {}

    anals: dict[str, DatasetAnalysis] = {}
    for dataset_id, matrix in matrices.items():
        try:
            selection = _previous_selection(previous.get(dataset_id))
            if selection is None or recheck:
                if select_contrasts is None:
                    raise ConfigurationError(
                        f"Dataset '{dataset_id}': no previous selection and no "
                        f"contrast selector supplied."
                    )
                selection = select_contrasts(matrix, dataset_id, selection)

            pipeline = DatasetPipeline(matrix, selection, dataset_id=dataset_id)
            pipeline.configure(annot=annot, svanal=svanal, **params)
            pipeline.progress_callback = progress_callback
            anals[dataset_id] = pipeline.run().result()
        except (CrossmetaError, np.linalg.LinAlgError) as exc:
            logger.error("Dataset '%s' failed: %s", dataset_id, exc)
            continue
    return anals
