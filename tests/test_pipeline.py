"""End-to-end tests for the per-dataset pipeline and the multi-dataset runner."""
import json
import logging

import numpy as np
import pandas as pd
import pytest

import crossmeta.sva as sva_module
from crossmeta.audit import format_audit_text
from crossmeta.design import DesignSpecification
from crossmeta.errors import ConfigurationError
from crossmeta.expression import ExpressionMatrix
from crossmeta.fitting import AssayShape
from crossmeta.pipeline import (
    DatasetAnalysis,
    DatasetPipeline,
    diff_expr,
    resolve_annot,
    run_limma_setup,
)


def test_unpaired_microarray_without_sva(microarray_matrix, microarray_selection):
    """5 vs 5 intensities, no SVA: one contrast, 8 residual df, p-values present."""
    pipeline = DatasetPipeline(microarray_matrix, microarray_selection)
    pipeline.configure(svanal=False).run()
    analysis = pipeline.result()

    assert list(analysis.top_tables) == ["GSE1_test-ctrl"]
    assert (pipeline.model_fit.df_residual == 8).all()
    tt = analysis.top_tables["GSE1_test-ctrl"]
    assert "P.Value" in tt.columns
    assert tt["P.Value"].notna().all()
    assert tt.shape[0] == 50
    assert tt.index.is_unique
    assert analysis.n_sv == 0
    assert analysis.notices == []


def test_sva_failure_continues_without_surrogates(monkeypatch, microarray_matrix, microarray_selection):
    """A numerical SVA error leaves a notice and a design without SV columns."""
    def failing(*args, **kwargs):
        raise np.linalg.LinAlgError("SVD did not converge")

    monkeypatch.setattr(sva_module, "estimate_n_surrogates", failing)
    pipeline = DatasetPipeline(microarray_matrix, microarray_selection).run()

    assert pipeline.n_sv == 0
    assert [n.stage for n in pipeline.notices] == ["sva"]
    assert list(pipeline.model_fit.design.columns) == ["ctrl", "test"]
    assert "GSE1_test-ctrl" in pipeline.result().top_tables


def test_setup_subsets_selected_samples(microarray_matrix):
    groups = pd.Series(
        ["test", "test", None, "ctrl", "ctrl", "ctrl", None, None, None, None],
        index=microarray_matrix.sample_names,
    )
    selection = DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),))
    em = run_limma_setup(microarray_matrix, selection)

    assert list(em.sample_names) == ["S01", "S02", "S04", "S05", "S06"]
    assert em.samples["treatment"].tolist() == ["test", "test", "ctrl", "ctrl", "ctrl"]
    assert "pair" not in em.samples.columns


def test_setup_attaches_pairs(microarray_matrix):
    groups = pd.Series(["test"] * 5 + ["ctrl"] * 5, index=microarray_matrix.sample_names)
    pairs = pd.Series([f"p{i}" for i in range(5)] * 2, index=microarray_matrix.sample_names)
    selection = DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),), pairs=pairs)
    em = run_limma_setup(microarray_matrix, selection)

    assert em.samples["pair"].tolist() == pairs.tolist()


def test_setup_unknown_sample(microarray_matrix):
    groups = pd.Series(["test", "ctrl"], index=["S01", "S99"])
    selection = DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),))
    with pytest.raises(ConfigurationError, match="S99"):
        run_limma_setup(microarray_matrix, selection)


def test_single_selected_channel_is_single_channel(rng):
    columns = [f"A{i}_{ch}" for i in range(6) for ch in ("red", "green")]
    probes = [f"p{i}" for i in range(30)]
    em = ExpressionMatrix.from_frames(
        pd.DataFrame(rng.normal(8, 1, size=(30, 12)), index=probes, columns=columns),
        features=pd.DataFrame({"SYMBOL": probes}, index=probes),
        name="GSE2",
    )
    groups = pd.Series(
        [g if c.endswith("_red") else None for c, g in zip(columns, ["test", "x", "ctrl", "x"] * 3)],
        index=columns,
    )
    selection = DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),))

    pipeline = DatasetPipeline(em, selection).configure(svanal=False).run()

    assert pipeline.model_fit.shape == AssayShape.SINGLE_CHANNEL_UNPAIRED
    assert "GSE2_test-ctrl" in pipeline.result().top_tables


def test_replicates_ranked_after_pair_adjustment(rng):
    """A probe whose spread comes only from pair effects loses to a group-driven one."""
    samples = [f"S{i:02d}" for i in range(1, 11)]
    probes = [f"p{i}" for i in range(30)] + ["pA", "pB"]
    values = rng.normal(8.0, 0.5, size=(32, 10))
    pair_level = np.array([0.0, 4.0, 8.0, 12.0, 16.0] * 2)
    values[30] = 8.0 + pair_level
    values[31] = 8.0 + np.r_[np.full(5, 2.0), np.zeros(5)] + rng.normal(0, 0.1, size=10)
    features = pd.DataFrame({
        "PROBE": probes,
        "SYMBOL": [f"G{i}" for i in range(30)] + ["DUP", "DUP"],
    }, index=probes)
    em = ExpressionMatrix.from_frames(
        pd.DataFrame(values, index=probes, columns=samples), features=features, name="GSE3",
    )
    selection = DesignSpecification(
        groups=pd.Series(["test"] * 5 + ["ctrl"] * 5, index=samples),
        contrasts=(("test", "ctrl"),),
        pairs=pd.Series([f"q{i}" for i in range(5)] * 2, index=samples),
    )

    pipeline = DatasetPipeline(em, selection).configure(svanal=False).run()

    assert pipeline.matrix.features.loc["DUP", "PROBE"] == "pB"


def test_count_dataset_end_to_end(count_matrix, count_selection):
    pipeline = DatasetPipeline(count_matrix, count_selection).configure(svanal=False).run()

    assert pipeline.model_fit.shape == AssayShape.COUNT_UNPAIRED
    assert pipeline.matrix.has_layer("vsd")
    assert pipeline.matrix.has_layer("adjusted")
    tt = pipeline.result().top_tables["SRP1_test-ctrl"]
    assert tt.shape[0] == pipeline.matrix.n_features
    assert "GENE0" in tt.index[:20]


def test_progress_callback_reports_every_stage(microarray_matrix, microarray_selection):
    calls = []
    pipeline = DatasetPipeline(microarray_matrix, microarray_selection).configure(svanal=False)
    pipeline.progress_callback = lambda cur, total, key: calls.append((cur, total, key))
    pipeline.run()

    assert [c[0] for c in calls] == list(range(DatasetPipeline.TOTAL_STEPS))
    assert calls[-1][2] == "progress.done"


def test_unknown_parameter(microarray_matrix, microarray_selection):
    with pytest.raises(ConfigurationError, match="Unknown parameter"):
        DatasetPipeline(microarray_matrix, microarray_selection).configure(seeed=1)


def test_result_before_run(microarray_matrix, microarray_selection):
    with pytest.raises(RuntimeError):
        DatasetPipeline(microarray_matrix, microarray_selection).result()


def test_analysis_json_round_trip(microarray_matrix, microarray_selection):
    """Serialised results come back with identical numbers."""
    anals = diff_expr(
        {"GSE1": microarray_matrix},
        previous={"GSE1": microarray_selection},
        svanal=False,
    )
    original = anals["GSE1"]
    restored = DatasetAnalysis.from_dict(json.loads(json.dumps(original.to_dict())))

    assert restored.annot == "SYMBOL"
    assert restored.selection.contrasts == original.selection.contrasts
    for name, tt in original.top_tables.items():
        back = restored.top_tables[name]
        pd.testing.assert_frame_equal(
            back, tt, check_dtype=False, check_index_type=False, check_column_type=False,
        )
        for col in ("logFC", "P.Value", "adj.P.Val", "dprime", "vardprime"):
            assert np.array_equal(back[col].to_numpy(), tt[col].to_numpy())


def test_batch_continues_after_fatal_dataset(caplog, microarray_matrix, microarray_selection):
    """A dataset without the annotation column is skipped, the next one runs."""
    broken = ExpressionMatrix.from_frames(
        microarray_matrix.exprs,
        features=microarray_matrix.features.drop(columns="SYMBOL"),
        name="GSE_BAD",
    )
    with caplog.at_level(logging.ERROR, logger="crossmeta.pipeline"):
        anals = diff_expr(
            {"GSE_BAD": broken, "GSE1": microarray_matrix},
            previous={"GSE_BAD": microarray_selection, "GSE1": microarray_selection},
            svanal=False,
        )

    assert list(anals) == ["GSE1"]
    assert "GSE_BAD" in caplog.text
    assert "SYMBOL" in caplog.text


def test_batch_continues_after_empty_count_dataset(caplog, rng, make_counts, microarray_matrix,
                                                  microarray_selection):
    """Counts that all fail the low-count filter abort only their own dataset."""
    template = make_counts(groups=("test", "ctrl") * 3, name="LOW")
    low = ExpressionMatrix.from_frames(
        pd.DataFrame(
            rng.poisson(0.2, size=template.exprs.shape),
            index=template.exprs.index,
            columns=template.exprs.columns,
        ),
        template.samples,
        template.features,
        name="LOW",
    )
    low_selection = DesignSpecification(
        groups=pd.Series(list(template.samples["group"]), index=template.sample_names),
        contrasts=(("test", "ctrl"),),
    )

    with caplog.at_level(logging.ERROR, logger="crossmeta.pipeline"):
        anals = diff_expr(
            {"LOW": low, "GSE1": microarray_matrix},
            previous={"LOW": low_selection, "GSE1": microarray_selection},
            svanal=False,
        )

    assert list(anals) == ["GSE1"]
    assert "GSE1_test-ctrl" in anals["GSE1"].top_tables
    assert "Dataset 'LOW' failed" in caplog.text


def test_selector_called_when_no_previous(microarray_matrix, microarray_selection):
    seen = []

    def selector(matrix, dataset_id, previous):
        seen.append((dataset_id, previous))
        return microarray_selection

    anals = diff_expr({"GSE1": microarray_matrix}, svanal=False, select_contrasts=selector)

    assert seen == [("GSE1", None)]
    assert anals["GSE1"].selection is microarray_selection


def test_recheck_passes_previous_selection(microarray_matrix, microarray_selection):
    seen = []

    def selector(matrix, dataset_id, previous):
        seen.append(previous)
        return previous

    anals = diff_expr(
        {"GSE1": microarray_matrix},
        previous={"GSE1": microarray_selection},
        recheck=True,
        svanal=False,
        select_contrasts=selector,
    )
    assert seen == [microarray_selection]
    assert "GSE1" in anals


def test_previous_analysis_is_reused(microarray_matrix, microarray_selection):
    first = diff_expr({"GSE1": microarray_matrix}, previous={"GSE1": microarray_selection}, svanal=False)
    again = diff_expr({"GSE1": microarray_matrix}, previous=first, svanal=False)
    from_json = diff_expr(
        {"GSE1": microarray_matrix},
        previous={"GSE1": json.loads(json.dumps(first["GSE1"].to_dict()))},
        svanal=False,
    )

    tt = first["GSE1"].top_tables["GSE1_test-ctrl"]
    pd.testing.assert_frame_equal(again["GSE1"].top_tables["GSE1_test-ctrl"], tt)
    pd.testing.assert_frame_equal(from_json["GSE1"].top_tables["GSE1_test-ctrl"], tt)


def test_missing_selection_without_selector_is_skipped(caplog, microarray_matrix):
    with caplog.at_level(logging.ERROR, logger="crossmeta.pipeline"):
        anals = diff_expr({"GSE1": microarray_matrix}, svanal=False)
    assert anals == {}
    assert "no previous selection" in caplog.text


def test_species_annotation_resolves(microarray_matrix):
    features = microarray_matrix.features.rename(columns={"SYMBOL": "9606_SYMBOL"})
    em = ExpressionMatrix.from_frames(microarray_matrix.exprs, features=features, name="GSE1")

    assert resolve_annot("SPECIES", {"GSE1": em}) == "9606_SYMBOL"
    assert resolve_annot("PROBE", {"GSE1": em}) == "PROBE"
    with pytest.raises(ConfigurationError, match="SPECIES"):
        resolve_annot("SPECIES", {"GSE1": microarray_matrix})


def test_summary_line_logged(caplog, microarray_matrix, microarray_selection):
    with caplog.at_level(logging.INFO, logger="crossmeta.pipeline"):
        DatasetPipeline(microarray_matrix, microarray_selection).configure(svanal=False).run()
    assert "GSE1_test-ctrl (# p < 0.05):" in caplog.text


def test_audit_is_json_serialisable(microarray_matrix, microarray_selection):
    pipeline = DatasetPipeline(microarray_matrix, microarray_selection).configure(svanal=False).run()
    audit = pipeline.build_audit()

    json.dumps(audit, allow_nan=False)
    assert audit["crossmeta"]["dataset"] == "GSE1"
    assert audit["model"]["assay_shape"] == "single_channel_unpaired"
    assert audit["input_data"]["n_features_tested"] == 50
    assert audit["results_summary"]["GSE1_test-ctrl"]["n_significant_adj_p"] >= 5
    assert "GSE1" in format_audit_text(audit)
