"""Tests for assay-shape detection and the fitting strategies."""
import numpy as np
import pandas as pd
import pytest

import crossmeta.fitting as fitting_module
from crossmeta.expression import ExpressionMatrix
from crossmeta.fitting import STRATEGIES, AssayShape, FitStrategy, detect_assay_shape, fit
from crossmeta.sva import SurrogateVariableResult


def _nan_correlation(y, design, block, weights=None, **kwargs):
    return {"consensus_correlation": np.nan, "correlation": np.full(np.shape(y)[0], np.nan)}


def _with_groups(em, groups, pairs=None):
    samples = em.samples.copy()
    samples["group"] = list(groups)
    if pairs is not None:
        samples["pair"] = list(pairs)
    return em.with_samples(samples)


@pytest.fixture
def paired_microarray(microarray_matrix):
    pairs = [f"p{i}" for i in range(5)] * 2
    return _with_groups(microarray_matrix, ["test"] * 5 + ["ctrl"] * 5, pairs)


def test_detect_shapes(microarray_matrix, count_matrix, make_counts, paired_microarray):
    assert detect_assay_shape(_with_groups(microarray_matrix, ["t", "c"] * 5)) \
        == AssayShape.SINGLE_CHANNEL_UNPAIRED
    assert detect_assay_shape(paired_microarray) == AssayShape.SINGLE_CHANNEL_PAIRED
    assert detect_assay_shape(count_matrix) == AssayShape.COUNT_UNPAIRED
    paired_counts = make_counts(pairs=["a", "a", "b", "b", "c", "c", "d", "d"])
    assert detect_assay_shape(paired_counts) == AssayShape.COUNT_PAIRED


def test_two_channel_needs_both_channels(rng):
    exprs = pd.DataFrame(
        rng.normal(size=(5, 4)),
        columns=["A1_red", "A1_green", "A2_red", "A2_green"],
    )
    em = ExpressionMatrix.from_frames(exprs)
    assert detect_assay_shape(em) == AssayShape.TWO_CHANNEL

    one_channel = em.select_samples(["A1_red", "A2_red"])
    assert detect_assay_shape(one_channel) == AssayShape.SINGLE_CHANNEL_UNPAIRED


def test_ordinary_fit_carries_annotation(microarray_matrix):
    em = _with_groups(microarray_matrix, ["test"] * 5 + ["ctrl"] * 5)
    model_fit = fit(em)

    assert model_fit.shape == AssayShape.SINGLE_CHANNEL_UNPAIRED
    assert list(model_fit.design.columns) == ["ctrl", "test"]
    assert (model_fit.df_residual == 8).all()
    assert list(model_fit.genes.columns) == ["ENTREZID", "PROBE"]
    assert model_fit.feature_names.equals(em.feature_names)
    assert model_fit.fallback is None


def test_surrogates_enter_design(microarray_matrix, rng):
    em = _with_groups(microarray_matrix, ["test"] * 5 + ["ctrl"] * 5)
    sv = SurrogateVariableResult(sv=rng.normal(size=(10, 2)), n_sv=2, sample_names=em.sample_names)
    model_fit = fit(em, surrogates=sv, n_surrogates=2)

    assert list(model_fit.design.columns) == ["ctrl", "test", "SV1", "SV2"]
    assert (model_fit.df_residual == 6).all()


def test_paired_microarray_uses_block_correlation(paired_microarray):
    model_fit = fit(paired_microarray)

    assert model_fit.shape == AssayShape.SINGLE_CHANNEL_PAIRED
    assert model_fit.fit.correlation is not None
    assert np.isfinite(model_fit.fit.correlation)
    assert list(model_fit.design.columns) == ["ctrl", "test"]


def test_paired_microarray_undefined_correlation_falls_back(monkeypatch, paired_microarray):
    monkeypatch.setattr(fitting_module, "duplicate_correlation", _nan_correlation)
    notices = []
    model_fit = fit(paired_microarray, notices=notices)

    assert model_fit.fallback == "fixed_effect_pairs"
    assert [c for c in model_fit.design.columns if c.startswith("pair")] == [
        "pairp1", "pairp2", "pairp3", "pairp4",
    ]
    assert (model_fit.df_residual == 4).all()
    assert model_fit.fit.coefficients.shape[1] == model_fit.design.shape[1]
    assert [n.stage for n in notices] == ["fit"]


def test_count_unpaired_quality_weights(count_matrix):
    model_fit = fit(count_matrix)

    assert model_fit.shape == AssayShape.COUNT_UNPAIRED
    assert (model_fit.df_residual == 6).all()
    assert list(model_fit.genes.columns) == ["ENTREZID"]


def _scripted_correlation(values):
    """duplicate_correlation stand-in returning *values* in call order."""
    calls = []

    def scripted(y, design, block, weights=None, **kwargs):
        value = values[len(calls)]
        calls.append(value)
        return {"consensus_correlation": value, "correlation": np.full(np.shape(y)[0], value)}

    return scripted, calls


def test_count_paired_two_rounds(monkeypatch, make_counts):
    """Both correlation rounds succeed: pairs stay a block term."""
    scripted, calls = _scripted_correlation([0.25, 0.3])
    monkeypatch.setattr(fitting_module, "duplicate_correlation", scripted)
    em = make_counts(pairs=["a", "a", "b", "b", "c", "c", "d", "d"])
    notices = []
    model_fit = fit(em, notices=notices)

    assert calls == [0.25, 0.3]
    assert model_fit.shape == AssayShape.COUNT_PAIRED
    assert model_fit.fallback is None
    assert model_fit.fit.correlation == pytest.approx(0.3)
    assert list(model_fit.design.columns) == ["ctrl", "test"]
    assert (model_fit.df_residual == 6).all()
    assert notices == []


def test_count_paired_second_round_failure_uses_fixed_pairs(monkeypatch, make_counts):
    """Round one succeeds, round two is undefined: pairs become fixed effects."""
    scripted, calls = _scripted_correlation([0.25, np.nan])
    monkeypatch.setattr(fitting_module, "duplicate_correlation", scripted)
    em = make_counts(pairs=["a", "a", "b", "b", "c", "c", "d", "d"])
    notices = []
    model_fit = fit(em, notices=notices)

    assert len(calls) == 2
    assert model_fit.fallback == "fixed_effect_pairs"
    assert list(model_fit.design.columns) == ["ctrl", "test", "pairb", "pairc", "paird"]
    assert (model_fit.df_residual == 3).all()
    assert len(notices) == 1
    assert "second-round" in notices[0].message


def test_count_paired_failed_correlation_uses_fixed_pairs(monkeypatch, make_counts):
    """Four pairs, correlation forced to fail: pairs become fixed effects."""
    monkeypatch.setattr(fitting_module, "duplicate_correlation", _nan_correlation)
    em = make_counts(pairs=["a", "a", "b", "b", "c", "c", "d", "d"])
    notices = []
    model_fit = fit(em, notices=notices)

    assert model_fit.fallback == "fixed_effect_pairs"
    assert list(model_fit.design.columns) == ["ctrl", "test", "pairb", "pairc", "paird"]
    assert (model_fit.df_residual == 3).all()
    assert len(notices) == 1


def test_count_paired_saturated_drops_pairs(monkeypatch, make_counts, rng):
    """Fixed pairs plus a surrogate leave no residual df: pairing is dropped."""
    monkeypatch.setattr(fitting_module, "duplicate_correlation", _nan_correlation)
    em = make_counts(groups=("test", "ctrl", "test", "ctrl"), pairs=["p1", "p1", "p2", "p2"])
    sv = SurrogateVariableResult(sv=rng.normal(size=(4, 1)), n_sv=1, sample_names=em.sample_names)
    notices = []
    model_fit = fit(em, surrogates=sv, n_surrogates=1, notices=notices)

    assert model_fit.fallback == "dropped_pairs"
    assert list(model_fit.design.columns) == ["ctrl", "test", "SV1"]
    assert model_fit.df_residual.max() > 0
    assert len(notices) == 2
    assert list(model_fit.genes.columns) == ["ENTREZID"]


def test_two_channel_fit(rng):
    arrays = [f"A{i}" for i in range(6)]
    columns = [f"{a}_{ch}" for a in arrays for ch in ("red", "green")]
    groups = ["test", "ctrl"] * 6
    spot = np.repeat(rng.normal(0, 2.0, size=(40, 6)), 2, axis=1)
    values = spot + rng.normal(0, 0.3, size=(40, 12))
    values[:5, 0::2] += 2.0
    em = ExpressionMatrix.from_frames(pd.DataFrame(values, columns=columns))
    em = _with_groups(em, groups)

    model_fit = fit(em)

    assert model_fit.shape == AssayShape.TWO_CHANNEL
    assert list(model_fit.design.columns) == ["ctrl", "test"]
    assert model_fit.fit.correlation > 0
    diff = model_fit.fit.coefficients[:, 1] - model_fit.fit.coefficients[:, 0]
    assert diff[:5].mean() > 1.5


def test_every_shape_has_a_concrete_strategy():
    with pytest.raises(TypeError):
        FitStrategy()
    assert set(STRATEGIES) == set(AssayShape)
    for shape, strategy in STRATEGIES.items():
        assert isinstance(strategy, FitStrategy)
        assert strategy.shape == shape
