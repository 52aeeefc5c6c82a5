"""Tests for surrogate variable estimation."""
import numpy as np
import pandas as pd
import pytest

import crossmeta.sva as sva_module
from crossmeta.design import build_models
from crossmeta.expression import ExpressionMatrix
from crossmeta.sva import estimate, run_sva


@pytest.fixture
def batch_matrix(rng):
    """400 features x 20 samples with a strong batch effect unrelated to group."""
    n_features, n_samples = 400, 20
    samples = [f"S{i:02d}" for i in range(n_samples)]
    groups = pd.Series(["t", "c"] * 10, index=samples)
    batch = np.array([1.0] * 5 + [-1.0] * 5 + [1.0] * 5 + [-1.0] * 5)

    values = rng.normal(0, 1, size=(n_features, n_samples))
    loadings = np.zeros(n_features)
    loadings[:150] = rng.uniform(2.0, 4.0, size=150)
    values += loadings[:, None] * batch[None, :]
    values[150:170, groups.to_numpy() == "t"] += 2.0

    em = ExpressionMatrix.from_frames(
        pd.DataFrame(values, columns=samples),
        features=pd.DataFrame({"PROBE": [f"p{i}" for i in range(n_features)]}),
    )
    return em, build_models(groups), batch


def test_disabled_returns_zero_columns(microarray_matrix, microarray_selection):
    models = build_models(microarray_selection.groups)
    outcome = estimate(microarray_matrix, models.full, models.null, enabled=False)

    assert outcome.ok
    assert outcome.value.n_sv == 0
    assert outcome.value.sv.shape == (10, 0)


def test_disabled_does_no_computation(monkeypatch, microarray_matrix, microarray_selection):
    def boom(*args, **kwargs):
        raise AssertionError("should not be called")

    monkeypatch.setattr(sva_module, "estimate_n_surrogates", boom)
    models = build_models(microarray_selection.groups)
    result = run_sva(microarray_matrix, models, enabled=False)
    assert result.n_sv == 0


def test_batch_effect_is_recovered(batch_matrix):
    em, models, batch = batch_matrix
    result = run_sva(em, models)

    assert result.n_sv >= 1
    r = np.corrcoef(result.sv[:, 0], batch)[0, 1]
    assert abs(r) > 0.8
    assert list(result.as_frame().columns)[0] == "SV1"


def test_fixed_seed_is_bit_identical(batch_matrix):
    em, models, _ = batch_matrix
    first = run_sva(em, models, seed=100)
    second = run_sva(em, models, seed=100)

    assert first.n_sv == second.n_sv
    np.testing.assert_array_equal(first.sv, second.sv)


def test_failure_becomes_notice(monkeypatch, batch_matrix):
    """A numerical error yields zero surrogate variables and a notice."""
    def failing(*args, **kwargs):
        raise np.linalg.LinAlgError("SVD did not converge")

    monkeypatch.setattr(sva_module, "estimate_n_surrogates", failing)
    em, models, _ = batch_matrix

    outcome = estimate(em, models.full, models.null)
    assert not outcome.ok
    assert outcome.fallback_taken

    notices = []
    result = run_sva(em, models, notices=notices)
    assert result.n_sv == 0
    assert result.sv.shape[1] == 0
    assert [n.stage for n in notices] == ["sva"]
    assert "SVD did not converge" in notices[0].message


@pytest.mark.parametrize("error", [ZeroDivisionError("float division by zero"), IndexError("index 3 is out of bounds")])
def test_arithmetic_and_index_errors_are_recoverable(monkeypatch, batch_matrix, error):
    def failing(*args, **kwargs):
        raise error

    monkeypatch.setattr(sva_module, "two_step_surrogates", failing)
    em, models, _ = batch_matrix

    outcome = estimate(em, models.full, models.null)
    assert outcome.fallback_taken
    assert type(error).__name__ in str(outcome.error)


def test_duplicate_rows_are_removed_before_estimation(batch_matrix):
    """Rows repeated with the same probe do not change the estimate."""
    em, models, _ = batch_matrix
    dup = pd.concat([em.exprs, em.exprs.iloc[:50]])
    dup.index = range(dup.shape[0])
    features = pd.concat([em.features, em.features.iloc[:50]])
    features.index = dup.index
    em_dup = ExpressionMatrix.from_frames(dup, em.samples, features)

    np.testing.assert_array_equal(
        sva_module._estimation_data(em_dup), sva_module._estimation_data(em)
    )
