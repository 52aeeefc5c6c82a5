"""Pytest fixtures for crossmeta tests: small synthetic datasets."""
import numpy as np
import pandas as pd
import pytest

from crossmeta.design import DesignSpecification
from crossmeta.expression import ExpressionMatrix


@pytest.fixture
def rng():
    """Seeded generator so every test sees the same data."""
    return np.random.default_rng(20240601)


@pytest.fixture
def microarray_matrix(rng):
    """60 probes x 10 samples (5 test, 5 ctrl), log-intensities.

    Probes 50-59 repeat the symbols of probes 0-9.  Probes 0-4 are
    up-regulated by 3 units in the test group.
    """
    n_features, n_samples = 60, 10
    samples = [f"S{i:02d}" for i in range(1, n_samples + 1)]
    values = rng.normal(8.0, 0.5, size=(n_features, n_samples))
    values[:5, :5] += 3.0

    probes = [f"p{i}" for i in range(n_features)]
    symbols = [f"G{i}" for i in range(50)] + [f"G{i}" for i in range(10)]
    features = pd.DataFrame({
        "PROBE": probes,
        "SYMBOL": symbols,
        "ENTREZID": [str(1000 + i % 50) for i in range(n_features)],
    }, index=probes)
    exprs = pd.DataFrame(values, index=probes, columns=samples)
    return ExpressionMatrix.from_frames(exprs, pd.DataFrame(index=samples), features, name="GSE1")


@pytest.fixture
def microarray_selection(microarray_matrix):
    groups = pd.Series(["test"] * 5 + ["ctrl"] * 5, index=microarray_matrix.sample_names)
    return DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),))


@pytest.fixture
def make_counts(rng):
    """Factory for count matrices with library sizes and norm factors."""

    def _make(n_features=200, groups=("test", "ctrl") * 4, pairs=None, name="SRP1"):
        n_samples = len(groups)
        samples = [f"R{i:02d}" for i in range(1, n_samples + 1)]
        base = rng.uniform(50, 1000, size=n_features)
        mu = np.repeat(base[:, None], n_samples, axis=1)
        test = np.array([g == "test" for g in groups])
        mu[:10, test] *= 4.0
        # Negative binomial with dispersion 0.05
        counts = rng.negative_binomial(20, 20 / (20 + mu))

        genes = [f"ENSG{i:05d}" for i in range(n_features)]
        features = pd.DataFrame({
            "SYMBOL": [f"GENE{i}" for i in range(n_features)],
            "ENTREZID": [str(5000 + i) for i in range(n_features)],
        }, index=genes)
        sample_meta = pd.DataFrame({
            "lib_size": counts.sum(axis=0).astype(float),
            "norm_factors": np.ones(n_samples),
            "group": list(groups),
        }, index=samples)
        if pairs is not None:
            sample_meta["pair"] = list(pairs)
        exprs = pd.DataFrame(counts, index=genes, columns=samples)
        return ExpressionMatrix.from_frames(exprs, sample_meta, features, name=name)

    return _make


@pytest.fixture
def count_matrix(make_counts):
    return make_counts()


@pytest.fixture
def count_selection(count_matrix):
    groups = pd.Series(list(count_matrix.samples["group"]), index=count_matrix.sample_names)
    return DesignSpecification(groups=groups, contrasts=(("test", "ctrl"),))
