"""
expression.py — Layered expression matrix value type.

An ``ExpressionMatrix`` bundles a features × samples numeric matrix with
its per-sample and per-feature metadata.  Derived matrices (the
variance-stabilised ``"vsd"`` layer, the nuisance-adjusted
``"adjusted"`` layer) are stored as additional named layers next to the
original ``"exprs"`` layer, never in its place, so raw values remain
recoverable.

Instances are immutable: every transformation returns a new
``ExpressionMatrix``.  Layers share their underlying arrays with the
source object where pandas allows it, so copies are cheap.

Shape consistency is checked on construction and a
``ShapeMismatchError`` is raised on any disagreement; data are never
silently truncated or re-aligned.

Usage example
--------------
    from crossmeta.expression import ExpressionMatrix

    em = ExpressionMatrix.from_frames(exprs_df, samples_df, features_df, name="GSE1")
    em = em.with_layer("vsd", em.exprs)
"""

from __future__ import annotations

from dataclasses import dataclass
from types import MappingProxyType
from typing import Iterable, Mapping

import numpy as np
import pandas as pd

from crossmeta.config import COUNT_COLUMNS, LAYER_RAW
from crossmeta.errors import ShapeMismatchError


@dataclass(frozen=True)
class ExpressionMatrix:
    """Immutable features × samples matrix with named layers.

    Attributes
    ----------
    layers : Mapping[str, pd.DataFrame]
        Layer name → features × samples DataFrame.  Must contain
        ``"exprs"``.
    samples : pd.DataFrame
        One row per sample, indexed by sample name.  Count-based assays
        carry ``lib_size`` and ``norm_factors`` columns.
    features : pd.DataFrame
        One row per feature, indexed by feature name (e.g. PROBE,
        SYMBOL, ENTREZID columns).
    name : str
        Dataset identifier, used in error messages.
    """

    layers: Mapping[str, pd.DataFrame]
    samples: pd.DataFrame
    features: pd.DataFrame
    name: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "layers", MappingProxyType(dict(self.layers)))
        self._validate()

    # ── Construction ───────────────────────────────────────────────

    @classmethod
    def from_frames(
        cls,
        exprs: pd.DataFrame,
        samples: pd.DataFrame | None = None,
        features: pd.DataFrame | None = None,
        name: str = "",
    ) -> ExpressionMatrix:
        """Build from an expression DataFrame and optional metadata.

        Missing metadata frames are created empty, indexed like the
        matrix.
        """
        if samples is None:
            samples = pd.DataFrame(index=exprs.columns.copy())
        if features is None:
            features = pd.DataFrame(index=exprs.index.copy())
        return cls(
            layers={LAYER_RAW: exprs.astype(float)},
            samples=samples,
            features=features,
            name=name,
        )

    def _validate(self) -> None:
        label = f"Dataset '{self.name}'" if self.name else "Dataset"

        if LAYER_RAW not in self.layers:
            raise ShapeMismatchError(f"{label}: missing the '{LAYER_RAW}' layer.")

        n_features, n_samples = self.features.shape[0], self.samples.shape[0]
        for layer_name, mat in self.layers.items():
            if mat.shape[1] != n_samples:
                raise ShapeMismatchError(
                    f"{label}: sample metadata has {n_samples} rows but layer "
                    f"'{layer_name}' has {mat.shape[1]} columns."
                )
            if mat.shape[0] != n_features:
                raise ShapeMismatchError(
                    f"{label}: feature metadata has {n_features} rows but layer "
                    f"'{layer_name}' has {mat.shape[0]} rows."
                )
            if not mat.columns.equals(self.samples.index):
                raise ShapeMismatchError(
                    f"{label}: sample names of layer '{layer_name}' do not "
                    f"match the sample metadata index."
                )
            if not mat.index.equals(self.features.index):
                raise ShapeMismatchError(
                    f"{label}: feature names of layer '{layer_name}' do not "
                    f"match the feature metadata index."
                )

    # ── Accessors ──────────────────────────────────────────────────

    @property
    def exprs(self) -> pd.DataFrame:
        return self.layers[LAYER_RAW]

    @property
    def n_features(self) -> int:
        return self.features.shape[0]

    @property
    def n_samples(self) -> int:
        return self.samples.shape[0]

    @property
    def sample_names(self) -> pd.Index:
        return self.samples.index

    @property
    def feature_names(self) -> pd.Index:
        return self.features.index

    @property
    def is_count_based(self) -> bool:
        """RNA-seq style data carry library sizes and normalisation factors."""
        return all(col in self.samples.columns for col in COUNT_COLUMNS)

    @property
    def effective_lib_size(self) -> np.ndarray:
        """``lib_size × norm_factors`` per sample (count-based assays only)."""
        s = self.samples
        return (s["lib_size"].astype(float) * s["norm_factors"].astype(float)).to_numpy()

    def has_layer(self, layer_name: str) -> bool:
        return layer_name in self.layers

    def layer(self, layer_name: str) -> pd.DataFrame:
        try:
            return self.layers[layer_name]
        except KeyError:
            raise KeyError(
                f"Layer '{layer_name}' not present. Available: {list(self.layers)}"
            ) from None

    # ── Transformations (all return new instances) ─────────────────

    def _replace(self, **changes) -> ExpressionMatrix:
        kwargs = {
            "layers": dict(self.layers),
            "samples": self.samples,
            "features": self.features,
            "name": self.name,
        }
        kwargs.update(changes)
        return ExpressionMatrix(**kwargs)

    def with_layer(self, layer_name: str, values: pd.DataFrame) -> ExpressionMatrix:
        """Return a copy with *layer_name* set to *values*."""
        layers = dict(self.layers)
        layers[layer_name] = values
        return self._replace(layers=layers)

    def with_samples(self, samples: pd.DataFrame) -> ExpressionMatrix:
        """Return a copy with replaced sample metadata (same sample index)."""
        return self._replace(samples=samples)

    def select_samples(self, names: Iterable) -> ExpressionMatrix:
        """Subset every layer and the sample metadata to *names* (in order)."""
        names = pd.Index(list(names))
        missing = names.difference(self.samples.index)
        if len(missing):
            raise ShapeMismatchError(
                f"Dataset '{self.name}': unknown samples {list(missing[:5])}."
            )
        layers = {k: v.loc[:, names] for k, v in self.layers.items()}
        return self._replace(layers=layers, samples=self.samples.loc[names])

    def select_features(self, keep) -> ExpressionMatrix:
        """Subset every layer and the feature metadata by position mask or array of positions."""
        keep = np.asarray(keep)
        if keep.dtype == bool:
            keep = np.flatnonzero(keep)
        layers = {k: v.iloc[keep] for k, v in self.layers.items()}
        return self._replace(layers=layers, features=self.features.iloc[keep])

    def rename_features(self, new_names) -> ExpressionMatrix:
        """Replace the feature index on every layer and the feature metadata."""
        new_index = pd.Index(new_names)
        layers = {}
        for k, v in self.layers.items():
            v = v.copy(deep=False)
            v.index = new_index
            layers[k] = v
        features = self.features.copy(deep=False)
        features.index = new_index
        return self._replace(layers=layers, features=features)
