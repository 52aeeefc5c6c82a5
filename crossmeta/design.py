"""
design.py — Sample selections and model matrices.

A ``DesignSpecification`` records the user's group labels, optional
pairs and ordered (test, control) contrasts for one dataset.  It is
produced by the selection collaborator and reused verbatim on later
runs.

The model-matrix builder turns the group labels into a no-intercept
indicator matrix, optionally followed by pair fixed-effect columns and
surrogate-variable columns.  Full and null models are always derived
together from the same labels so they describe the same samples and
pairing structure.

Group and contrast names are sanitised with ``make_name`` (R's
``make.names`` rules) in exactly one place, so design-matrix columns and
contrast lookups cannot drift apart.

Functions
---------
make_name(label)
    → Syntactically valid column name for a group label.

build(sample_groups, pairing, surrogate_columns, n_surrogates)
    → Full design matrix for the linear model fit.

build_models(sample_groups, pairing)
    → ``ModelMatrices`` with the full and null models used by SVA and
      nuisance adjustment.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

import numpy as np
import pandas as pd

from crossmeta.errors import ConfigurationError

_INVALID_CHARS = re.compile(r"[^0-9A-Za-z._]")
_VALID_START = re.compile(r"^([A-Za-z]|\.(?![0-9]))")


def make_name(label) -> str:
    """Sanitise *label* following R's ``make.names`` rules.

    Invalid characters become ``"."`` and names that do not start with a
    letter (or a dot not followed by a digit) are prefixed with ``"X"``.
    """
    name = _INVALID_CHARS.sub(".", str(label))
    if not _VALID_START.match(name):
        name = "X" + name
    return name


def contrast_name(test_group: str, control_group: str) -> str:
    """``"<test>-<control>"`` with both names sanitised."""
    return f"{make_name(test_group)}-{make_name(control_group)}"


# ─────────────────────────────────────────────────────────────────────
# Selection
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class DesignSpecification:
    """Group/contrast assignments for one dataset.

    Attributes
    ----------
    groups : pd.Series
        Sample name → group label.  Missing labels mark unselected
        samples.
    contrasts : tuple[tuple[str, str], ...]
        Ordered ``(test_group, control_group)`` pairs.
    pairs : pd.Series or None
        Sample name → pair identifier, for paired designs.
    """

    groups: pd.Series
    contrasts: tuple = ()
    pairs: pd.Series | None = None

    def __post_init__(self) -> None:
        object.__setattr__(
            self, "contrasts", tuple((str(t), str(c)) for t, c in self.contrasts)
        )

    @property
    def selected_samples(self) -> pd.Index:
        return self.groups.index[self.groups.notna()]

    @property
    def contrast_names(self) -> list[str]:
        return [contrast_name(t, c) for t, c in self.contrasts]

    @property
    def is_paired(self) -> bool:
        if self.pairs is None:
            return False
        return self.pairs.reindex(self.selected_samples).dropna().nunique() > 1

    def validate(self, dataset_id: str = "") -> None:
        """Check that every contrast refers to a selected group."""
        label = f"Dataset '{dataset_id}'" if dataset_id else "Dataset"
        if not self.contrasts:
            raise ConfigurationError(f"{label}: selection defines no contrasts.")

        levels = set(self.groups.dropna().astype(str))
        for test_group, control_group in self.contrasts:
            for g in (test_group, control_group):
                if g not in levels:
                    raise ConfigurationError(
                        f"{label}: contrast group '{g}' has no selected samples. "
                        f"Available groups: {sorted(levels)}"
                    )

        sanitized = {}
        for g in levels:
            other = sanitized.setdefault(make_name(g), g)
            if other != g:
                raise ConfigurationError(
                    f"{label}: group labels '{other}' and '{g}' map to the "
                    f"same column name '{make_name(g)}'."
                )

    def treatment(self) -> pd.Series:
        """``"test"``/``"ctrl"`` per sample, from the first contrast."""
        groups = self.groups.reindex(self.selected_samples).astype(str)
        out = pd.Series(pd.NA, index=groups.index, dtype=object)
        if self.contrasts:
            test_group, control_group = self.contrasts[0]
            out[groups == test_group] = "test"
            out[groups == control_group] = "ctrl"
        return out

    # ── Serialisation ──────────────────────────────────────────────

    def to_dict(self) -> dict:
        groups = self.groups.astype(object).where(self.groups.notna(), None)
        pairs = None
        if self.pairs is not None:
            pairs = self.pairs.astype(object).where(self.pairs.notna(), None)
            pairs = {str(k): v for k, v in pairs.items()}
        return {
            "groups": {str(k): v for k, v in groups.items()},
            "contrasts": [list(c) for c in self.contrasts],
            "pairs": pairs,
        }

    @classmethod
    def from_dict(cls, data: dict) -> DesignSpecification:
        pairs = data.get("pairs")
        return cls(
            groups=pd.Series(data["groups"], dtype=object),
            contrasts=tuple(tuple(c) for c in data["contrasts"]),
            pairs=None if pairs is None else pd.Series(pairs, dtype=object),
        )


# ─────────────────────────────────────────────────────────────────────
# Model matrices
# ─────────────────────────────────────────────────────────────────────

@dataclass(frozen=True, eq=False)
class ModelMatrices:
    """Full and null models built from the same samples.

    ``full`` holds group indicators followed by pair fixed effects;
    ``null`` holds an intercept followed by the same pair columns.
    """

    full: pd.DataFrame
    null: pd.DataFrame
    pair_columns: tuple = ()


def group_indicators(sample_groups: pd.Series) -> pd.DataFrame:
    """One 0/1 column per distinct group label, no intercept.

    Levels are ordered alphabetically, as R orders factor levels.
    """
    if sample_groups.isna().any():
        raise ConfigurationError(
            "Group labels contain missing values; subset to selected samples first."
        )
    labels = sample_groups.astype(str)
    levels = sorted(labels.unique())
    data = {make_name(lvl): (labels == lvl).astype(float).to_numpy() for lvl in levels}
    return pd.DataFrame(data, index=sample_groups.index)


def pair_blocks(pairing: pd.Series | None, index: pd.Index) -> pd.Series | None:
    """Pair label per sample as strings, or None when there are < 2 pairs."""
    if pairing is None:
        return None
    pairing = pairing.reindex(index)
    if pairing.dropna().nunique() < 2:
        return None
    # Samples without a pair form their own block
    filled = pairing.astype(object).copy()
    missing = filled.isna()
    filled[missing] = ["unpaired." + str(s) for s in filled.index[missing]]
    return filled.astype(str)


def pair_effects(pairing: pd.Series) -> pd.DataFrame:
    """Treatment-coded pair columns (first level dropped), named ``pair<level>``."""
    levels = sorted(pairing.unique())
    data = {
        make_name("pair" + str(lvl)): (pairing == lvl).astype(float).to_numpy()
        for lvl in levels[1:]
    }
    return pd.DataFrame(data, index=pairing.index)


def surrogate_frame(
    surrogate_columns: np.ndarray | pd.DataFrame | None,
    n_surrogates: int,
    index: pd.Index,
) -> pd.DataFrame:
    """First *n_surrogates* surrogate variables named ``SV1``, ``SV2``, ..."""
    if n_surrogates <= 0:
        return pd.DataFrame(index=index)
    if surrogate_columns is None:
        raise ConfigurationError(
            f"{n_surrogates} surrogate variables requested but none were estimated."
        )
    values = np.asarray(surrogate_columns, dtype=float)
    if values.ndim == 1:
        values = values[:, None]
    if values.shape[0] != len(index):
        raise ConfigurationError(
            f"Surrogate variables have {values.shape[0]} rows for {len(index)} samples."
        )
    if values.shape[1] < n_surrogates:
        raise ConfigurationError(
            f"{n_surrogates} surrogate variables requested but only "
            f"{values.shape[1]} are available."
        )
    names = [f"SV{i + 1}" for i in range(n_surrogates)]
    return pd.DataFrame(values[:, :n_surrogates], index=index, columns=names)


def build(
    sample_groups: pd.Series,
    pairing: pd.Series | None = None,
    surrogate_columns: np.ndarray | pd.DataFrame | None = None,
    n_surrogates: int = 0,
    pairing_as_fixed_effect: bool = False,
) -> pd.DataFrame:
    """Design matrix: group indicators [+ pair columns] + surrogate variables.

    Pair columns are included only when ``pairing_as_fixed_effect`` is
    set; otherwise pairing is left to the fitter's block-correlation
    term.
    """
    parts = [group_indicators(sample_groups)]
    if pairing_as_fixed_effect:
        pairing = pair_blocks(pairing, sample_groups.index)
        if pairing is not None:
            parts.append(pair_effects(pairing))
    parts.append(surrogate_frame(surrogate_columns, n_surrogates, sample_groups.index))
    return pd.concat(parts, axis=1)


def build_models(
    sample_groups: pd.Series,
    pairing: pd.Series | None = None,
) -> ModelMatrices:
    """Full (groups + pairs) and null (intercept + pairs) models."""
    full = group_indicators(sample_groups)
    null = pd.DataFrame({"Intercept": np.ones(len(sample_groups))}, index=sample_groups.index)

    pair_cols: tuple = ()
    pairing = pair_blocks(pairing, sample_groups.index)
    if pairing is not None:
        pairs = pair_effects(pairing)
        pair_cols = tuple(pairs.columns)
        full = pd.concat([full, pairs], axis=1)
        null = pd.concat([null, pairs], axis=1)

    return ModelMatrices(full=full, null=null, pair_columns=pair_cols)


def column_rank(design: pd.DataFrame | np.ndarray) -> int:
    return int(np.linalg.matrix_rank(np.asarray(design, dtype=float)))


def residual_df(design: pd.DataFrame | np.ndarray) -> int:
    """Samples minus design rank."""
    return int(np.asarray(design).shape[0] - column_rank(design))

