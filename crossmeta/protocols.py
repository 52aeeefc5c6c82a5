"""
crossmeta/protocols.py -- Abstract protocols and shared types for the engine.

Defines callback protocols and lightweight data containers used across
engine modules.

Types
-----
ProgressCallback
    Protocol — ``(current, total, message_key) -> None``.

ContrastSelector
    Protocol — ``(matrix, dataset_id, previous) -> DesignSpecification``.
    The interactive sample/contrast selection collaborator.

Notice
    NamedTuple — ``(stage, message)``.  One-line record of a recoverable
    fallback that was taken.

Outcome
    Generic result of a stage that can fail recoverably: either a value
    or an ``EstimationError``.  The caller supplies the fallback value.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import (
    TYPE_CHECKING,
    Generic,
    NamedTuple,
    Optional,
    Protocol,
    TypeVar,
    runtime_checkable,
)

from crossmeta.errors import EstimationError

if TYPE_CHECKING:
    from crossmeta.design import DesignSpecification
    from crossmeta.expression import ExpressionMatrix

logger = logging.getLogger(__name__)

T = TypeVar("T")


@runtime_checkable
class ProgressCallback(Protocol):
    """Progress reporting callback.

    Parameters
    ----------
    current : int
        Current step index (0-based).
    total : int
        Total number of steps.
    message_key : str
        Short key describing the current step (e.g. ``"progress.sva"``).
    """

    def __call__(self, current: int, total: int, message_key: str) -> None: ...


@runtime_checkable
class ContrastSelector(Protocol):
    """Supplies group labels, pairs and contrasts for one dataset.

    ``previous`` is the selection from an earlier run when one exists
    (recheck path), otherwise ``None``.
    """

    def __call__(
        self,
        matrix: "ExpressionMatrix",
        dataset_id: str,
        previous: Optional["DesignSpecification"],
    ) -> "DesignSpecification": ...


class Notice(NamedTuple):
    """A recoverable fallback that was taken.

    Attributes
    ----------
    stage : str
        Pipeline stage that fell back (``"sva"``, ``"adjust"``, ``"fit"``).
    message : str
        One-line, human readable description.
    """

    stage: str
    message: str


@dataclass(frozen=True)
class Outcome(Generic[T]):
    """Value-or-error result of a recoverable estimation step."""

    value: Optional[T] = None
    error: Optional[EstimationError] = None

    @classmethod
    def success(cls, value: T) -> "Outcome[T]":
        return cls(value=value)

    @classmethod
    def failure(cls, error: EstimationError) -> "Outcome[T]":
        return cls(error=error)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def fallback_taken(self) -> bool:
        return self.error is not None

    def unwrap_or(self, default: T, notices: list, stage: str) -> T:
        """Return the value, or *default* after recording a notice."""
        if self.ok:
            return self.value
        message = f"{stage} failed ({self.error}) - continuing with fallback."
        logger.warning(message)
        notices.append(Notice(stage, message))
        return default
