"""
Schema Definition and Validation
Item attribute table, group / constraint definitions and the error types
shared by the sampling pipeline.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Optional, Any, Sequence, Tuple
from enum import Enum
import operator

import pandas as pd
import numpy as np


# =============================================================================
# ERRORS
# =============================================================================

class ConfigurationError(ValueError):
    """Invalid group, filter or constraint definition. Never retried."""


class FeasibilityError(ValueError):
    """A group requires more items than its eligible pool holds."""


class SearchExhaustedError(RuntimeError):
    """Raised only when a round bound is configured and no draw was accepted."""

    def __init__(self, rounds: int, attempts: int):
        super().__init__(f"No accepted draw after {rounds} rounds ({attempts} attempts)")
        self.rounds = rounds
        self.attempts = attempts


# =============================================================================
# OPERATORS
# =============================================================================

class FilterOperator(Enum):
    LT = "<"
    LE = "<="
    GT = ">"
    GE = ">="
    EQ = "="

    @classmethod
    def parse(cls, token: Any) -> "FilterOperator":
        if isinstance(token, cls):
            return token
        try:
            return cls(str(token).strip())
        except ValueError:
            raise ConfigurationError(f"Unknown filter operator: {token!r}") from None

    def apply(self, values: np.ndarray, threshold: float) -> np.ndarray:
        return _FILTER_FUNCS[self](values, threshold)


_FILTER_FUNCS = {
    FilterOperator.LT: np.less,
    FilterOperator.LE: np.less_equal,
    FilterOperator.GT: np.greater,
    FilterOperator.GE: np.greater_equal,
    FilterOperator.EQ: np.equal,
}


class PValueOperator(Enum):
    LT = "<"
    GT = ">"

    @classmethod
    def parse(cls, token: Any) -> "PValueOperator":
        if isinstance(token, cls):
            return token
        try:
            return cls(str(token).strip())
        except ValueError:
            raise ConfigurationError(f"Unsupported operator: {token!r}") from None

    def passes(self, p_value: float, threshold: float) -> bool:
        return bool(_PVALUE_FUNCS[self](p_value, threshold))


_PVALUE_FUNCS = {
    PValueOperator.LT: operator.lt,
    PValueOperator.GT: operator.gt,
}


class TestType(Enum):
    TWO_SAMPLE = "ttest2"
    K_SAMPLE = "anova1"

    __test__ = False  # not a pytest test class

    @classmethod
    def parse(cls, token: Any) -> "TestType":
        if isinstance(token, cls):
            return token
        key = str(token).strip().lower()
        if key in _TEST_ALIASES:
            return _TEST_ALIASES[key]
        raise ConfigurationError(f"Unsupported test type: {token!r}")


_TEST_ALIASES = {
    "ttest2": TestType.TWO_SAMPLE,
    "two-sample": TestType.TWO_SAMPLE,
    "two_sample": TestType.TWO_SAMPLE,
    "anova1": TestType.K_SAMPLE,
    "k-sample": TestType.K_SAMPLE,
    "k_sample": TestType.K_SAMPLE,
}


# =============================================================================
# DEFINITIONS (as loaded)
# =============================================================================

@dataclass
class FilterSpec:
    """attribute <op> threshold, e.g. Valence<0.5"""
    attribute: str
    operator: FilterOperator
    threshold: float

    def __post_init__(self):
        self.operator = FilterOperator.parse(self.operator)
        self.threshold = float(self.threshold)

    def describe(self) -> str:
        return f"{self.attribute}{self.operator.value}{self.threshold:g}"


@dataclass
class GroupSpec:
    label: str
    required_n: int
    filters: List[FilterSpec] = field(default_factory=list)

    def __post_init__(self):
        self.required_n = int(self.required_n)
        if self.required_n < 1:
            raise ConfigurationError(f"Group '{self.label}' requires a positive sample size")


@dataclass
class ConstraintSpec:
    test_type: TestType
    attribute: str
    groups: List[str]
    operator: PValueOperator
    threshold: float

    def __post_init__(self):
        self.test_type = TestType.parse(self.test_type)
        self.operator = PValueOperator.parse(self.operator)
        self.threshold = float(self.threshold)
        self.groups = [str(g).strip() for g in self.groups]


# =============================================================================
# RESOLVED DEFINITIONS
# =============================================================================

@dataclass
class Group:
    """A base set with its eligible item indices."""
    label: str
    required_n: int
    filters: List[FilterSpec]
    eligible: np.ndarray

    @property
    def pool_size(self) -> int:
        return int(self.eligible.size)

    @property
    def is_unique_draw(self) -> bool:
        return self.required_n == self.pool_size

    @property
    def is_infeasible(self) -> bool:
        return self.required_n > self.pool_size


@dataclass(frozen=True)
class Constraint:
    """A constraint with its attribute and groups resolved to positions."""
    test_type: TestType
    attribute: str
    attribute_index: int
    group_labels: Tuple[str, ...]
    group_indices: Tuple[int, ...]
    operator: PValueOperator
    threshold: float
    number: int = 0

    def describe(self) -> str:
        return (
            f"TEST {self.number}: Compare {','.join(self.group_labels)} using "
            f"{self.test_type.value} on variable {self.attribute}, "
            f"success defined as p{self.operator.value}{self.threshold:.3f}."
        )


@dataclass
class Draw:
    """One sampled subset per group, aligned with the group list."""
    labels: Tuple[str, ...]
    indices: Tuple[np.ndarray, ...]

    def __len__(self) -> int:
        return len(self.indices)

    def as_dict(self) -> Dict[str, List[int]]:
        return {label: [int(i) for i in idx] for label, idx in zip(self.labels, self.indices)}


# =============================================================================
# ITEM ATTRIBUTE TABLE
# =============================================================================

class AttributeTable:
    """
    Index-aligned numeric attributes for all candidate items.
    values[k, i] is attribute k of item i.
    """

    def __init__(self, item_ids: Sequence[Any], names: Sequence[str], values: np.ndarray):
        values = np.asarray(values, dtype=float)
        if values.ndim != 2 or values.shape != (len(names), len(item_ids)):
            raise ConfigurationError(
                f"Attribute matrix shape {values.shape} does not match "
                f"{len(names)} attributes x {len(item_ids)} items"
            )
        self.item_ids = list(item_ids)
        self.names = [str(n) for n in names]
        self.values = values
        self._positions = {name: k for k, name in enumerate(self.names)}

    @classmethod
    def from_mapping(cls, attributes: Dict[str, Sequence[float]], item_ids: Optional[Sequence[Any]] = None):
        names = list(attributes.keys())
        columns = [np.asarray(attributes[n], dtype=float) for n in names]
        lengths = {c.size for c in columns}
        if len(lengths) > 1:
            raise ConfigurationError("Attribute vectors must all have the same length")
        n_items = lengths.pop() if lengths else 0
        if item_ids is None:
            item_ids = list(range(n_items))
        matrix = np.vstack(columns) if columns else np.empty((0, n_items))
        return cls(item_ids, names, matrix)

    @classmethod
    def from_dataframe(cls, df: pd.DataFrame, id_column: Optional[str] = None) -> "AttributeTable":
        if df is None or df.empty:
            raise ConfigurationError("Item table is empty.")

        id_column = id_column or df.columns[0]
        if id_column not in df.columns:
            raise ConfigurationError(f"Missing id column '{id_column}'")

        attribute_cols = [c for c in df.columns if c != id_column]
        errors = []
        for col in attribute_cols:
            numeric = pd.to_numeric(df[col], errors="coerce")
            bad = int(numeric.isna().sum() - df[col].isna().sum())
            if bad > 0:
                errors.append(f"Column '{col}' has {bad} invalid numeric values.")
        if errors:
            raise ConfigurationError("; ".join(errors))

        values = df[attribute_cols].apply(pd.to_numeric, errors="coerce").to_numpy(dtype=float).T
        return cls(df[id_column].astype(str).tolist(), attribute_cols, values)

    def __len__(self) -> int:
        return len(self.item_ids)

    def index_of(self, name: str) -> int:
        try:
            return self._positions[name]
        except KeyError:
            raise ConfigurationError(f'Variable "{name}" not found in item attributes.') from None

    def column(self, name: str) -> np.ndarray:
        return self.values[self.index_of(name)]

    def rows(self, indices: Sequence[int]) -> pd.DataFrame:
        """Selected items as a frame: id column followed by all attributes."""
        idx = np.asarray(indices, dtype=int)
        frame = pd.DataFrame(self.values[:, idx].T, columns=self.names)
        frame.insert(0, "item_id", [self.item_ids[i] for i in idx])
        return frame


def resolve_constraints(
    specs: Sequence[ConstraintSpec],
    table: AttributeTable,
    group_labels: Sequence[str],
) -> List[Constraint]:
    """Resolve attribute names and group labels to stable positions once."""
    positions = {label: g for g, label in enumerate(group_labels)}
    resolved = []
    for number, spec in enumerate(specs, start=1):
        attribute_index = table.index_of(spec.attribute)

        if len(spec.groups) < 2:
            raise ConfigurationError(
                f"{spec.test_type.value} on '{spec.attribute}' needs at least two groups"
            )
        if spec.test_type is TestType.TWO_SAMPLE and len(spec.groups) != 2:
            raise ConfigurationError("ttest2 requires exactly two groups.")

        missing = [g for g in spec.groups if g not in positions]
        if missing:
            raise ConfigurationError(f"Unknown group label(s) {missing} in test on '{spec.attribute}'")

        resolved.append(
            Constraint(
                test_type=spec.test_type,
                attribute=spec.attribute,
                attribute_index=attribute_index,
                group_labels=tuple(spec.groups),
                group_indices=tuple(positions[g] for g in spec.groups),
                operator=spec.operator,
                threshold=spec.threshold,
                number=number,
            )
        )
    return resolved
