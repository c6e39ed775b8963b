"""
Group Pool Builder
Applies each base set's filters to the item table and reports which pools
can supply the requested sample size.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, List, Optional, Sequence

import numpy as np

from schema import (
    AttributeTable,
    Draw,
    FeasibilityError,
    Group,
    GroupSpec,
)
from utils import ProductionLogger


@dataclass
class PoolBuildResult:
    groups: List[Group]
    warnings: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def labels(self) -> List[str]:
        return [g.label for g in self.groups]

    @property
    def feasible(self) -> bool:
        return not self.errors

    def raise_for_errors(self):
        if self.errors:
            raise FeasibilityError("; ".join(self.errors))

    def diagnostics(self) -> List[Dict[str, Any]]:
        return [
            {"label": g.label, "required_n": g.required_n, "candidates": g.pool_size}
            for g in self.groups
        ]


def eligible_indices(table: AttributeTable, spec: GroupSpec) -> np.ndarray:
    """Indices of items passing every filter of the group (logical AND)."""
    mask = np.ones(len(table), dtype=bool)
    for flt in spec.filters:
        values = table.column(flt.attribute)
        mask &= flt.operator.apply(values, flt.threshold)
    return np.flatnonzero(mask)


def build_group_pools(table: AttributeTable, specs: Sequence[GroupSpec]) -> PoolBuildResult:
    groups = []
    warnings = []
    errors = []

    for spec in specs:
        group = Group(
            label=spec.label,
            required_n=spec.required_n,
            filters=list(spec.filters),
            eligible=eligible_indices(table, spec),
        )
        groups.append(group)

        if group.is_infeasible:
            errors.append(
                f"Group '{group.label}' requires {group.required_n} items "
                f"but only {group.pool_size} are eligible"
            )
        elif group.is_unique_draw:
            warnings.append(
                f"Group '{group.label}' requires all {group.pool_size} eligible items; "
                f"only one combination is possible"
            )

    return PoolBuildResult(groups=groups, warnings=warnings, errors=errors)


def draw_sample(groups: Sequence[Group], rng: np.random.Generator) -> Draw:
    """Shuffle each pool and take the first N indices."""
    picked = []
    for g in groups:
        order = rng.permutation(g.pool_size)[: g.required_n]
        picked.append(g.eligible[order])
    return Draw(labels=tuple(g.label for g in groups), indices=tuple(picked))


def check_pools(groups: Sequence[Group]):
    """Refuse to sample from a pool smaller than its required size."""
    bad = [g for g in groups if g.is_infeasible]
    if bad:
        raise FeasibilityError(
            "; ".join(f"Group '{g.label}' requires {g.required_n} of {g.pool_size} eligible items" for g in bad)
        )


class GroupPoolBuilder:
    """Logs the pool diagnostics that an operator reviews before sampling."""

    def __init__(self, config: Dict[str, Any], logger: Optional[ProductionLogger] = None):
        self.config = config or {}
        self.logger = logger

    def build(self, table: AttributeTable, specs: Sequence[GroupSpec]) -> PoolBuildResult:
        result = build_group_pools(table, specs)

        if self.logger:
            self.logger.log_output_summary("GROUP_POOLS", {
                "items": len(table),
                "groups": result.diagnostics(),
            })
            for msg in result.warnings:
                self.logger.warning("Unique draw", reason=msg)
            for msg in result.errors:
                self.logger.error("Infeasible group", reason=msg)

        return result
