"""
Constraint Evaluator
Scores one draw against an ordered list of constraints using
Student's t-test (ttest2) or one-way ANOVA (anova1).
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Any, List, Sequence, Tuple

import numpy as np
from scipy import stats

from schema import AttributeTable, ConfigurationError, Constraint, Draw, TestType


class EvaluationMode(Enum):
    FULL_SCAN = "all"
    EARLY_EXIT = "earlyExit"


@dataclass
class EvaluationResult:
    ok: bool
    passed: List[bool]
    evaluated: int

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "passed": list(self.passed), "evaluated": self.evaluated}


class ConstraintEvaluator:
    """
    Holds the item attribute matrix read-only; one instance is shared by all
    search workers.

    Degenerate samples are passed straight to SciPy. Zero-variance groups
    with equal means yield nan, which fails under both p-value operators.
    """

    def __init__(self, table: AttributeTable):
        self.table = table
        self.values = table.values

    def gather(self, draw: Draw, constraint: Constraint) -> List[np.ndarray]:
        """Per-group values of the constraint's attribute at the drawn indices."""
        if any(g < 0 or g >= len(draw) for g in constraint.group_indices):
            raise ConfigurationError(
                f'Group index out of bounds for variable "{constraint.attribute}".'
            )
        column = self.values[constraint.attribute_index]
        return [column[draw.indices[g]] for g in constraint.group_indices]

    def test_statistic(self, test_type: TestType, samples: Sequence[np.ndarray]) -> Tuple[float, float]:
        """(statistic, p) of the configured test; the only place SciPy is called."""
        if test_type is TestType.TWO_SAMPLE:
            if len(samples) != 2:
                raise ConfigurationError("ttest2 requires exactly two groups.")
            stat, p = stats.ttest_ind(samples[0], samples[1], equal_var=True)
        elif test_type is TestType.K_SAMPLE:
            if len(samples) < 2:
                raise ConfigurationError("anova1 requires at least two groups.")
            stat, p = stats.f_oneway(*samples)
        else:
            raise ConfigurationError(f"Unsupported test type: {test_type!r}")
        return float(stat), float(p)

    def run_test(self, test_type: TestType, samples: Sequence[np.ndarray]) -> float:
        return self.test_statistic(test_type, samples)[1]

    def p_value(self, draw: Draw, constraint: Constraint) -> float:
        return self.run_test(constraint.test_type, self.gather(draw, constraint))

    def check(self, draw: Draw, constraint: Constraint) -> bool:
        p = self.p_value(draw, constraint)
        return constraint.operator.passes(p, constraint.threshold)

    def evaluate(
        self,
        draw: Draw,
        constraints: Sequence[Constraint],
        mode: EvaluationMode = EvaluationMode.FULL_SCAN,
    ) -> EvaluationResult:
        """
        FULL_SCAN evaluates every constraint and returns the whole pass vector.
        EARLY_EXIT stops at the first failure; later entries stay False.
        """
        passed = [False] * len(constraints)
        evaluated = 0

        for i, constraint in enumerate(constraints):
            ok = self.check(draw, constraint)
            evaluated += 1
            passed[i] = ok
            if not ok and mode is EvaluationMode.EARLY_EXIT:
                return EvaluationResult(ok=False, passed=passed, evaluated=evaluated)

        return EvaluationResult(ok=all(passed), passed=passed, evaluated=evaluated)

