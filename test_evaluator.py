"""
Unit Tests for the Constraint Evaluator
Covers:
- Pass/fail semantics of the p-value operators
- Full-scan vs early-exit evaluation
- Configuration errors raised during evaluation
- Degenerate (zero-variance) samples
"""

import unittest
from unittest.mock import patch

import numpy as np

from evaluator import ConstraintEvaluator, EvaluationMode, EvaluationResult
from schema import (
    AttributeTable,
    ConfigurationError,
    Constraint,
    ConstraintSpec,
    Draw,
    PValueOperator,
    TestType,
    resolve_constraints,
)


def make_constraint(test_type, op, threshold, groups=(0, 1), attribute_index=0, number=1):
    return Constraint(
        test_type=TestType.parse(test_type),
        attribute="X",
        attribute_index=attribute_index,
        group_labels=tuple(f"G{g}" for g in groups),
        group_indices=tuple(groups),
        operator=PValueOperator.parse(op),
        threshold=threshold,
        number=number,
    )


class TestConstraintEvaluator(unittest.TestCase):
    """Evaluator behaviour on a fixed, hand-built draw."""

    def setUp(self):
        # Group A: 1,1,1,1 ; Group B: 10,10,10,10 ; Group C: noisy middle values
        self.table = AttributeTable.from_mapping({
            "X": [1, 1, 1, 1, 10, 10, 10, 10, 4, 5, 6, 5],
            "Y": [2.0, 2.5, 3.1, 2.2, 2.4, 2.9, 3.0, 2.1, 2.6, 2.7, 2.3, 2.8],
        })
        self.draw = Draw(
            labels=("A", "B", "C"),
            indices=(np.array([0, 1, 2, 3]), np.array([4, 5, 6, 7]), np.array([8, 9, 10, 11])),
        )
        self.evaluator = ConstraintEvaluator(self.table)

    # ------------------------------------------------------------------ #
    # Operator semantics
    # ------------------------------------------------------------------ #
    def test_separated_groups_have_tiny_p_value(self):
        p = self.evaluator.p_value(self.draw, make_constraint("ttest2", "<", 0.05))
        self.assertLess(p, 1e-6)

    def test_similarity_required_fails_for_separated_groups(self):
        c = make_constraint("ttest2", ">", 0.05)
        self.assertFalse(self.evaluator.check(self.draw, c))

    def test_difference_required_passes_for_separated_groups(self):
        c = make_constraint("ttest2", "<", 0.05)
        self.assertTrue(self.evaluator.check(self.draw, c))

    def test_anova_over_three_groups(self):
        c = make_constraint("anova1", "<", 0.05, groups=(0, 1, 2))
        result = self.evaluator.evaluate(self.draw, [c])
        self.assertTrue(result.ok)
        self.assertEqual(result.passed, [True])

    def test_similar_groups_pass_similarity_constraint(self):
        c = make_constraint("anova1", ">", 0.05, groups=(0, 1, 2), attribute_index=1)
        self.assertTrue(self.evaluator.check(self.draw, c))

    # ------------------------------------------------------------------ #
    # Modes
    # ------------------------------------------------------------------ #
    def test_full_scan_returns_complete_pass_vector(self):
        constraints = [
            make_constraint("ttest2", ">", 0.05, number=1),   # fails
            make_constraint("ttest2", "<", 0.05, number=2),   # passes
            make_constraint("anova1", "<", 0.05, groups=(0, 1, 2), number=3),  # passes
        ]
        result = self.evaluator.evaluate(self.draw, constraints, EvaluationMode.FULL_SCAN)

        self.assertIsInstance(result, EvaluationResult)
        self.assertEqual(len(result.passed), 3)
        self.assertEqual(result.passed, [False, True, True])
        self.assertFalse(result.ok)
        self.assertEqual(result.evaluated, 3)

    def test_early_exit_stops_at_first_failure(self):
        constraints = [
            make_constraint("ttest2", ">", 0.05, number=1),
            make_constraint("ttest2", "<", 0.05, number=2),
            make_constraint("anova1", "<", 0.05, groups=(0, 1, 2), number=3),
        ]
        with patch.object(self.evaluator, "check", wraps=self.evaluator.check) as spy:
            result = self.evaluator.evaluate(self.draw, constraints, EvaluationMode.EARLY_EXIT)

        self.assertFalse(result.ok)
        self.assertEqual(spy.call_count, 1)
        self.assertEqual(result.evaluated, 1)
        self.assertEqual(len(result.passed), 3)

    def test_early_exit_success_evaluates_everything(self):
        constraints = [
            make_constraint("ttest2", "<", 0.05, number=1),
            make_constraint("anova1", "<", 0.05, groups=(0, 1, 2), number=2),
        ]
        result = self.evaluator.evaluate(self.draw, constraints, EvaluationMode.EARLY_EXIT)
        self.assertTrue(result.ok)
        self.assertEqual(result.evaluated, 2)

    def test_empty_battery_is_accepted(self):
        result = self.evaluator.evaluate(self.draw, [], EvaluationMode.EARLY_EXIT)
        self.assertTrue(result.ok)
        self.assertEqual(result.passed, [])

    # ------------------------------------------------------------------ #
    # Configuration errors
    # ------------------------------------------------------------------ #
    def test_two_sample_with_three_groups_is_rejected(self):
        c = make_constraint("ttest2", "<", 0.05, groups=(0, 1, 2))
        with self.assertRaises(ConfigurationError):
            self.evaluator.check(self.draw, c)

    def test_group_reference_out_of_range(self):
        c = make_constraint("ttest2", "<", 0.05, groups=(0, 5))
        with self.assertRaises(ConfigurationError):
            self.evaluator.evaluate(self.draw, [c])

    def test_unknown_p_value_operator(self):
        with self.assertRaises(ConfigurationError):
            PValueOperator.parse("=")

    def test_unknown_test_type(self):
        with self.assertRaises(ConfigurationError):
            TestType.parse("kruskal")

    def test_unknown_attribute_fails_at_resolution(self):
        spec = ConstraintSpec("ttest2", "Missing", ["A", "B"], "<", 0.05)
        with self.assertRaises(ConfigurationError):
            resolve_constraints([spec], self.table, ["A", "B", "C"])

    def test_resolution_rejects_wrong_group_count_and_unknown_labels(self):
        with self.assertRaises(ConfigurationError):
            resolve_constraints([ConstraintSpec("ttest2", "X", ["A", "B", "C"], "<", 0.05)],
                                self.table, ["A", "B", "C"])
        with self.assertRaises(ConfigurationError):
            resolve_constraints([ConstraintSpec("anova1", "X", ["A", "Z"], "<", 0.05)],
                                self.table, ["A", "B", "C"])

    def test_resolution_pre_resolves_positions(self):
        specs = [ConstraintSpec("anova1", "Y", ["C", "A"], ">", 0.2)]
        [c] = resolve_constraints(specs, self.table, ["A", "B", "C"])
        self.assertEqual(c.attribute_index, 1)
        self.assertEqual(c.group_indices, (2, 0))
        self.assertIn("success defined as p>0.200", c.describe())

    # ------------------------------------------------------------------ #
    # Degenerate input
    # ------------------------------------------------------------------ #
    def test_identical_constant_groups_fail_both_operators(self):
        table = AttributeTable.from_mapping({"X": [3, 3, 3, 3, 3, 3]})
        evaluator = ConstraintEvaluator(table)
        draw = Draw(labels=("A", "B"), indices=(np.array([0, 1, 2]), np.array([3, 4, 5])))

        self.assertTrue(np.isnan(evaluator.p_value(draw, make_constraint("ttest2", "<", 0.05))))
        self.assertFalse(evaluator.check(draw, make_constraint("ttest2", "<", 0.05)))
        self.assertFalse(evaluator.check(draw, make_constraint("ttest2", ">", 0.05)))

    def test_result_to_dict(self):
        result = self.evaluator.evaluate(self.draw, [make_constraint("ttest2", "<", 0.05)])
        d = result.to_dict()
        self.assertEqual(d, {"ok": True, "passed": [True], "evaluated": 1})


if __name__ == "__main__":
    unittest.main(verbosity=2)
