"""
Feasibility Estimator
Measures how often a uniformly random draw passes each constraint and turns
those marginal frequencies into a joint-probability / expected-trials
estimate for the whole battery.

The joint estimate is a product of marginals, i.e. it treats constraints as
independent. Constraints sharing a group or an attribute are not, so the
figure is a planning aid for progress reporting, not a guarantee.
"""

import math
from dataclasses import dataclass
from typing import Callable, Dict, Any, List, Optional, Sequence, Tuple

import numpy as np

from evaluator import ConstraintEvaluator, EvaluationMode
from pool_builder import check_pools, draw_sample
from schema import ConfigurationError, Constraint, Group
from utils import ProductionLogger, merge_section


ProgressCallback = Callable[[float], None]


@dataclass
class FeasibilityReport:
    n_trials: int
    pass_counts: np.ndarray
    relative_frequencies: np.ndarray
    joint_probability: float
    used_laplace: bool
    expected_trials: float
    test_order: List[int]
    battery_passes: Optional[int] = None

    def to_dict(self, constraints: Optional[Sequence[Constraint]] = None) -> Dict[str, Any]:
        d = {
            "n_trials": self.n_trials,
            "pass_counts": [int(c) for c in self.pass_counts],
            "relative_frequencies": [float(f) for f in self.relative_frequencies],
            "joint_probability": float(self.joint_probability),
            "used_laplace": self.used_laplace,
            "expected_trials": self.expected_trials,
            "test_order": [int(i) for i in self.test_order],
        }
        if self.battery_passes is not None:
            d["battery_passes"] = int(self.battery_passes)
            d["observed_joint_probability"] = self.battery_passes / float(self.n_trials)
        if constraints is not None:
            d["descriptions"] = [c.describe() for c in constraints]
        return d


def expected_trials_for(joint_probability: float) -> float:
    """
    Median number of independent draws until the first success, assuming
    Bernoulli trials: ceil(log 0.5 / log(1 - p)).
    """
    if joint_probability >= 1.0:
        return 1
    if joint_probability <= 0.0:
        return math.inf
    denom = math.log1p(-joint_probability)
    if denom == 0.0:
        return math.inf
    return max(1, math.ceil(math.log(0.5) / denom))


def difficulty_order(relative_frequencies: Sequence[float]) -> List[int]:
    """Constraint positions sorted hardest (lowest pass frequency) first."""
    return [int(i) for i in np.argsort(np.asarray(relative_frequencies, dtype=float), kind="stable")]


def summarize_pass_counts(
    pass_counts: Sequence[int],
    n_trials: int,
    battery_passes: Optional[int] = None,
) -> FeasibilityReport:
    """
    battery_passes, when given, is the number of trials in which every
    constraint passed at once. It is reported next to the product of
    marginals but does not replace it.
    """
    if n_trials < 1:
        raise ConfigurationError("Number of feasibility trials must be positive")

    counts = np.asarray(pass_counts, dtype=int)
    freqs = counts / float(n_trials)
    joint = float(np.prod(freqs))

    used_laplace = False
    if joint == 0.0:
        joint = float(np.prod((counts + 1) / float(n_trials + 1)))
        used_laplace = True

    return FeasibilityReport(
        n_trials=int(n_trials),
        pass_counts=counts,
        relative_frequencies=freqs,
        joint_probability=joint,
        used_laplace=used_laplace,
        expected_trials=expected_trials_for(joint),
        test_order=difficulty_order(freqs),
        battery_passes=battery_passes,
    )


class FeasibilityEstimator:
    DEFAULT_CONFIG = {
        "n_trials": 10000,
        "seed": None,
        "progress_every": 500,
    }

    def __init__(
        self,
        evaluator: ConstraintEvaluator,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[ProductionLogger] = None,
    ):
        self.evaluator = evaluator
        self.config = merge_section(config, "feasibility", FeasibilityEstimator.DEFAULT_CONFIG)
        self.logger = logger

    def count_passes(
        self,
        groups: Sequence[Group],
        constraints: Sequence[Constraint],
        n_trials: int,
        rng: np.random.Generator,
        progress: Optional[ProgressCallback] = None,
    ) -> Tuple[np.ndarray, int]:
        """Every trial is a fresh draw evaluated against all constraints."""
        counts = np.zeros(len(constraints), dtype=int)
        battery_passes = 0
        every = max(1, int(self.config["progress_every"]))

        for trial in range(1, n_trials + 1):
            draw = draw_sample(groups, rng)
            result = self.evaluator.evaluate(draw, constraints, EvaluationMode.FULL_SCAN)
            counts += np.asarray(result.passed, dtype=int)
            battery_passes += int(result.ok)
            if progress and (trial % every == 0 or trial == n_trials):
                progress(trial / n_trials)

        return counts, battery_passes

    def estimate(
        self,
        groups: Sequence[Group],
        constraints: Sequence[Constraint],
        n_trials: Optional[int] = None,
        seed: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> FeasibilityReport:
        n_trials = int(n_trials if n_trials is not None else self.config["n_trials"])
        if n_trials < 1:
            raise ConfigurationError("Number of feasibility trials must be positive")
        check_pools(groups)

        seed = seed if seed is not None else self.config["seed"]
        rng = np.random.default_rng(seed)

        if self.logger:
            self.logger.log_input_summary("FEASIBILITY", {
                "n_trials": n_trials,
                "constraints": len(constraints),
                "groups": [g.label for g in groups],
            })

        counts, battery_passes = self.count_passes(groups, constraints, n_trials, rng, progress)
        report = summarize_pass_counts(counts, n_trials, battery_passes)

        if self.logger:
            self.logger.log_output_summary("FEASIBILITY", report.to_dict(constraints))
            if report.used_laplace:
                self.logger.warning(
                    f"One or more tests returned zero success events after {n_trials} attempts; "
                    "Laplace smoothing applied, estimate is conservative",
                    pass_counts=report.pass_counts,
                )

        return report
