"""
Outcome Statistics Reporter
Re-runs every constraint on the accepted draw and collects the inferential
and descriptive statistics that go into the final report. Reporting never
changes whether a draw was accepted.
"""

import math
from dataclasses import dataclass, field, asdict
from typing import Dict, Any, List, Optional, Sequence

import numpy as np
from scipy import stats
from statsmodels.stats.power import TTestIndPower
from statsmodels.stats.multitest import multipletests

from evaluator import ConstraintEvaluator
from schema import Constraint, Draw, TestType
from utils import ProductionLogger, json_safe, merge_section


# =====================================================================
# Dataclasses
# =====================================================================

@dataclass
class GroupSummary:
    label: str
    n: int
    mean: float
    std: float
    sem: float
    min: float
    median: float
    max: float

    @classmethod
    def from_values(cls, label: str, values: np.ndarray) -> "GroupSummary":
        arr = np.asarray(values, dtype=float)
        n = int(arr.size)
        std = float(np.std(arr, ddof=1)) if n > 1 else float("nan")
        return cls(
            label=label,
            n=n,
            mean=float(np.mean(arr)),
            std=std,
            sem=std / math.sqrt(n) if n > 1 else float("nan"),
            min=float(np.min(arr)),
            median=float(np.median(arr)),
            max=float(np.max(arr)),
        )


@dataclass
class ConstraintStatistics:
    description: str
    test_type: str
    attribute: str
    groups: List[str]
    operator: str
    threshold: float
    p_value: float
    passed: bool
    statistic: float
    df: Any
    group_summaries: List[GroupSummary]
    detail: Dict[str, Any] = field(default_factory=dict)
    adjusted_p_value: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["group_summaries"] = [asdict(g) for g in self.group_summaries]
        return json_safe(d)


# =====================================================================
# Reporter
# =====================================================================

class OutcomeStatisticsReporter:
    DEFAULT_CONFIG = {
        "ci_level": 0.95,
        "power_alpha": 0.05,
        "fdr_alpha": 0.05,
    }

    def __init__(
        self,
        evaluator: ConstraintEvaluator,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[ProductionLogger] = None,
    ):
        self.evaluator = evaluator
        self.config = merge_section(config, "reporting", OutcomeStatisticsReporter.DEFAULT_CONFIG)
        self.logger = logger

    def report(self, draw: Draw, constraints: Sequence[Constraint]) -> List[ConstraintStatistics]:
        results = [self.describe_constraint(draw, c) for c in constraints]
        self._apply_fdr(results)

        if self.logger:
            self.logger.log_output_summary("OUTCOME_STATISTICS", {
                "constraints": len(results),
                "passed": sum(1 for r in results if r.passed),
                "p_values": [r.p_value for r in results],
            })
        return results

    def describe_constraint(self, draw: Draw, constraint: Constraint) -> ConstraintStatistics:
        samples = self.evaluator.gather(draw, constraint)
        statistic, p = self.evaluator.test_statistic(constraint.test_type, samples)

        if constraint.test_type is TestType.TWO_SAMPLE:
            detail = self._two_sample_detail(samples)
            df = detail["df"]
        else:
            detail = self._anova_detail(samples)
            df = {"between": detail["anova_table"]["between"]["df"], "within": detail["anova_table"]["within"]["df"]}

        return ConstraintStatistics(
            description=constraint.describe(),
            test_type=constraint.test_type.value,
            attribute=constraint.attribute,
            groups=list(constraint.group_labels),
            operator=constraint.operator.value,
            threshold=constraint.threshold,
            p_value=p,
            passed=constraint.operator.passes(p, constraint.threshold),
            statistic=statistic,
            df=df,
            group_summaries=[
                GroupSummary.from_values(label, values)
                for label, values in zip(constraint.group_labels, samples)
            ],
            detail=detail,
        )

    # =====================================================================
    # Test-specific detail
    # =====================================================================

    def _two_sample_detail(self, samples: Sequence[np.ndarray]) -> Dict[str, Any]:
        x = np.asarray(samples[0], dtype=float)
        y = np.asarray(samples[1], dtype=float)
        n1, n2 = x.size, y.size
        df = n1 + n2 - 2

        diff = float(np.mean(x) - np.mean(y))
        pooled_var = ((n1 - 1) * np.var(x, ddof=1) + (n2 - 1) * np.var(y, ddof=1)) / df if df > 0 else float("nan")
        pooled_sd = float(np.sqrt(pooled_var))
        se = pooled_sd * math.sqrt(1.0 / n1 + 1.0 / n2)

        level = float(self.config["ci_level"])
        t_crit = float(stats.t.ppf(1.0 - (1.0 - level) / 2.0, df)) if df > 0 else float("nan")
        ci = [diff - t_crit * se, diff + t_crit * se]

        cohens_d = diff / pooled_sd if pooled_sd > 0 else float("nan")

        return {
            "df": df,
            "mean_difference": diff,
            "ci_level": level,
            "ci": ci,
            "pooled_sd": pooled_sd,
            "cohens_d": cohens_d,
            "power": self._power(cohens_d, n1, n2),
        }

    def _power(self, effect_size: float, n1: int, n2: int) -> Optional[float]:
        if not math.isfinite(effect_size) or effect_size == 0.0 or n1 < 2 or n2 < 2:
            return None
        return float(
            TTestIndPower().solve_power(
                effect_size=abs(effect_size),
                nobs1=n1,
                ratio=n2 / n1,
                alpha=float(self.config["power_alpha"]),
            )
        )

    def _anova_detail(self, samples: Sequence[np.ndarray]) -> Dict[str, Any]:
        arrays = [np.asarray(s, dtype=float) for s in samples]
        pooled = np.concatenate(arrays)
        grand_mean = float(np.mean(pooled))
        k = len(arrays)
        n_total = pooled.size

        ss_between = float(sum(a.size * (np.mean(a) - grand_mean) ** 2 for a in arrays))
        ss_within = float(sum(np.sum((a - np.mean(a)) ** 2) for a in arrays))
        ss_total = ss_between + ss_within
        df_between = k - 1
        df_within = n_total - k
        ms_between = ss_between / df_between if df_between > 0 else float("nan")
        ms_within = ss_within / df_within if df_within > 0 else float("nan")

        return {
            "anova_table": {
                "between": {"ss": ss_between, "df": df_between, "ms": ms_between},
                "within": {"ss": ss_within, "df": df_within, "ms": ms_within},
                "total": {"ss": ss_total, "df": n_total - 1},
            },
            "eta_squared": ss_between / ss_total if ss_total > 0 else float("nan"),
        }

    # =====================================================================
    # Battery-level correction (informational only)
    # =====================================================================

    def _apply_fdr(self, results: List[ConstraintStatistics]):
        finite = [i for i, r in enumerate(results) if math.isfinite(r.p_value)]
        if not finite:
            return
        _, adjusted, _, _ = multipletests(
            [results[i].p_value for i in finite],
            alpha=float(self.config["fdr_alpha"]),
            method="fdr_bh",
        )
        for i, adj in zip(finite, adjusted):
            results[i].adjusted_p_value = float(adj)
