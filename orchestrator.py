"""
Orchestrator
Coordinates the complete sampling pipeline:
DataAgent → GroupPoolBuilder → FeasibilityEstimator → ParallelSearchScheduler
→ OutcomeStatisticsReporter
"""

import json
from pathlib import Path
from typing import Callable, Dict, Any, List, Optional
from datetime import datetime

from utils import ProductionLogger, ConfigLoader, json_safe
from data_agent import DataAgent
from pool_builder import GroupPoolBuilder
from evaluator import ConstraintEvaluator
from feasibility import FeasibilityEstimator
from search import ParallelSearchScheduler
from reporter import OutcomeStatisticsReporter
from schema import resolve_constraints


class Orchestrator:
    """
    One run = one output directory with logs, reports and the selected sets.
    Component errors propagate up to ``run``, which records them in the
    returned result instead of raising.
    """

    def __init__(self, config_path: str = "config.yaml", config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else ConfigLoader.load(config_path)

        self.run_id = f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}"
        output_root = Path((self.config.get("data") or {}).get("output_dir", "outputs"))
        self.run_dir = output_root / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.log_dir = str(self.run_dir / "logs")
        self.log_level = (self.config.get("system") or {}).get("log_level", "INFO")
        self._loggers: List[ProductionLogger] = []
        self.logger = self._component_logger("Orchestrator")

        self.logger.info(f"Run Directory: {self.run_dir}")

        self.data_agent = DataAgent(self.config, self._component_logger("DataAgent"))
        self.pool_builder = GroupPoolBuilder(self.config, self._component_logger("PoolBuilder"))

    def _component_logger(self, name: str) -> ProductionLogger:
        logger = ProductionLogger(name, self.log_dir, self.run_id, log_level=self.log_level)
        self._loggers.append(logger)
        return logger

    def close(self):
        for logger in self._loggers:
            logger.close()

    # ======================================================================
    # MAIN PIPELINE
    # ======================================================================
    def run(
        self,
        items_csv: Optional[str] = None,
        basesets_csv: Optional[str] = None,
        testdefs_csv: Optional[str] = None,
        estimate_only: bool = False,
        progress: Optional[Callable[[str, float], None]] = None,
    ) -> Dict[str, Any]:
        result = {
            "success": False,
            "run_id": self.run_id,
            "run_dir": str(self.run_dir),
            "timestamp": datetime.now().isoformat(),
            "errors": [],
        }
        data_cfg = self.config.get("data") or {}

        try:
            # ------------------------------------------------------------------
            # STEP 1: LOAD DEFINITIONS
            # ------------------------------------------------------------------
            self.logger.info("STEP 1: Loading item table and definitions")

            table = self.data_agent.load_items(items_csv or data_cfg.get("items_csv"))
            group_specs = self.data_agent.load_group_specs(basesets_csv or data_cfg.get("basesets_csv"))
            constraint_specs = self.data_agent.load_constraint_specs(testdefs_csv or data_cfg.get("testdefs_csv"))

            # ------------------------------------------------------------------
            # STEP 2: GROUP POOLS
            # ------------------------------------------------------------------
            self.logger.info("STEP 2: Building eligible pools")

            pools = self.pool_builder.build(table, group_specs)
            result["pools"] = pools.diagnostics()
            result["warnings"] = list(pools.warnings)
            pools.raise_for_errors()

            constraints = resolve_constraints(constraint_specs, table, pools.labels)
            evaluator = ConstraintEvaluator(table)

            # ------------------------------------------------------------------
            # STEP 3: FEASIBILITY
            # ------------------------------------------------------------------
            self.logger.info("STEP 3: Estimating constraint pass frequencies")

            estimator = FeasibilityEstimator(evaluator, self.config, self._component_logger("Feasibility"))
            feasibility = estimator.estimate(
                pools.groups,
                constraints,
                progress=(lambda f: progress("feasibility", f)) if progress else None,
            )
            result["feasibility"] = feasibility.to_dict(constraints)

            self.logger.log_decision(
                "CONSTRAINT_ORDER",
                "Hardest constraints (lowest observed pass frequency) are evaluated first",
                {
                    "order": [constraints[i].number for i in feasibility.test_order],
                    "relative_frequencies": feasibility.relative_frequencies,
                },
            )

            if estimate_only:
                self._write_json("feasibility.json", result["feasibility"])
                result["success"] = True
                self.logger.info("Estimate-only run; search skipped")
                return result

            # ------------------------------------------------------------------
            # STEP 4: SEARCH
            # ------------------------------------------------------------------
            self.logger.info(
                "STEP 4: Searching for a draw that passes every test",
                expected_trials=feasibility.expected_trials,
            )

            scheduler = ParallelSearchScheduler(evaluator, self.config, self._component_logger("Search"))
            found = scheduler.search(
                pools.groups,
                constraints,
                order=feasibility.test_order,
                expected_trials=feasibility.expected_trials,
                progress=(lambda f: progress("search", f)) if progress else None,
            )
            result["search"] = found.to_dict()

            self.logger.log_decision(
                "DRAW_ACCEPTED",
                "First passing draw of the earliest successful worker in its round",
                {"rounds": found.rounds, "attempts": found.attempts, "worker": found.worker},
            )

            # ------------------------------------------------------------------
            # STEP 5: STATISTICS
            # ------------------------------------------------------------------
            self.logger.info("STEP 5: Computing statistics for the accepted draw")

            reporter = OutcomeStatisticsReporter(evaluator, self.config, self._component_logger("Reporter"))
            statistics = reporter.report(found.draw, constraints)

            # ------------------------------------------------------------------
            # STEP 6: OUTPUT FILES
            # ------------------------------------------------------------------
            self.logger.info("STEP 6: Generating outputs")

            sets_dir = self.run_dir / "sets"
            stamp = datetime.now().strftime("%y%m%d_%H%M")
            files = self.data_agent.save_selection(table, found.draw.as_dict(), str(sets_dir), stamp=stamp)
            item_table_file = self.data_agent.save_item_table(table, str(sets_dir), stamp=stamp)
            self._generate_outputs(table, pools, feasibility, constraints, found, statistics)

            result.update({
                "success": True,
                "selection": {
                    label: [table.item_ids[i] for i in idx]
                    for label, idx in found.draw.as_dict().items()
                },
                "set_files": [str(p) for p in files],
                "item_table_file": str(item_table_file),
                "constraints_passed": sum(1 for s in statistics if s.passed),
                "constraints_total": len(statistics),
            })

            self.logger.info("Selection complete", rounds=found.rounds, attempts=found.attempts)
            return result

        except Exception as e:
            err = f"Pipeline failed: {type(e).__name__}: {e}"
            self.logger.error(err)
            result["errors"].append(err)
            return result

    # ======================================================================
    # OUTPUT GENERATION
    # ======================================================================
    def _write_json(self, name: str, payload: Dict[str, Any]) -> Path:
        reports_dir = self.run_dir / "reports"
        reports_dir.mkdir(exist_ok=True)
        path = reports_dir / name
        with open(path, "w") as f:
            json.dump(json_safe(payload), f, indent=2)
        return path

    def _generate_outputs(self, table, pools, feasibility, constraints, found, statistics):
        self._write_json("feasibility.json", feasibility.to_dict(constraints))

        self._write_json("selection.json", {
            "search": found.to_dict(),
            "items": {
                label: [table.item_ids[i] for i in idx]
                for label, idx in found.draw.as_dict().items()
            },
        })

        self._write_json("statistics.json", {
            "statistics": [s.to_dict() for s in statistics],
        })

        self._generate_markdown_report(
            pools, feasibility, constraints, found, statistics,
            self.run_dir / "reports" / "report.md",
        )

    # ======================================================================
    # MARKDOWN REPORT
    # ======================================================================
    def _generate_markdown_report(self, pools, feasibility, constraints, found, statistics, output_path):
        lines = [
            "# Stimulus Set Selection Report",
            "",
            f"**Generated:** {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}",
            "",
            "## Base Sets",
            "",
            "| Group | Required N | Candidates |",
            "|---|---|---|",
        ]
        for d in pools.diagnostics():
            lines.append(f"| {d['label']} | {d['required_n']} | {d['candidates']} |")
        lines.append("")

        lines += [
            "## Feasibility",
            "",
            f"- Exploration trials: {feasibility.n_trials}",
            f"- Joint probability (product of marginals): {feasibility.joint_probability:.3g}",
            f"- Expected draws for a fit (median): {feasibility.expected_trials}",
        ]
        if feasibility.battery_passes is not None:
            lines.append(f"- Trials passing every test at once: {feasibility.battery_passes}")
        if feasibility.used_laplace:
            lines.append("- Laplace smoothing applied; the estimate is conservative.")
        lines.append("")
        for c, freq in zip(constraints, feasibility.relative_frequencies):
            lines.append(f"- {c.describe()} Observed pass rate: {freq:.2%}")
        lines.append("")

        lines += [
            "## Search",
            "",
            f"- Rounds: {found.rounds}",
            f"- Attempts: {found.attempts}",
            f"- Elapsed: {found.elapsed_seconds:.1f}s",
            "",
            "## Test Results",
            "",
        ]
        for s in statistics:
            lines.append(f"### {s.description}")
            lines.append(f"- p = {s.p_value:.4g} ({'pass' if s.passed else 'FAIL'})")
            if s.adjusted_p_value is not None:
                lines.append(f"- BH-adjusted p = {s.adjusted_p_value:.4g}")
            for g in s.group_summaries:
                lines.append(f"- {g.label}: n={g.n}, mean={g.mean:.4f}, sd={g.std:.4f}")
            lines.append("")

        with open(output_path, "w") as f:
            f.write("\n".join(lines))


if __name__ == "__main__":
    orchestrator = Orchestrator("config.yaml")
    output = orchestrator.run()
    print(output)
