"""
End-to-end tests for the Orchestrator pipeline and the CLI wrapper.
"""

import json
import shutil
import tempfile
import unittest
from pathlib import Path
from unittest.mock import patch

import pandas as pd

import main as cli
from main import apply_overrides, build_parser
from orchestrator import Orchestrator


DATA_DIR = Path(__file__).resolve().parent / "data"


def make_config(output_dir, **search):
    return {
        "system": {"log_level": "WARNING"},
        "data": {
            "items_csv": str(DATA_DIR / "items.csv"),
            "basesets_csv": str(DATA_DIR / "basesets.csv"),
            "testdefs_csv": str(DATA_DIR / "testdefs.csv"),
            "output_dir": str(output_dir),
        },
        "feasibility": {"n_trials": 300, "seed": 1, "progress_every": 100},
        "search": {"workers": 2, "chunk_length": 200, "max_rounds": 200, "seed": 1, **search},
    }


class TestOrchestrator(unittest.TestCase):

    def setUp(self):
        self.tmp = Path(tempfile.mkdtemp())

    def tearDown(self):
        shutil.rmtree(self.tmp)

    def run_pipeline(self, config, **kwargs):
        orchestrator = Orchestrator(config=config)
        try:
            return orchestrator.run(**kwargs)
        finally:
            orchestrator.close()

    def test_full_run_writes_sets_and_reports(self):
        seen = []
        result = self.run_pipeline(make_config(self.tmp), progress=lambda stage, f: seen.append((stage, f)))

        self.assertTrue(result["success"], result["errors"])
        self.assertEqual(result["constraints_total"], 5)
        self.assertEqual(result["constraints_passed"], 5)
        self.assertEqual(set(result["selection"].keys()), {"Neg", "Neu", "Pos"})
        self.assertTrue(all(len(v) == 10 for v in result["selection"].values()))

        run_dir = Path(result["run_dir"])
        for name in ("feasibility.json", "selection.json", "statistics.json", "report.md"):
            self.assertTrue((run_dir / "reports" / name).exists(), name)
        self.assertEqual(len(result["set_files"]), 3)

        all_items = pd.read_csv(result["item_table_file"], sep=";")
        self.assertEqual(len(all_items), 90)
        self.assertEqual(list(all_items.columns), ["File_Name", "Valence", "Arousal", "Luminance", "Contrast"])
        self.assertTrue(Path(result["item_table_file"]).name.startswith("ImagesData_"))

        neg = pd.read_csv(result["set_files"][0], sep=";")
        self.assertEqual(len(neg), 10)
        self.assertTrue((neg["Valence"] < 3.5).all())

        with open(run_dir / "reports" / "statistics.json") as f:
            stats = json.load(f)["statistics"]
        self.assertTrue(all(s["passed"] for s in stats))

        self.assertIn(("feasibility", 1.0), seen)
        self.assertEqual(seen[-1], ("search", 1.0))
        self.assertTrue((run_dir / "logs" / result["run_id"] / "decision_log.jsonl").exists())

    def test_estimate_only_skips_search(self):
        result = self.run_pipeline(make_config(self.tmp), estimate_only=True)

        self.assertTrue(result["success"])
        self.assertNotIn("search", result)
        feas = result["feasibility"]
        self.assertEqual(feas["n_trials"], 300)
        self.assertEqual(sorted(feas["test_order"]), [0, 1, 2, 3, 4])
        self.assertEqual(len(feas["descriptions"]), 5)
        self.assertTrue((Path(result["run_dir"]) / "reports" / "feasibility.json").exists())

    def test_infeasible_group_is_reported_not_raised(self):
        basesets = self.tmp / "basesets.csv"
        basesets.write_text("Group_Label;Required_N;Filter_1\nNeg;500;Valence<3.5\nPos;10;Valence>6.5\n")
        testdefs = self.tmp / "testdefs.csv"
        testdefs.write_text("Type;Variable;Groups;Operator;Threshold\nttest2;Valence;Neg,Pos;<;0.05\n")

        result = self.run_pipeline(
            make_config(self.tmp),
            basesets_csv=str(basesets),
            testdefs_csv=str(testdefs),
        )
        self.assertFalse(result["success"])
        self.assertEqual(len(result["errors"]), 1)
        self.assertIn("FeasibilityError", result["errors"][0])
        self.assertEqual(result["pools"][0]["candidates"], 28)

    def test_exhausted_search_is_reported(self):
        testdefs = self.tmp / "testdefs.csv"
        testdefs.write_text("Type;Variable;Groups;Operator;Threshold\nttest2;Valence;Neg,Pos;>;0.5\n")

        result = self.run_pipeline(
            make_config(self.tmp, max_rounds=1, chunk_length=10),
            testdefs_csv=str(testdefs),
        )
        self.assertFalse(result["success"])
        self.assertIn("SearchExhaustedError", result["errors"][0])

    def test_configuration_error_is_reported(self):
        testdefs = self.tmp / "testdefs.csv"
        testdefs.write_text("Type;Variable;Groups;Operator;Threshold\nttest2;Missing;Neg,Pos;<;0.05\n")

        result = self.run_pipeline(make_config(self.tmp), testdefs_csv=str(testdefs))
        self.assertFalse(result["success"])
        self.assertIn("ConfigurationError", result["errors"][0])


class TestCommandLine(unittest.TestCase):

    def test_overrides_take_precedence(self):
        args = build_parser().parse_args(
            ["--trials", "50", "--workers", "3", "--chunk-length", "7", "--max-rounds", "9", "--seed", "4"]
        )
        config = apply_overrides({"feasibility": {"n_trials": 10000}, "search": None}, args)

        self.assertEqual(config["feasibility"]["n_trials"], 50)
        self.assertEqual(config["feasibility"]["seed"], 4)
        self.assertEqual(config["search"], {"workers": 3, "chunk_length": 7, "max_rounds": 9, "seed": 4})

    def test_loggers_closed_when_run_is_interrupted(self):
        tmp = Path(tempfile.mkdtemp())
        self.addCleanup(shutil.rmtree, tmp)
        cfg = tmp / "config.yaml"
        cfg.write_text("system:\n  log_level: WARNING\n")

        for raised, code in ((KeyboardInterrupt(), 130), (RuntimeError("boom"), 1)):
            with self.subTest(raised=type(raised).__name__):
                with patch.object(cli, "Orchestrator") as orchestrator_cls:
                    orchestrator_cls.return_value.run.side_effect = raised
                    self.assertEqual(cli.main(["--config", str(cfg)]), code)
                orchestrator_cls.return_value.close.assert_called_once_with()

    def test_defaults_leave_config_untouched(self):
        args = build_parser().parse_args([])
        config = apply_overrides({"search": {"workers": 10}}, args)
        self.assertEqual(config["search"], {"workers": 10})
        self.assertFalse(args.estimate_only)


if __name__ == "__main__":
    unittest.main(verbosity=2)
