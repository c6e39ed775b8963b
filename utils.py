"""
utils.py: shared utilities
Structured logging, YAML config loading and JSON-safe value helpers.
"""

import os
import json
import logging
import math
import yaml
from typing import Any, Dict, Optional
import numpy as np
from datetime import datetime, timezone


# ============================================================================
# CONFIG LOADER
# ============================================================================
class ConfigLoader:
    @staticmethod
    def load(path: str) -> Dict[str, Any]:
        """Loads YAML config with environment override support."""
        if not os.path.exists(path):
            raise FileNotFoundError(f"Config not found: {path}")

        with open(path, "r") as f:
            cfg = yaml.safe_load(f) or {}

        # Apply environment-level overrides
        env = os.environ.get("ENV", "prod")
        if env in ("dev", "development"):
            if "system" not in cfg:
                cfg["system"] = {}
            cfg["system"]["log_level"] = "DEBUG"

        return cfg


def merge_section(config: Optional[Dict[str, Any]], name: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
    """Merge one top-level config section over component defaults."""
    overrides = config.get(name) if isinstance(config, dict) else None
    return {**defaults, **(overrides or {})}


# ============================================================================
# PRODUCTION LOGGER
# ============================================================================
class ProductionLogger:
    """
    JSON Structured Logger
    - Per-run folder
    - Per-component logs
    - JSON structured lines
    - decision_log.jsonl supported
    """

    LEVELS = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "EXCEPTION": logging.ERROR,
    }

    def __init__(self, agent_name: str, base_log_dir: str = "logs", run_id: str = None, log_level: str = "INFO"):
        self.agent_name = agent_name.lower()
        self.run_id = run_id or f"run_{int(datetime.now(timezone.utc).timestamp())}"

        # Create run-level directory
        self.run_dir = os.path.join(str(base_log_dir), self.run_id)
        os.makedirs(self.run_dir, exist_ok=True)

        log_file = os.path.join(self.run_dir, f"{self.agent_name}.log")

        self.logger = logging.getLogger(f"{self.agent_name}_{self.run_id}")
        self.logger.propagate = False

        # Avoid duplicate handlers when running tests repeatedly
        if self.logger.handlers:
            for handler in list(self.logger.handlers):
                handler.close()
            self.logger.handlers.clear()

        self.logger.setLevel(getattr(logging, str(log_level).upper(), logging.INFO))

        formatter = logging.Formatter('%(message)s')

        file_handler = logging.FileHandler(log_file)
        file_handler.setFormatter(formatter)
        self.logger.addHandler(file_handler)

        console_handler = logging.StreamHandler()
        console_handler.setFormatter(formatter)
        self.logger.addHandler(console_handler)

        self.decision_log_path = os.path.join(self.run_dir, "decision_log.jsonl")

    # --------------------- JSON Logging Helpers ---------------------
    def _log_json(self, level: str, message: str, **kwargs):
        payload = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "agent": self.agent_name,
            "run_id": self.run_id,
            "message": message,
            "details": json_safe(kwargs) if kwargs else {},
        }
        self.logger.log(self.LEVELS.get(level, logging.INFO), json.dumps(payload))

    def debug(self, msg: str, **kwargs): self._log_json("DEBUG", msg, **kwargs)
    def info(self, msg: str, **kwargs): self._log_json("INFO", msg, **kwargs)
    def warning(self, msg: str, **kwargs): self._log_json("WARNING", msg, **kwargs)
    def error(self, msg: str, **kwargs): self._log_json("ERROR", msg, **kwargs)

    def exception(self, msg: str, **kwargs):
        kwargs["exception"] = True
        self._log_json("EXCEPTION", msg, **kwargs)

    # INPUT SUMMARY
    def log_input_summary(self, event: str, data: Dict[str, Any]):
        self.info("INPUT_SUMMARY", event=event, data=data)

    # OUTPUT SUMMARY
    def log_output_summary(self, event: str, data: Dict[str, Any]):
        self.info("OUTPUT_SUMMARY", event=event, data=data)

    # DECISION LOGGING
    def log_decision(self, title: str, reasoning: str, details: Dict[str, Any]):
        entry = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "title": title,
            "reasoning": reasoning,
            "details": json_safe(details),
        }
        with open(self.decision_log_path, "a") as f:
            f.write(json.dumps(entry) + "\n")

        self.info("DECISION", title=title, reasoning=reasoning, details=details)

    def close(self):
        for handler in list(self.logger.handlers):
            handler.close()
            self.logger.removeHandler(handler)


# ============================================================================
# JSON SAFETY
# ============================================================================
def safe_value(v):
    """Converts numpy types → Python native for JSON safety."""
    if isinstance(v, (np.bool_, bool)):
        return bool(v)
    if isinstance(v, np.integer):
        return int(v)
    if isinstance(v, np.floating):
        v = float(v)
    if isinstance(v, float) and not math.isfinite(v):
        return None
    return v


def json_safe(obj: Any) -> Any:
    """Recursively convert containers of numpy values into plain Python."""
    if isinstance(obj, dict):
        return {str(k): json_safe(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [json_safe(v) for v in obj]
    if isinstance(obj, np.ndarray):
        return [json_safe(v) for v in obj.tolist()]
    return safe_value(obj)
