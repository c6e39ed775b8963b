"""
Parallel Search Scheduler
Rejection sampling in synchronized rounds: W workers each try up to C random
draws, the round joins, and the lowest-index accepted draw wins.
"""

import math
import time
from concurrent.futures import ProcessPoolExecutor, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, Any, List, Optional, Sequence

import numpy as np

from evaluator import ConstraintEvaluator, EvaluationMode
from pool_builder import check_pools, draw_sample
from schema import ConfigurationError, Constraint, Draw, Group, SearchExhaustedError
from utils import ProductionLogger, merge_section


ProgressCallback = Callable[[float], None]

EXECUTORS = {
    "thread": ThreadPoolExecutor,
    "process": ProcessPoolExecutor,
}


class SearchState(Enum):
    IDLE = "idle"
    SEARCHING = "searching"
    SUCCESS = "success"


@dataclass
class ChunkResult:
    draw: Optional[Draw]
    attempts: int

    @property
    def succeeded(self) -> bool:
        return self.draw is not None


@dataclass
class SearchResult:
    draw: Draw
    rounds: int
    attempts: int
    worker: int
    elapsed_seconds: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selection": self.draw.as_dict(),
            "rounds": self.rounds,
            "attempts": self.attempts,
            "worker": self.worker,
            "elapsed_seconds": round(self.elapsed_seconds, 3),
        }


def run_chunk(
    evaluator: ConstraintEvaluator,
    groups: Sequence[Group],
    constraints: Sequence[Constraint],
    chunk_length: int,
    seed_seq: np.random.SeedSequence,
) -> ChunkResult:
    """One worker's share of a round. Module-level so process pools can pickle it."""
    rng = np.random.default_rng(seed_seq)
    for attempt in range(1, chunk_length + 1):
        draw = draw_sample(groups, rng)
        if evaluator.evaluate(draw, constraints, EvaluationMode.EARLY_EXIT).ok:
            return ChunkResult(draw=draw, attempts=attempt)
    return ChunkResult(draw=None, attempts=chunk_length)


class ParallelSearchScheduler:
    """
    The worker pool (threads by default, processes when
    ``executor: process``) lives exactly as long as one call to ``search``. Each
    worker gets its own generator spawned from one SeedSequence, so a fixed
    seed reproduces the accepted draw.
    """

    DEFAULT_CONFIG = {
        "workers": 10,
        "chunk_length": 1000,
        "max_rounds": None,
        "seed": None,
        "progress_cap": 0.98,
        "executor": "thread",
    }

    def __init__(
        self,
        evaluator: ConstraintEvaluator,
        config: Optional[Dict[str, Any]] = None,
        logger: Optional[ProductionLogger] = None,
        **overrides,
    ):
        self.evaluator = evaluator
        self.config = {**merge_section(config, "search", ParallelSearchScheduler.DEFAULT_CONFIG), **overrides}
        self.logger = logger
        self.state = SearchState.IDLE

        self.workers = int(self.config["workers"])
        self.chunk_length = int(self.config["chunk_length"])
        self.max_rounds = self.config["max_rounds"]
        self.progress_cap = float(self.config["progress_cap"])
        self.executor = str(self.config["executor"]).strip().lower()

        if self.workers < 1:
            raise ConfigurationError("Worker batch size must be at least 1")
        if self.chunk_length < 1:
            raise ConfigurationError("Chunk length must be at least 1")
        if self.max_rounds is not None and int(self.max_rounds) < 1:
            raise ConfigurationError("max_rounds must be positive when set")
        if self.executor not in EXECUTORS:
            raise ConfigurationError(
                f"Unknown executor {self.config['executor']!r}; expected one of {sorted(EXECUTORS)}"
            )

    # ======================================================================
    # ROUNDS
    # ======================================================================
    def expected_rounds(self, expected_trials: Optional[float]) -> Optional[float]:
        if expected_trials is None or not math.isfinite(expected_trials):
            return None
        return max(float(expected_trials) / (self.workers * self.chunk_length), 1e-12)

    def _report_progress(self, progress, rounds_done, expected_rounds):
        if progress is None or expected_rounds is None:
            return
        progress(min(rounds_done / expected_rounds, self.progress_cap))

    def search(
        self,
        groups: Sequence[Group],
        constraints: Sequence[Constraint],
        order: Optional[Sequence[int]] = None,
        expected_trials: Optional[float] = None,
        seed: Optional[int] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> SearchResult:
        check_pools(groups)

        if order is not None:
            if sorted(order) != list(range(len(constraints))):
                raise ConfigurationError(f"Evaluation order {list(order)} is not a permutation of the constraints")
            ordered = [constraints[i] for i in order]
        else:
            ordered = list(constraints)

        seed = seed if seed is not None else self.config["seed"]
        root = np.random.SeedSequence(seed)
        expected_rounds = self.expected_rounds(expected_trials)

        if self.logger:
            self.logger.log_input_summary("SEARCH", {
                "workers": self.workers,
                "chunk_length": self.chunk_length,
                "order": [c.number for c in ordered],
                "expected_trials": expected_trials,
                "expected_rounds": expected_rounds,
                "max_rounds": self.max_rounds,
                "executor": self.executor,
            })

        started = time.perf_counter()
        rounds = 0
        attempts = 0
        self.state = SearchState.SEARCHING

        try:
            with EXECUTORS[self.executor](max_workers=self.workers) as pool:
                while True:
                    if self.max_rounds is not None and rounds >= int(self.max_rounds):
                        raise SearchExhaustedError(rounds, attempts)

                    futures = [
                        pool.submit(run_chunk, self.evaluator, groups, ordered, self.chunk_length, child)
                        for child in root.spawn(self.workers)
                    ]
                    # Round barrier; results are read in worker index order.
                    results: List[ChunkResult] = [f.result() for f in futures]

                    rounds += 1
                    attempts += sum(r.attempts for r in results)

                    winner = next((i for i, r in enumerate(results) if r.succeeded), None)
                    if winner is not None:
                        self.state = SearchState.SUCCESS
                        if progress:
                            progress(1.0)
                        result = SearchResult(
                            draw=results[winner].draw,
                            rounds=rounds,
                            attempts=attempts,
                            worker=winner,
                            elapsed_seconds=time.perf_counter() - started,
                        )
                        if self.logger:
                            self.logger.log_output_summary("SEARCH", result.to_dict())
                        return result

                    self._report_progress(progress, rounds, expected_rounds)
                    if self.logger:
                        self.logger.debug(
                            "Round finished without an accepted draw",
                            round=rounds,
                            attempts=attempts,
                            elapsed_seconds=round(time.perf_counter() - started, 3),
                        )
        finally:
            if self.state is not SearchState.SUCCESS:
                self.state = SearchState.IDLE
