#!/usr/bin/env python3
"""Repeated-replication comparison of the three estimators."""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import numpy as np
from numpy.random import SeedSequence

from dists import EstimatorError, check_sample_size
from experiments import METHODS, rng_for, rng_from, rng_sequence, scenario_tag
from sim_core import (
    EstimatorResult,
    Scenario,
    control_variate_estimate,
    importance_estimate,
    resolve_control_mean,
    simple_estimate,
)


@dataclass(frozen=True)
class ReplicationFailure:
    method: str
    replication: int
    error: str
    message: str


@dataclass
class TrialBatch:
    method: str
    n: int
    results: List[EstimatorResult] = field(default_factory=list)
    failures: List[ReplicationFailure] = field(default_factory=list)

    def estimates(self) -> np.ndarray:
        return np.array([r.point_estimate for r in self.results], dtype=float)

    def mean_estimate(self) -> float:
        return float(self.estimates().mean()) if self.results else float("nan")

    def bias(self, reference: float) -> float:
        return self.mean_estimate() - reference

    def variance(self) -> float:
        if len(self.results) < 2:
            return float("nan")
        return float(self.estimates().var(ddof=1))

    def mcse(self) -> float:
        # Monte Carlo standard error of mean_estimate
        if len(self.results) < 2:
            return float("nan")
        return math.sqrt(self.variance() / len(self.results))

    def mean_variance_estimate(self) -> float:
        if not self.results:
            return float("nan")
        return float(np.mean([r.variance_estimate for r in self.results]))

    def mean_elapsed(self) -> float:
        if not self.results:
            return float("nan")
        return float(np.mean([r.elapsed_time for r in self.results]))


@dataclass
class ComparisonResult:
    n: int
    replications: int
    reference: float
    control_mean: Optional[float]
    batches: Dict[str, TrialBatch]


def estimator_for(method: str) -> Callable:
    if method == "simple":
        return simple_estimate
    if method == "control_variate":
        return control_variate_estimate
    if method == "importance":
        return importance_estimate
    raise ValueError(f"Unknown method: {method!r}")


def run_replication(method: str, scenario: Scenario, n: int, ss: SeedSequence, control_mean: Optional[float] = None) -> EstimatorResult:
    rng = rng_from(ss)
    if method == "control_variate":
        return control_variate_estimate(scenario, n, rng, control_mean=control_mean)
    return estimator_for(method)(scenario, n, rng)


def _replication_worker(args: Tuple[str, int, Scenario, int, SeedSequence, Optional[float]]):
    method, rep, scenario, n, ss, control_mean = args
    try:
        return run_replication(method, scenario, n, ss, control_mean)
    except EstimatorError as exc:
        return ReplicationFailure(method, rep, type(exc).__name__, str(exc))


def replication_streams(seed: Optional[int], method: str, n: int, n_replications: int) -> List[SeedSequence]:
    tag = scenario_tag("comparison", method=method, n=n)
    return rng_sequence(seed, tag).spawn(n_replications)


def run_comparison(
    scenario: Scenario,
    n: int,
    n_replications: int,
    reference_value: float,
    seed: Optional[int] = None,
    methods: Sequence[str] = METHODS,
    workers: int = 1,
    on_result: Optional[Callable[[str, int], None]] = None,
) -> ComparisonResult:
    """Run `n_replications` independent calls of each method at sample size `n`.

    Every (method, replication) pair draws from its own Philox stream spawned
    from (seed, method, n), so a seeded run is replayable and independent of
    `workers`. Estimator errors become ReplicationFailure entries on the
    batch instead of aborting the run.
    """
    n = check_sample_size(n)
    if n_replications < 1:
        raise ValueError("n_replications must be >= 1")
    for method in methods:
        estimator_for(method)

    control_mean = None
    if "control_variate" in methods:
        control_mean = resolve_control_mean(scenario, rng_for(seed, scenario_tag("control_mean", n=n)))

    batches: Dict[str, TrialBatch] = {}
    for method in methods:
        batch = TrialBatch(method=method, n=n)
        streams = replication_streams(seed, method, n, n_replications)
        args = [(method, rep, scenario, n, ss, control_mean) for rep, ss in enumerate(streams)]
        if workers > 1 and n_replications > 1:
            from multiprocessing import get_context

            ctx = get_context("spawn")
            with ctx.Pool(processes=workers) as pool:
                outcomes = list(_collect(pool.imap(_replication_worker, args, chunksize=1), method, on_result))
        else:
            outcomes = list(_collect(map(_replication_worker, args), method, on_result))
        for outcome in outcomes:
            if isinstance(outcome, ReplicationFailure):
                batch.failures.append(outcome)
            else:
                batch.results.append(outcome)
        batches[method] = batch

    return ComparisonResult(
        n=n,
        replications=n_replications,
        reference=reference_value,
        control_mean=control_mean,
        batches=batches,
    )


def _collect(outcomes, method: str, on_result):
    for outcome in outcomes:
        if on_result is not None:
            on_result(method, 1)
        yield outcome


def comparison_rows(result: ComparisonResult) -> List[Dict]:
    rows = []
    for method, batch in result.batches.items():
        rows.append(
            {
                "method": method,
                "N": result.n,
                "replications": result.replications,
                "failures": len(batch.failures),
                "reference": result.reference,
                "mean_estimate": batch.mean_estimate(),
                "bias": batch.bias(result.reference),
                "mcse": batch.mcse(),
                "variance": batch.variance(),
                "variance_ratio": variance_ratio(result, method) if "simple" in result.batches else float("nan"),
                "mean_variance_estimate": batch.mean_variance_estimate(),
                "elapsed_time": batch.mean_elapsed(),
            }
        )
    return rows


def failure_rows(result: ComparisonResult) -> List[Dict]:
    rows = []
    for batch in result.batches.values():
        for failure in batch.failures:
            rows.append(
                {
                    "method": failure.method,
                    "N": result.n,
                    "replication": failure.replication,
                    "error": failure.error,
                    "message": failure.message,
                }
            )
    return rows


def variance_ratio(result: ComparisonResult, method: str, baseline: str = "simple") -> float:
    num = result.batches[method].variance()
    den = result.batches[baseline].variance()
    if not (math.isfinite(num) and math.isfinite(den)) or den <= 0:
        return float("nan")
    return num / den
