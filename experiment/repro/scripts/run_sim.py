#!/usr/bin/env python3
"""Run the estimator comparison suite from a TOML config."""
from __future__ import annotations

import argparse
import math
import os
import sys
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import tomllib

from convergence import convergence_traces, trace_rows
from experiments import METHODS, rng_for, scenario_fields, scenario_from_config, scenario_tag, stable_hash_int
from harness import comparison_rows, failure_rows, run_comparison
from repro_utils import append_summary, build_run_paths, compute_run_id, ensure_dir, write_csv, write_json, write_manifest
from sim_core import Scenario, reference_value


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Run Monte Carlo estimator comparison suite")
    parser.add_argument("--config", required=True, help="TOML config path")
    parser.add_argument("--seed", type=int, help="override base seed")
    parser.add_argument("--run-id", help="override run ID")
    parser.add_argument("--root", help="output root (default: the repro directory)")
    return parser.parse_args(argv)


def _format_seconds(seconds: float) -> str:
    m, s = divmod(int(max(0.0, seconds)), 60)
    h, m = divmod(m, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"


class ModuleProgress:
    """Prints START/done/DONE lines per module and a heartbeat during long N."""

    def __init__(self, label: str, total_tasks: int, cadence_seconds: int = 60) -> None:
        self.label = label
        self.total_tasks = total_tasks
        self.cadence_seconds = cadence_seconds
        self.start_ts = time.time()
        self.last_report = self.start_ts
        self.completed_tasks = 0
        self.task_label = "task"
        self.task_total = 0
        self.task_done = 0
        self.task_start = self.start_ts
        start_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(self.start_ts))
        print(f"[{self.label}] START {start_str} | tasks={self.total_tasks}", flush=True)

    def start_task(self, label: str, total: int) -> None:
        self.task_label = label
        self.task_total = total
        self.task_done = 0
        self.task_start = time.time()

    def update(self, *_: Any) -> None:
        self.task_done += 1
        now = time.time()
        if now - self.last_report >= self.cadence_seconds:
            self.last_report = now
            print(
                f"[{self.label}] progress {self.task_label} {self.task_done}/{self.task_total} | "
                f"elapsed={_format_seconds(now - self.start_ts)}",
                flush=True,
            )

    def finish_task(self, note: str = "") -> None:
        self.completed_tasks += 1
        suffix = f" | {note}" if note else ""
        print(
            f"[{self.label}] done {self.task_label} | {self.task_done}/{self.task_total} | "
            f"task_time={_format_seconds(time.time() - self.task_start)} | "
            f"tasks={self.completed_tasks}/{self.total_tasks}{suffix}",
            flush=True,
        )

    def finish(self) -> None:
        now = time.time()
        end_str = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime(now))
        print(f"[{self.label}] DONE {end_str} | total_time={_format_seconds(now - self.start_ts)}", flush=True)


@dataclass
class RunContext:
    scenario: Scenario
    seed: int
    run_id: str
    root: str
    config_path: str
    master: List[Dict] = field(default_factory=list)
    reference: Optional[float] = None

    @property
    def workers(self) -> int:
        return int(os.environ.get("REPRO_WORKERS", "1"))


def make_manifest(ctx: RunContext, experiment: str, spawn_keys: List[Dict]) -> None:
    paths = build_run_paths(ctx.root, experiment, ctx.run_id)
    ensure_dir(paths.tables_dir)
    ensure_dir(paths.logs_dir)
    repo_root = os.path.abspath(os.path.join(ctx.root, ".."))
    targets = [
        os.path.join(paths.logs_dir, f"manifest_{experiment}.json"),
        os.path.join(os.path.dirname(paths.tables_dir), "manifest.json"),
    ]
    for manifest_path in targets:
        write_manifest(
            manifest_path,
            run_id=ctx.run_id,
            config_path=ctx.config_path,
            base_seed=ctx.seed,
            spawn_keys=spawn_keys,
            command=sys.argv,
            repo_root=repo_root,
            scenario=scenario_fields(ctx.scenario),
        )
    append_summary(
        os.path.join(ctx.root, "outputs", experiment, "summary.csv"),
        [
            ctx.run_id,
            os.path.relpath(ctx.config_path, ctx.root),
            str(ctx.seed),
            os.path.relpath(os.path.dirname(paths.tables_dir), ctx.root),
            os.path.relpath(paths.logs_dir, ctx.root),
            "completed",
        ],
    )


# ---------- Module implementations ----------

def run_reference_module(cfg: Dict, ctx: RunContext) -> float:
    experiment = "reference"
    progress = ModuleProgress(experiment, 1)
    if "value" in cfg:
        ctx.reference = float(cfg["value"])
        print(f"[{experiment}] using configured reference value {ctx.reference!r}", flush=True)
        progress.finish()
        return ctx.reference

    n = int(cfg["n"])
    chunk_size = int(cfg.get("chunk_size", 1_000_000))
    tag = scenario_tag("reference", n=n)
    progress.start_task(f"N={n}", 1)
    result = reference_value(ctx.scenario, n, rng_for(ctx.seed, tag), chunk_size=chunk_size)
    progress.update()
    se = math.sqrt(result.variance_estimate / n) if result.variance_estimate >= 0 else float("nan")
    progress.finish_task(f"value={result.point_estimate:.8f} se={se:.2e}")
    ctx.reference = result.point_estimate

    paths = build_run_paths(ctx.root, experiment, ctx.run_id)
    write_json(
        os.path.join(paths.tables_dir, "reference.json"),
        {
            "N": n,
            "chunk_size": chunk_size,
            "point_estimate": result.point_estimate,
            "variance_estimate": result.variance_estimate,
            "standard_error": se,
            "elapsed_time": result.elapsed_time,
        },
    )
    ctx.master.append(
        {
            "module": experiment,
            "method": "simple",
            "N": n,
            "replications": 1,
            "failures": 0,
            "reference": result.point_estimate,
            "mean_estimate": result.point_estimate,
            "bias": 0.0,
            "mcse": "",
            "variance": "",
            "variance_ratio": "",
            "mean_variance_estimate": result.variance_estimate,
            "elapsed_time": result.elapsed_time,
        }
    )
    make_manifest(ctx, experiment, [{"N": n, "hash": stable_hash_int(tag)}])
    progress.finish()
    return ctx.reference


def run_comparison_module(cfg: Dict, ctx: RunContext) -> None:
    experiment = "comparison"
    reference = cfg.get("reference", ctx.reference)
    if reference is None:
        raise ValueError("comparison needs a reference value: add a [reference] section or comparison.reference")
    reference = float(reference)
    n_grid = [int(n) for n in cfg["n_grid"]]
    replications = int(cfg["replications"])
    methods = tuple(cfg.get("methods", METHODS))

    progress = ModuleProgress(experiment, len(n_grid))
    rows: List[Dict] = []
    failures: List[Dict] = []
    spawn_keys = []
    for n in n_grid:
        for method in methods:
            spawn_keys.append({"N": n, "method": method, "hash": stable_hash_int(scenario_tag("comparison", method=method, n=n))})
        progress.start_task(f"N={n}", replications * len(methods))
        result = run_comparison(
            ctx.scenario,
            n,
            replications,
            reference,
            seed=ctx.seed,
            methods=methods,
            workers=ctx.workers,
            on_result=progress.update,
        )
        table = comparison_rows(result)
        failed = failure_rows(result)
        rows.extend(table)
        failures.extend(failed)
        for row in table:
            ctx.master.append({"module": experiment, **row})
        progress.finish_task(f"failures={len(failed)}")

    paths = build_run_paths(ctx.root, experiment, ctx.run_id)
    write_csv(os.path.join(paths.tables_dir, "comparison.csv"), rows)
    write_csv(os.path.join(paths.tables_dir, "failures.csv"), failures)
    make_manifest(ctx, experiment, spawn_keys)
    progress.finish()


def run_convergence_module(cfg: Dict, ctx: RunContext) -> None:
    experiment = "convergence"
    n = int(cfg["n"])
    stride = int(cfg.get("stride", 1))
    methods = tuple(cfg.get("methods", METHODS))
    progress = ModuleProgress(experiment, 1)
    progress.start_task(f"N={n}", len(methods))
    traces = convergence_traces(ctx.scenario, n, seed=ctx.seed, methods=methods)
    for _ in traces:
        progress.update()
    progress.finish_task()

    paths = build_run_paths(ctx.root, experiment, ctx.run_id)
    write_csv(os.path.join(paths.tables_dir, "traces.csv"), trace_rows(traces, stride))
    for method, trace in traces.items():
        final = trace.final()
        ctx.master.append(
            {
                "module": experiment,
                "method": method,
                "N": n,
                "replications": 1,
                "failures": 0,
                "reference": ctx.reference if ctx.reference is not None else "",
                "mean_estimate": final,
                "bias": final - ctx.reference if ctx.reference is not None else "",
                "mcse": "",
                "variance": "",
                "variance_ratio": "",
                "mean_variance_estimate": "",
                "elapsed_time": "",
            }
        )
    spawn_keys = [{"N": n, "method": m, "hash": stable_hash_int(scenario_tag("convergence", method=m, n=n))} for m in methods]
    make_manifest(ctx, experiment, spawn_keys)
    progress.finish()


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    config_path = os.path.abspath(args.config)
    with open(config_path, "rb") as f:
        cfg = tomllib.load(f)

    seed = args.seed if args.seed is not None else cfg["meta"]["base_seed"]
    run_id = args.run_id or compute_run_id(config_path, seed)
    root = os.path.abspath(args.root) if args.root else os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    ctx = RunContext(
        scenario=scenario_from_config(cfg),
        seed=seed,
        run_id=run_id,
        root=root,
        config_path=config_path,
    )
    master_path = os.path.join(root, "outputs", "master", run_id, "tables", "master_table.csv")
    ensure_dir(os.path.dirname(master_path))

    def checkpoint() -> None:
        write_csv(master_path, ctx.master)

    def run_if_present(key: str, fn) -> None:
        if key not in cfg:
            print(f"[{key}] SKIP: missing config section '{key}'", flush=True)
            return
        try:
            fn(cfg[key], ctx)
            checkpoint()
        except Exception:
            checkpoint()
            raise

    run_if_present("reference", run_reference_module)
    run_if_present("comparison", run_comparison_module)
    run_if_present("convergence", run_convergence_module)

    checkpoint()


if __name__ == "__main__":
    main()
