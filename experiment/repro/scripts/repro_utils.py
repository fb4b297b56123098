#!/usr/bin/env python3
"""Run IDs, manifests and table writers for reproducible estimator runs."""
from __future__ import annotations

import csv
import hashlib
import json
import os
import platform
import subprocess
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import numpy as np

# recorded in every manifest; REPRO_WORKERS changes scheduling, never results
MANIFEST_ENV_VARS = (
    "OMP_NUM_THREADS",
    "MKL_NUM_THREADS",
    "OPENBLAS_NUM_THREADS",
    "REPRO_WORKERS",
)


def compute_config_hash(config_path: str) -> str:
    with open(config_path, "rb") as f:
        return hashlib.sha256(f.read()).hexdigest()


def compute_run_id(config_path: str, base_seed: int, prefix: str = "run") -> str:
    stem = os.path.splitext(os.path.basename(config_path))[0]
    return f"{prefix}_{stem}_seed{base_seed}_hash{compute_config_hash(config_path)[:8]}"


def _git(repo_root: str, *args: str) -> Optional[str]:
    try:
        out = subprocess.check_output(["git", "-C", repo_root, *args], stderr=subprocess.DEVNULL)
    except (OSError, subprocess.CalledProcessError):
        return None
    return out.decode("utf-8").strip()


def environment_info(repo_root: str) -> Dict[str, Any]:
    """Interpreter, numpy, git and host details for a manifest."""
    commit = status = None
    if os.path.isdir(os.path.join(repo_root, ".git")):
        commit = _git(repo_root, "rev-parse", "HEAD")
        status = _git(repo_root, "status", "--porcelain")
    return {
        "versions": {"python": platform.python_version(), "numpy": np.__version__},
        "git": {"commit": commit, "dirty": bool(status) if status is not None else None},
        "platform": {
            "system": platform.system(),
            "release": platform.release(),
            "machine": platform.machine(),
        },
        "thread_env": {key: os.environ.get(key) for key in MANIFEST_ENV_VARS},
    }


def ensure_dir(path: str) -> None:
    if path:
        os.makedirs(path, exist_ok=True)


def write_json(path: str, payload: Dict[str, Any]) -> None:
    ensure_dir(os.path.dirname(path))
    with open(path, "w", encoding="utf-8") as f:
        json.dump(payload, f, indent=2, sort_keys=True)


def write_csv(path: str, rows: List[Dict]) -> None:
    # header comes from the first row; empty tables are not written
    if not rows:
        return
    ensure_dir(os.path.dirname(path))
    with open(path, "w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=list(rows[0]))
        writer.writeheader()
        writer.writerows(rows)


def read_csv(path: str) -> List[Dict[str, str]]:
    with open(path, newline="") as f:
        return list(csv.DictReader(f))


SUMMARY_HEADER = ["run_id", "config", "base_seed", "tables_path", "logs_path", "notes"]


def append_summary(path: str, row: List[str]) -> None:
    ensure_dir(os.path.dirname(path))
    is_new = not os.path.exists(path)
    with open(path, "a", newline="") as f:
        writer = csv.writer(f)
        if is_new:
            writer.writerow(SUMMARY_HEADER)
        writer.writerow(row)


@dataclass
class RunPaths:
    tables_dir: str
    logs_dir: str


def build_run_paths(root: str, experiment: str, run_id: str) -> RunPaths:
    return RunPaths(
        tables_dir=os.path.join(root, "outputs", experiment, run_id, "tables"),
        logs_dir=os.path.join(root, "logs", run_id),
    )


def write_manifest(
    manifest_path: str,
    *,
    run_id: str,
    config_path: str,
    base_seed: Optional[int],
    spawn_keys: Optional[List[Any]],
    command: List[str],
    repo_root: str,
    scenario: Optional[Dict[str, Any]] = None,
) -> None:
    payload: Dict[str, Any] = {
        "run_id": run_id,
        "config_path": config_path,
        "config_hash": compute_config_hash(config_path),
        "base_seed": base_seed,
        "spawn_keys": spawn_keys,
        "scenario": scenario,
        "command": command,
    }
    payload.update(environment_info(repo_root))
    write_json(manifest_path, payload)
