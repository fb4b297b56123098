#!/usr/bin/env python3
"""Compute only the large-N reference value."""
from __future__ import annotations

import argparse
import os
from typing import List, Optional

import tomllib

from experiments import scenario_from_config
from repro_utils import compute_run_id, write_csv
from run_sim import RunContext, run_reference_module


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compute the reference value")
    parser.add_argument("--config", required=True, help="TOML config path")
    parser.add_argument("--seed", type=int, help="override base seed")
    parser.add_argument("--run-id", help="override run ID")
    parser.add_argument("--n", type=int, help="override reference sample size")
    parser.add_argument("--root", help="output root (default: the repro directory)")
    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> None:
    args = parse_args(argv)
    config_path = os.path.abspath(args.config)
    with open(config_path, "rb") as f:
        cfg = tomllib.load(f)

    seed = args.seed if args.seed is not None else cfg["meta"]["base_seed"]
    run_id = args.run_id or compute_run_id(config_path, seed)
    root = os.path.abspath(args.root) if args.root else os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))

    section = dict(cfg["reference"])
    if args.n is not None:
        section.pop("value", None)
        section["n"] = args.n

    ctx = RunContext(
        scenario=scenario_from_config(cfg),
        seed=seed,
        run_id=run_id,
        root=root,
        config_path=config_path,
    )
    run_reference_module(section, ctx)

    master_path = os.path.join(root, "outputs", "master", run_id, "tables", "master_table.csv")
    write_csv(master_path, ctx.master)


if __name__ == "__main__":
    main()
