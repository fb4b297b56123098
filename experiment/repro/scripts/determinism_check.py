#!/usr/bin/env python3
"""Compare the CSV tables of two runs cell by cell, ignoring wall-clock columns."""
from __future__ import annotations

import argparse
import os
from typing import Dict, List, Optional, Sequence

from repro_utils import read_csv

DEFAULT_IGNORE = ("elapsed_time",)


def collect_tables(root: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for dirpath, _, filenames in os.walk(root):
        for name in filenames:
            if name.endswith(".csv") and name != "summary.csv":
                path = os.path.join(dirpath, name)
                out[os.path.relpath(path, root)] = path
    return out


def diff_tables(path_a: str, path_b: str, ignore: Sequence[str] = DEFAULT_IGNORE) -> List[str]:
    rows_a = read_csv(path_a)
    rows_b = read_csv(path_b)
    if len(rows_a) != len(rows_b):
        return [f"row count {len(rows_a)} != {len(rows_b)}"]
    diffs = []
    for i, (ra, rb) in enumerate(zip(rows_a, rows_b)):
        if set(ra) != set(rb):
            diffs.append(f"row {i}: columns differ")
            continue
        for key in ra:
            if key in ignore:
                continue
            if ra[key] != rb[key]:
                diffs.append(f"row {i} {key}: {ra[key]} != {rb[key]}")
    return diffs


def compare_dirs(dir_a: str, dir_b: str, ignore: Sequence[str] = DEFAULT_IGNORE) -> List[str]:
    a = collect_tables(dir_a)
    b = collect_tables(dir_b)
    problems = []
    for rel in sorted(set(a) | set(b)):
        if rel not in a or rel not in b:
            problems.append(f"MISSING {rel}")
            continue
        for d in diff_tables(a[rel], b[rel], ignore):
            problems.append(f"DIFF {rel}: {d}")
    return problems


def main(argv: Optional[List[str]] = None) -> None:
    parser = argparse.ArgumentParser(description="Determinism check: compare two run output directories")
    parser.add_argument("--dir-a", required=True, help="first directory")
    parser.add_argument("--dir-b", required=True, help="second directory")
    parser.add_argument("--ignore", nargs="*", default=list(DEFAULT_IGNORE), help="columns to skip")
    args = parser.parse_args(argv)

    problems = compare_dirs(args.dir_a, args.dir_b, args.ignore)
    for line in problems:
        print(line)
    if not problems:
        print("OK: tables match")
        raise SystemExit(0)
    raise SystemExit(2)


if __name__ == "__main__":
    main()
