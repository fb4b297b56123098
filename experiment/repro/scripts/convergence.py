#!/usr/bin/env python3
"""Running estimates along a single sample path, one linear pass per method."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, List, Optional, Sequence

import numpy as np

from dists import check_sample_size
from experiments import METHODS, rng_for, scenario_tag
from sim_core import (
    DEGENERATE_TOL,
    DegenerateControlVariate,
    Scenario,
    ZeroWeightMass,
    draw_nominal,
    draw_proposal,
    importance_weights,
    resolve_control_mean,
    response,
)


@dataclass(frozen=True)
class ConvergenceTrace:
    method: str
    estimates: np.ndarray

    def __len__(self) -> int:
        return self.estimates.size

    def final(self) -> float:
        return float(self.estimates[-1])


def running_simple(p: np.ndarray) -> np.ndarray:
    k = np.arange(1, p.size + 1, dtype=float)
    return np.cumsum(p) / k


def running_control_variate(y: np.ndarray, u: np.ndarray, mu_u: float) -> np.ndarray:
    """CV estimate at every prefix from cumulative sums of y, u, y*u and u*u.

    Prefix 1 has no covariance and reports y[0]. Later prefixes whose partial
    Var(U) is numerically zero fall back to c = 0 (the running mean).
    """
    n = y.size
    if n == 0:
        return np.empty(0, dtype=float)
    # shift so the moment differences below do not cancel catastrophically
    y0 = float(y[0])
    ys = y - y0
    us = u - mu_u
    k = np.arange(1, n + 1, dtype=float)
    s_y = np.cumsum(ys)
    s_u = np.cumsum(us)
    s_yu = np.cumsum(ys * us)
    s_uu = np.cumsum(us * us)

    y_bar = s_y / k
    u_bar = s_u / k
    out = np.empty(n, dtype=float)
    out[0] = y0
    if n == 1:
        return out

    km1 = k[1:] - 1.0
    cov = (s_yu[1:] - s_y[1:] * u_bar[1:]) / km1
    var_u = (s_uu[1:] - s_u[1:] * u_bar[1:]) / km1
    # u_bar here is mean(u) - mu_u; add mu_u back for the tolerance scale
    scale = 1.0 + (u_bar[1:] + mu_u) ** 2
    ok = var_u > DEGENERATE_TOL * scale
    if not ok[-1]:
        raise DegenerateControlVariate(f"Var(U)={var_u[-1]:.3g} over the full path is numerically zero")
    c = np.zeros(n - 1, dtype=float)
    np.divide(cov, var_u, out=c, where=ok)
    out[1:] = y0 + y_bar[1:] - c * u_bar[1:]
    return out


def running_importance(w: np.ndarray, p: np.ndarray) -> np.ndarray:
    s_w = np.cumsum(w)
    if s_w.size and s_w[-1] <= 0:
        raise ZeroWeightMass(f"all {w.size} importance weights are zero")
    s_wp = np.cumsum(w * p)
    out = np.full(w.size, np.nan)
    np.divide(s_wp, s_w, out=out, where=s_w > 0)
    return out


def trace_for(method: str, scenario: Scenario, n: int, rng, control_mean: Optional[float] = None) -> ConvergenceTrace:
    if method == "simple":
        b, x = draw_nominal(scenario, n, rng)
        est = running_simple(response(b, x, scenario.params))
    elif method == "control_variate":
        if control_mean is None:
            control_mean = resolve_control_mean(scenario, rng.spawn(1)[0])
        b, x = draw_nominal(scenario, n, rng)
        y = response(b, x, scenario.params)
        u = scenario.control.values(b, x, scenario.params)
        est = running_control_variate(y, u, control_mean)
    elif method == "importance":
        b, x = draw_proposal(scenario, n, rng)
        w = importance_weights(scenario, b, x)
        est = running_importance(w, response(b, x, scenario.params))
    else:
        raise ValueError(f"Unknown method: {method!r}")
    return ConvergenceTrace(method=method, estimates=est)


def convergence_traces(
    scenario: Scenario,
    n: int,
    seed: Optional[int] = None,
    methods: Sequence[str] = METHODS,
) -> Dict[str, ConvergenceTrace]:
    n = check_sample_size(n)
    control_mean = None
    if "control_variate" in methods:
        control_mean = resolve_control_mean(scenario, rng_for(seed, scenario_tag("control_mean", n=n)))
    traces: Dict[str, ConvergenceTrace] = {}
    for method in methods:
        rng = rng_for(seed, scenario_tag("convergence", method=method, n=n))
        traces[method] = trace_for(method, scenario, n, rng, control_mean)
    return traces


def trace_rows(traces: Dict[str, ConvergenceTrace], stride: int = 1) -> List[Dict]:
    if not traces:
        return []
    stride = max(1, int(stride))
    n = max(len(t) for t in traces.values())
    idx = list(range(stride - 1, n, stride))
    if not idx or idx[-1] != n - 1:
        idx.append(n - 1)
    rows = []
    for i in idx:
        row: Dict = {"k": i + 1}
        for method, trace in traces.items():
            row[method] = float(trace.estimates[i]) if i < len(trace) else float("nan")
        rows.append(row)
    return rows
