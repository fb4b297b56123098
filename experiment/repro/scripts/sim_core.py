#!/usr/bin/env python3
"""Core estimators for the population response probability.

theta = E[ logistic(alpha + b + beta * x) ] with b ~ clinic effect and
x ~ covariate drawn independently. Three estimators share the same draw and
result conventions:

  simple           plain average of p = logistic(z) under nominal draws
  control_variate  mean(Y) - c * (mean(U) - mu_U), c = Cov(Y,U) / Var(U)
  importance       self-normalized sum(w p) / sum(w), w = f / g
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Optional, Tuple

import numpy as np
from numpy.random import Generator

from dists import DistributionSpec, EstimatorError, check_sample_size

DEGENERATE_TOL = 1e-12
DEFAULT_CONTROL_MEAN_SAMPLES = 500_000
CONTROL_MEAN_MODES = ("auto", "analytic", "monte_carlo")


class DegenerateControlVariate(EstimatorError):
    """Var(U) is (numerically) zero, so the optimal coefficient is undefined."""


class ZeroWeightMass(EstimatorError):
    """Every importance weight vanished."""


class ProposalSupportViolation(EstimatorError):
    """A proposal density is zero where the nominal density is positive."""


@dataclass(frozen=True)
class ModelParams:
    alpha: float
    beta: float


@dataclass(frozen=True)
class EstimatorResult:
    method: str
    n: int
    point_estimate: float
    variance_estimate: float
    elapsed_time: float


# ---------- Linear predictor and link ----------

def predictor(b, x, params: ModelParams):
    return params.alpha + b + params.beta * x


def link_inverse(z):
    """Logistic function, evaluated on the sign branch that cannot overflow."""
    arr = np.asarray(z, dtype=float)
    flat = np.atleast_1d(arr)
    out = np.empty_like(flat)
    pos = flat >= 0
    out[pos] = 1.0 / (1.0 + np.exp(-flat[pos]))
    ez = np.exp(flat[~pos])
    out[~pos] = ez / (1.0 + ez)
    if arr.ndim == 0:
        return float(out[0])
    return out.reshape(arr.shape)


# ---------- Control variates ----------

class ControlVariate:
    """Auxiliary statistic U(b, x) correlated with the response probability."""

    name = "control"

    def values(self, b: np.ndarray, x: np.ndarray, params: ModelParams) -> np.ndarray:
        raise NotImplementedError

    def expectation(self, scenario: "Scenario") -> Optional[float]:
        return None


class LinearPredictorControl(ControlVariate):
    """U = alpha + b + beta * x; E[U] is closed form when both means are."""

    name = "linear_predictor"

    def values(self, b, x, params):
        return predictor(b, x, params)

    def expectation(self, scenario):
        mb = scenario.nominal_clinic.analytic_mean()
        mx = scenario.nominal_covariate.analytic_mean()
        if mb is None or mx is None:
            return None
        return predictor(mb, mx, scenario.params)

    def __eq__(self, other) -> bool:
        return type(other) is type(self)

    def __hash__(self) -> int:
        return hash(self.name)


class TaylorControl(ControlVariate):
    # first-order expansion of the logistic around z0 = predictor at the nominal means
    name = "taylor"

    def __init__(self, z0: float) -> None:
        self.z0 = float(z0)
        self.s0 = link_inverse(self.z0)
        self.slope = self.s0 * (1.0 - self.s0)

    @classmethod
    def around_means(cls, params: ModelParams, clinic: DistributionSpec, covariate: DistributionSpec) -> "TaylorControl":
        mb = clinic.analytic_mean()
        mx = covariate.analytic_mean()
        if mb is None or mx is None:
            raise ValueError("taylor control needs analytic means for both nominal distributions")
        return cls(predictor(mb, mx, params))

    def values(self, b, x, params):
        return self.s0 + self.slope * (predictor(b, x, params) - self.z0)

    def expectation(self, scenario):
        mb = scenario.nominal_clinic.analytic_mean()
        mx = scenario.nominal_covariate.analytic_mean()
        if mb is None or mx is None:
            return None
        return self.s0 + self.slope * (predictor(mb, mx, scenario.params) - self.z0)

    def __eq__(self, other) -> bool:
        return type(other) is type(self) and other.z0 == self.z0

    def __hash__(self) -> int:
        return hash((self.name, self.z0))


@dataclass(frozen=True)
class Scenario:
    params: ModelParams
    nominal_clinic: DistributionSpec
    nominal_covariate: DistributionSpec
    proposal_clinic: DistributionSpec
    proposal_covariate: DistributionSpec
    control: ControlVariate = LinearPredictorControl()
    control_mean_mode: str = "auto"
    control_mean_samples: int = DEFAULT_CONTROL_MEAN_SAMPLES

    def __post_init__(self) -> None:
        if self.control_mean_mode not in CONTROL_MEAN_MODES:
            raise ValueError(f"control_mean_mode must be one of {CONTROL_MEAN_MODES}")
        check_sample_size(self.control_mean_samples)


# ---------- Draws ----------

def draw_nominal(scenario: Scenario, n: int, rng: Generator) -> Tuple[np.ndarray, np.ndarray]:
    b = scenario.nominal_clinic.sample(rng, n)
    x = scenario.nominal_covariate.sample(rng, n)
    return b, x


def draw_proposal(scenario: Scenario, n: int, rng: Generator) -> Tuple[np.ndarray, np.ndarray]:
    b = scenario.proposal_clinic.sample(rng, n)
    x = scenario.proposal_covariate.sample(rng, n)
    return b, x


def response(b: np.ndarray, x: np.ndarray, params: ModelParams) -> np.ndarray:
    return link_inverse(predictor(b, x, params))


def importance_weights(scenario: Scenario, b: np.ndarray, x: np.ndarray) -> np.ndarray:
    """w = f_b f_x / (g_b g_x), formed from log-densities so far-tail ratios survive underflow."""
    b = np.asarray(b, dtype=float)
    x = np.asarray(x, dtype=float)
    lf_b = scenario.nominal_clinic.log_density(b)
    lf_x = scenario.nominal_covariate.log_density(x)
    lg_b = scenario.proposal_clinic.log_density(b)
    lg_x = scenario.proposal_covariate.log_density(x)
    # support is checked per variable; a zero in the other factor must not mask it
    for name, values, lf, lg in (("b", b, lf_b, lg_b), ("x", x, lf_x, lg_x)):
        bad = (lg == -np.inf) & (lf > -np.inf)
        if bad.any():
            idx = int(np.flatnonzero(bad)[0])
            raise ProposalSupportViolation(
                f"proposal density for {name} is zero at draw {idx} ({name}={values[idx]:.6g}) "
                "where the nominal density is positive"
            )
    inside = (lf_b > -np.inf) & (lf_x > -np.inf)
    w = np.zeros(b.shape)
    with np.errstate(invalid="ignore"):
        log_w = lf_b + lf_x - lg_b - lg_x
    w[inside] = np.exp(log_w[inside])
    return w


# ---------- Statistics on fixed samples ----------

def simple_from_samples(p: np.ndarray) -> Tuple[float, float]:
    n = p.size
    mean = float(p.mean())
    var = float(p.var(ddof=1)) if n > 1 else float("nan")
    return mean, var


def control_variate_from_samples(y: np.ndarray, u: np.ndarray, mu_u: float) -> Tuple[float, float]:
    n = y.size
    if n < 2:
        raise DegenerateControlVariate("control variate needs at least two draws to estimate Var(U)")
    y_bar = float(y.mean())
    u_bar = float(u.mean())
    dy = y - y_bar
    du = u - u_bar
    var_y = float(np.dot(dy, dy)) / (n - 1)
    var_u = float(np.dot(du, du)) / (n - 1)
    cov_yu = float(np.dot(dy, du)) / (n - 1)
    if var_u <= DEGENERATE_TOL * (1.0 + u_bar * u_bar):
        raise DegenerateControlVariate(f"Var(U)={var_u:.3g} is numerically zero")
    c_star = cov_yu / var_u
    point = y_bar - c_star * (u_bar - mu_u)
    variance = var_y - cov_yu * cov_yu / var_u
    return point, variance


def importance_from_samples(w: np.ndarray, p: np.ndarray) -> Tuple[float, float]:
    w_sum = float(w.sum())
    if w_sum <= 0:
        raise ZeroWeightMass(f"all {w.size} importance weights are zero")
    wp = w * p
    point = float(wp.sum()) / w_sum
    m1 = float(wp.mean())
    m2 = float(np.mean(wp * wp))
    variance = (m2 - m1 * m1) / w_sum
    return point, variance


# ---------- Estimators ----------

def _merge_moments(n_a: int, mean_a: float, m2_a: float, n_b: int, mean_b: float, m2_b: float) -> Tuple[int, float, float]:
    n = n_a + n_b
    delta = mean_b - mean_a
    mean = mean_a + delta * n_b / n
    m2 = m2_a + m2_b + delta * delta * n_a * n_b / n
    return n, mean, m2


def simple_estimate(scenario: Scenario, n: int, rng: Generator, chunk_size: Optional[int] = None) -> EstimatorResult:
    n = check_sample_size(n)
    if chunk_size is not None and chunk_size < 1:
        raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
    start = time.perf_counter()
    if chunk_size is None or n <= chunk_size:
        b, x = draw_nominal(scenario, n, rng)
        mean, var = simple_from_samples(response(b, x, scenario.params))
    else:
        chunk_size = int(chunk_size)
        count, mean, m2 = 0, 0.0, 0.0
        remaining = n
        while remaining > 0:
            size = min(chunk_size, remaining)
            b, x = draw_nominal(scenario, size, rng)
            p = response(b, x, scenario.params)
            c_mean = float(p.mean())
            c_m2 = float(np.sum((p - c_mean) ** 2))
            count, mean, m2 = _merge_moments(count, mean, m2, size, c_mean, c_m2)
            remaining -= size
        var = m2 / (count - 1) if count > 1 else float("nan")
    return EstimatorResult("simple", n, mean, var, time.perf_counter() - start)


def approximate_control_mean(scenario: Scenario, rng: Generator, n: Optional[int] = None) -> float:
    n = check_sample_size(scenario.control_mean_samples if n is None else n)
    b, x = draw_nominal(scenario, n, rng)
    return float(np.mean(scenario.control.values(b, x, scenario.params)))


def resolve_control_mean(scenario: Scenario, rng: Generator) -> float:
    """E[U]: closed form when the control offers one, else an independent MC pass."""
    if scenario.control_mean_mode != "monte_carlo":
        exact = scenario.control.expectation(scenario)
        if exact is not None:
            return float(exact)
        if scenario.control_mean_mode == "analytic":
            raise ValueError(f"control {scenario.control.name!r} has no closed-form expectation")
    return approximate_control_mean(scenario, rng)


def control_variate_estimate(
    scenario: Scenario,
    n: int,
    rng: Generator,
    control_mean: Optional[float] = None,
) -> EstimatorResult:
    n = check_sample_size(n)
    start = time.perf_counter()
    if control_mean is None:
        # separate child stream keeps the mu_U pass independent of the estimation draws
        control_mean = resolve_control_mean(scenario, rng.spawn(1)[0])
    b, x = draw_nominal(scenario, n, rng)
    y = response(b, x, scenario.params)
    u = scenario.control.values(b, x, scenario.params)
    point, var = control_variate_from_samples(y, u, control_mean)
    return EstimatorResult("control_variate", n, point, var, time.perf_counter() - start)


def importance_estimate(scenario: Scenario, n: int, rng: Generator) -> EstimatorResult:
    n = check_sample_size(n)
    start = time.perf_counter()
    b, x = draw_proposal(scenario, n, rng)
    w = importance_weights(scenario, b, x)
    point, var = importance_from_samples(w, response(b, x, scenario.params))
    return EstimatorResult("importance", n, point, var, time.perf_counter() - start)


def reference_value(scenario: Scenario, n: int, rng: Generator, chunk_size: int = 1_000_000) -> EstimatorResult:
    return simple_estimate(scenario, n, rng, chunk_size=chunk_size)

