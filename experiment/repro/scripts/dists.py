#!/usr/bin/env python3
"""Parameterized sampling distributions for the clinic effect and covariate."""
from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

import numpy as np
from numpy.random import Generator

LOG_SQRT_2PI = 0.5 * math.log(2.0 * math.pi)


class EstimatorError(Exception):
    """Recoverable estimation failure; the harness records it per replication."""


class InvalidSampleSize(EstimatorError, ValueError):
    """Raised when fewer than one draw is requested."""


def check_sample_size(n: int) -> int:
    if n < 1:
        raise InvalidSampleSize(f"sample size must be >= 1, got {n}")
    return int(n)


class DistributionSpec:
    """Sampler + density pair. Subclasses override `_draw` and `log_density`."""

    family = "base"

    def sample(self, rng: Generator, n: int) -> np.ndarray:
        return self._draw(rng, check_sample_size(n))

    def _draw(self, rng: Generator, n: int) -> np.ndarray:
        raise NotImplementedError

    def log_density(self, x: np.ndarray) -> np.ndarray:
        raise NotImplementedError

    def density(self, x) -> np.ndarray:
        x = np.asarray(x, dtype=float)
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.exp(self.log_density(x))

    def analytic_mean(self) -> Optional[float]:
        return None


@dataclass(frozen=True)
class LogNormal(DistributionSpec):
    meanlog: float
    sdlog: float

    family = "lognormal"

    def __post_init__(self) -> None:
        if not self.sdlog > 0:
            raise ValueError("sdlog must be positive")

    def _draw(self, rng: Generator, n: int) -> np.ndarray:
        return rng.lognormal(mean=self.meanlog, sigma=self.sdlog, size=n)

    def log_density(self, x: np.ndarray) -> np.ndarray:
        pos = x > 0
        safe = np.where(pos, x, 1.0)
        logx = np.log(safe)
        z = (logx - self.meanlog) / self.sdlog
        out = -0.5 * z * z - logx - math.log(self.sdlog) - LOG_SQRT_2PI
        return np.where(pos, out, -np.inf)

    def analytic_mean(self) -> Optional[float]:
        return math.exp(self.meanlog + 0.5 * self.sdlog ** 2)


@dataclass(frozen=True)
class Gamma(DistributionSpec):
    shape: float
    rate: float

    family = "gamma"

    def __post_init__(self) -> None:
        if not (self.shape > 0 and self.rate > 0):
            raise ValueError("gamma shape and rate must be positive")

    def _draw(self, rng: Generator, n: int) -> np.ndarray:
        return rng.gamma(shape=self.shape, scale=1.0 / self.rate, size=n)

    def log_density(self, x: np.ndarray) -> np.ndarray:
        pos = x > 0
        safe = np.where(pos, x, 1.0)
        out = (
            self.shape * math.log(self.rate)
            + (self.shape - 1.0) * np.log(safe)
            - self.rate * safe
            - math.lgamma(self.shape)
        )
        return np.where(pos, out, -np.inf)

    def analytic_mean(self) -> Optional[float]:
        return self.shape / self.rate


@dataclass(frozen=True)
class Normal(DistributionSpec):
    mean: float
    sd: float

    family = "normal"

    def __post_init__(self) -> None:
        if not self.sd > 0:
            raise ValueError("sd must be positive")

    def _draw(self, rng: Generator, n: int) -> np.ndarray:
        return rng.normal(loc=self.mean, scale=self.sd, size=n)

    def log_density(self, x: np.ndarray) -> np.ndarray:
        z = (x - self.mean) / self.sd
        return -0.5 * z * z - math.log(self.sd) - LOG_SQRT_2PI

    def analytic_mean(self) -> Optional[float]:
        return self.mean


@dataclass(frozen=True)
class Uniform(DistributionSpec):
    low: float
    high: float

    family = "uniform"

    def __post_init__(self) -> None:
        if not self.high > self.low:
            raise ValueError("uniform requires high > low")

    def _draw(self, rng: Generator, n: int) -> np.ndarray:
        return rng.uniform(self.low, self.high, size=n)

    def log_density(self, x: np.ndarray) -> np.ndarray:
        inside = (x >= self.low) & (x <= self.high)
        return np.where(inside, -math.log(self.high - self.low), -np.inf)

    def analytic_mean(self) -> Optional[float]:
        return 0.5 * (self.low + self.high)


FAMILIES = {
    "lognormal": LogNormal,
    "gamma": Gamma,
    "normal": Normal,
    "uniform": Uniform,
}


def build_spec(table: Dict[str, Any]) -> DistributionSpec:
    params = dict(table)
    family = str(params.pop("family", "")).lower()
    if family not in FAMILIES:
        raise ValueError(f"Unknown distribution family: {family!r}")
    try:
        return FAMILIES[family](**{k: float(v) for k, v in params.items()})
    except TypeError as exc:
        raise ValueError(f"Bad parameters for {family}: {sorted(params)}") from exc


def describe(spec: DistributionSpec) -> str:
    fields = getattr(spec, "__dataclass_fields__", {})
    args = ",".join(f"{k}={getattr(spec, k):.6g}" for k in fields)
    return f"{spec.family}({args})"


def sample(spec: DistributionSpec, n: int, rng: Generator) -> np.ndarray:
    return spec.sample(rng, n)


def density(spec: DistributionSpec, values) -> np.ndarray:
    return spec.density(values)
