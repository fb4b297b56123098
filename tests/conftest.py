"""Pytest configuration and fixtures for the estimator tests."""

import os
from dataclasses import dataclass

import numpy as np
import pytest

from dists import Uniform
from experiments import default_scenario, rng_for
from sim_core import ControlVariate, reference_value

CONFIG_DIR = os.path.abspath(
    os.path.join(os.path.dirname(__file__), "..", "experiment", "repro", "configs")
)


class ConstantControl(ControlVariate):
    """Zero-variance auxiliary statistic."""

    name = "constant"

    def values(self, b, x, params):
        return np.full_like(b, 3.0)

    def expectation(self, scenario):
        return 3.0


class NoClosedFormControl(ControlVariate):
    """U = b * x, with no closed-form expectation offered."""

    name = "product"

    def values(self, b, x, params):
        return b * x


@dataclass(frozen=True)
class DeadUniform(Uniform):
    """Samples like a uniform but reports zero density everywhere."""

    def log_density(self, x):
        return np.full(np.shape(x), -np.inf)


@pytest.fixture
def seed():
    """Random seed for reproducibility."""
    return 42


@pytest.fixture
def scenario():
    """alpha=-2, beta=0.5, LogNormal(-1, 0.5) clinic effect, Gamma(2, 2) covariate."""
    return default_scenario()


@pytest.fixture(scope="session")
def reference():
    """Large-N simple estimate of the default scenario's probability."""
    result = reference_value(default_scenario(), 2_000_000, rng_for(2024, "reference"), chunk_size=500_000)
    return result.point_estimate


@pytest.fixture
def smoke_config():
    return os.path.join(CONFIG_DIR, "smoke.toml")
