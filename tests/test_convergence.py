"""Tests for running (cumulative) estimates."""

import dataclasses
import math

import numpy as np
import pytest

from conftest import ConstantControl
from convergence import (
    convergence_traces,
    running_control_variate,
    running_importance,
    running_simple,
    trace_for,
    trace_rows,
)
from dists import InvalidSampleSize, Uniform
from experiments import rng_for
from sim_core import (
    DegenerateControlVariate,
    ZeroWeightMass,
    control_variate_estimate,
    control_variate_from_samples,
    importance_estimate,
    resolve_control_mean,
    simple_estimate,
)


class TestRunningStatistics:
    """Cumulative-sum traces on fixed arrays."""

    def test_running_simple(self):
        p = np.array([0.2, 0.4, 0.9, 0.1])
        np.testing.assert_allclose(running_simple(p), [0.2, 0.3, 0.5, 0.4])

    def test_running_cv_first_entry_is_raw_response(self):
        y = np.array([0.31, 0.2, 0.25])
        u = np.array([-1.0, -1.5, -1.2])
        out = running_control_variate(y, u, mu_u=-1.1)
        assert out[0] == 0.31

    def test_running_cv_single_sample(self):
        out = running_control_variate(np.array([0.4]), np.array([1.0]), mu_u=0.0)
        np.testing.assert_array_equal(out, [0.4])

    def test_running_cv_matches_batch_at_every_prefix(self):
        rng = rng_for(3, "prefix")
        u = rng.normal(size=60)
        y = 0.3 * u + rng.normal(scale=0.1, size=60)
        out = running_control_variate(y, u, mu_u=0.05)
        for k in (2, 5, 17, 60):
            point, _ = control_variate_from_samples(y[:k], u[:k], 0.05)
            assert out[k - 1] == pytest.approx(point, rel=1e-9, abs=1e-12)

    def test_running_cv_degenerate_prefix_falls_back_to_mean(self):
        y = np.array([0.1, 0.3, 0.5, 0.2])
        u = np.array([1.0, 1.0, 2.0, 0.5])
        out = running_control_variate(y, u, mu_u=1.0)
        assert out[1] == pytest.approx(0.2)

    def test_running_cv_constant_path_raises(self):
        with pytest.raises(DegenerateControlVariate):
            running_control_variate(np.array([0.1, 0.3, 0.5]), np.full(3, 2.0), mu_u=2.0)

    def test_running_importance(self):
        w = np.array([0.0, 2.0, 1.0])
        p = np.array([0.5, 0.25, 0.7])
        out = running_importance(w, p)
        assert math.isnan(out[0])
        np.testing.assert_allclose(out[1:], [0.25, (0.5 + 0.7) / 3.0])

    def test_running_importance_zero_mass(self):
        with pytest.raises(ZeroWeightMass):
            running_importance(np.zeros(4), np.full(4, 0.5))

    def test_linear_time(self):
        p = np.full(1_000_000, 0.25)
        out = running_simple(p)
        assert out.size == p.size
        assert out[-1] == pytest.approx(0.25)


class TestTraceMatchesBatch:
    """The last running value equals the batch estimate over the same draws."""

    def test_simple(self, scenario, seed):
        trace = trace_for("simple", scenario, 5000, rng_for(seed, "path"))
        batch = simple_estimate(scenario, 5000, rng_for(seed, "path"))
        assert len(trace) == 5000
        assert trace.final() == pytest.approx(batch.point_estimate, rel=1e-10)

    def test_control_variate(self, scenario, seed):
        mu = resolve_control_mean(scenario, rng_for(seed, "mu"))
        trace = trace_for("control_variate", scenario, 5000, rng_for(seed, "path"), control_mean=mu)
        batch = control_variate_estimate(scenario, 5000, rng_for(seed, "path"), control_mean=mu)
        assert trace.final() == pytest.approx(batch.point_estimate, rel=1e-9)

    def test_importance(self, scenario, seed):
        trace = trace_for("importance", scenario, 5000, rng_for(seed, "path"))
        batch = importance_estimate(scenario, 5000, rng_for(seed, "path"))
        assert trace.final() == pytest.approx(batch.point_estimate, rel=1e-10)

    def test_unknown_method(self, scenario, seed):
        with pytest.raises(ValueError):
            trace_for("antithetic", scenario, 10, rng_for(seed, "path"))


class TestConvergenceTraces:
    """Seeded traces for all methods."""

    def test_all_methods(self, scenario, seed, reference):
        traces = convergence_traces(scenario, 20_000, seed=seed)
        assert set(traces) == {"simple", "control_variate", "importance"}
        for trace in traces.values():
            assert len(trace) == 20_000
            assert abs(trace.final() - reference) < 0.01

    def test_seeded_traces_repeat(self, scenario, seed):
        a = convergence_traces(scenario, 500, seed=seed)
        b = convergence_traces(scenario, 500, seed=seed)
        for method in a:
            np.testing.assert_array_equal(a[method].estimates, b[method].estimates)

    def test_methods_use_independent_paths(self, scenario, seed):
        traces = convergence_traces(scenario, 200, seed=seed, methods=("simple", "control_variate"))
        assert traces["simple"].estimates[0] != traces["control_variate"].estimates[0]

    def test_degenerate_control(self, scenario, seed):
        degenerate = dataclasses.replace(scenario, control=ConstantControl())
        with pytest.raises(DegenerateControlVariate):
            convergence_traces(degenerate, 100, seed=seed, methods=("control_variate",))

    def test_zero_weight_mass(self, scenario, seed):
        disjoint = dataclasses.replace(scenario, nominal_clinic=Uniform(0.0, 1.0), proposal_clinic=Uniform(2.0, 3.0))
        with pytest.raises(ZeroWeightMass):
            convergence_traces(disjoint, 100, seed=seed, methods=("importance",))

    def test_invalid_sample_size(self, scenario, seed):
        with pytest.raises(InvalidSampleSize):
            convergence_traces(scenario, 0, seed=seed)

    def test_trace_rows_stride_keeps_final(self, scenario, seed):
        traces = convergence_traces(scenario, 105, seed=seed)
        rows = trace_rows(traces, stride=10)
        assert [r["k"] for r in rows][:3] == [10, 20, 30]
        assert rows[-1]["k"] == 105
        assert rows[-1]["importance"] == traces["importance"].final()
        assert set(rows[0]) == {"k", "simple", "control_variate", "importance"}
