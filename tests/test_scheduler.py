import math
import sys
from pathlib import Path

import numpy as np
import pytest
import torch

sys.path.insert(0, str(Path(__file__).parent.parent))

from sdlms.errors import (
    DegenerateStepCount,
    DivisionByZeroSigma,
    InvalidScheduleKind,
)
from sdlms.pipeline.scheduler_lms import (
    LMSDiscreteScheduler,
    get_betas,
    get_log_sigmas,
    get_sampling_sigmas,
    sigma_to_timestep,
    trapezoidal,
)


def _sd_log_sigmas():
    return get_log_sigmas(get_betas(1000, 0.00085, 0.012, "scaled_linear"))


def test_linear_betas():
    betas = get_betas(1000, 0.0001, 0.02, "linear")

    assert betas.shape == (1000,)
    assert betas[0] == pytest.approx(0.0001)
    assert betas[-1] == pytest.approx(0.02)
    assert np.allclose(np.diff(betas), (0.02 - 0.0001) / 999)


def test_scaled_linear_betas():
    betas = get_betas(1000, 0.00085, 0.012, "scaled_linear")

    assert betas[0] == pytest.approx(0.00085)
    assert betas[-1] == pytest.approx(0.012)
    assert np.allclose(np.diff(np.sqrt(betas)),
                       (math.sqrt(0.012) - math.sqrt(0.00085)) / 999)


def test_trained_betas_override_schedule():
    betas = get_betas(beta_schedule="unknown", trained_betas=[0.1, 0.2, 0.3])

    assert list(betas) == [0.1, 0.2, 0.3]


def test_betas_are_read_only():
    betas = get_betas()

    with pytest.raises(ValueError):
        betas[0] = 1.0


def test_unknown_schedule_raises():
    with pytest.raises(InvalidScheduleKind):
        get_betas(beta_schedule="cosine")

    with pytest.raises(ValueError):
        LMSDiscreteScheduler(beta_schedule="squaredcos_cap_v2")


@pytest.mark.parametrize("beta_schedule", ["linear", "scaled_linear"])
def test_log_sigmas_non_decreasing(beta_schedule):
    log_sigmas = get_log_sigmas(get_betas(beta_schedule=beta_schedule))

    assert log_sigmas.shape == (1000,)
    assert np.all(np.diff(log_sigmas) >= 0)


@pytest.mark.parametrize("steps", [2, 3, 20, 50, 1000])
def test_first_sigma_is_table_max(steps):
    log_sigmas = _sd_log_sigmas()
    sigmas = get_sampling_sigmas(log_sigmas, steps)

    assert sigmas[0] == pytest.approx(14.6146, abs=1e-3)
    assert sigmas[0] == pytest.approx(math.exp(log_sigmas.max()))


@pytest.mark.parametrize("steps", [2, 7, 20, 51])
def test_sampling_sigmas_shape(steps):
    sigmas = get_sampling_sigmas(_sd_log_sigmas(), steps)

    assert len(sigmas) == steps + 1
    assert sigmas[-1] == 0.0
    assert np.all(np.diff(sigmas) < 0)
    assert sigmas[-2] == pytest.approx(math.exp(_sd_log_sigmas()[0]))


@pytest.mark.parametrize("steps", [0, 1])
def test_degenerate_step_count(steps):
    with pytest.raises(DegenerateStepCount):
        get_sampling_sigmas(_sd_log_sigmas(), steps)

    scheduler = LMSDiscreteScheduler()
    with pytest.raises(ValueError):
        scheduler.set_timesteps(steps)


def test_sigma_to_timestep_on_table_entries():
    log_sigmas = _sd_log_sigmas()

    for t in [0, 1, 250, 500, 998, 999]:
        assert sigma_to_timestep(math.exp(log_sigmas[t]), log_sigmas) == t


def test_sigma_to_timestep_clamps_out_of_range():
    log_sigmas = _sd_log_sigmas()

    assert sigma_to_timestep(1e-4, log_sigmas) == 0
    assert sigma_to_timestep(100.0, log_sigmas) == 999


def test_sigma_to_timestep_is_monotonic():
    log_sigmas = _sd_log_sigmas()
    sigmas = np.exp(np.linspace(log_sigmas[0] - 1, log_sigmas[-1] + 1, 2000))

    timesteps = [sigma_to_timestep(s, log_sigmas) for s in sigmas]

    assert all(a <= b for a, b in zip(timesteps, timesteps[1:]))


def test_set_timesteps():
    scheduler = LMSDiscreteScheduler()
    scheduler.set_timesteps(20)

    assert scheduler.num_inference_steps == 20
    assert len(scheduler.sigmas) == 21
    assert scheduler.timesteps.dtype == torch.int64
    assert scheduler.timesteps.shape == (20,)
    assert scheduler.timesteps[0].item() == 999
    assert scheduler.timesteps[-1].item() == 0
    assert scheduler.init_noise_sigma == pytest.approx(14.6146, abs=1e-3)


def test_scheduler_config_registration():
    scheduler = LMSDiscreteScheduler(solver_order=2, beta_schedule="linear")

    assert scheduler.config.num_train_timesteps == 1000
    assert scheduler.config.solver_order == 2
    assert scheduler.config.beta_schedule == "linear"
    assert len(scheduler) == 1000


def test_only_epsilon_prediction():
    with pytest.raises(NotImplementedError):
        LMSDiscreteScheduler(prediction_type="v_prediction")


def test_trapezoidal_constant():
    assert trapezoidal(np.ones_like, 0.0, 2.0) == pytest.approx(2.0)
    assert trapezoidal(np.ones_like, 2.0, 0.0) == pytest.approx(-2.0)


def test_trapezoidal_polynomial():
    assert trapezoidal(lambda x: x**2, 0.0, 1.0) == pytest.approx(1 / 3, abs=1e-4)
    assert trapezoidal(lambda x: x**3 - x, -1.0, 2.0) == pytest.approx(
        2.25, abs=1e-4)


def test_trapezoidal_returns_best_estimate():
    # one refinement is never enough to converge, the two panel rule is kept
    assert trapezoidal(lambda x: x**2, 0.0, 1.0, max_refinements=1) == 0.375


def test_second_order_coefficients():
    scheduler = LMSDiscreteScheduler(solver_order=2)
    scheduler.set_timesteps(10)
    s0, s1, s2 = scheduler.sigmas[:3]

    coeffs = scheduler.get_lms_coefficients(1)

    expected_0 = ((s2 - s0)**2 - (s1 - s0)**2) / (2 * (s1 - s0))
    expected_1 = ((s2 - s1)**2) / (2 * (s0 - s1))
    assert len(coeffs) == 2
    assert coeffs[0] == pytest.approx(expected_0, abs=1e-6)
    assert coeffs[1] == pytest.approx(expected_1, abs=1e-6)


def test_coefficients_sum_to_interval():
    scheduler = LMSDiscreteScheduler(solver_order=4)
    scheduler.set_timesteps(25)

    for i in range(25):
        coeffs = scheduler.get_lms_coefficients(i)
        assert len(coeffs) == min(i + 1, 4)
        assert sum(coeffs) == pytest.approx(
            scheduler.sigmas[i + 1] - scheduler.sigmas[i], abs=1e-3)


@pytest.mark.parametrize("solver_order", [1, 2, 4, 8])
def test_derivative_history_is_bounded(solver_order):
    scheduler = LMSDiscreteScheduler(solver_order=solver_order)
    scheduler.set_timesteps(12)
    generator = torch.Generator().manual_seed(0)
    sample = torch.randn(1, 4, 8, 8, generator=generator) * scheduler.init_noise_sigma

    for i in range(12):
        model_output = torch.randn(1, 4, 8, 8, generator=generator)
        sample = scheduler.step(model_output, sample).prev_sample
        assert len(scheduler.derivatives) == min(solver_order, i + 1)
        assert sample.shape == (1, 4, 8, 8)


def test_first_order_is_euler():
    scheduler = LMSDiscreteScheduler(solver_order=1)
    scheduler.set_timesteps(10)
    generator = torch.Generator().manual_seed(0)
    sample = torch.randn(1, 4, 8, 8, generator=generator) * scheduler.init_noise_sigma

    for i in range(10):
        model_output = torch.randn(1, 4, 8, 8, generator=generator)
        sigma = float(scheduler.sigmas[i])
        sigma_next = float(scheduler.sigmas[i + 1])
        derivative = (sample - (sample - sigma * model_output)) / sigma
        expected = sample + (sigma_next - sigma) * derivative

        sample = scheduler.step(model_output, sample).prev_sample

        torch.testing.assert_close(sample, expected, rtol=1e-5, atol=1e-5)


def test_newest_derivative_gets_first_coefficient():
    scheduler = LMSDiscreteScheduler(solver_order=2)
    scheduler.set_timesteps(5)
    sample = torch.zeros(1, 4, 2, 2)
    first = torch.ones(1, 4, 2, 2)
    second = torch.full((1, 4, 2, 2), 3.0)

    sample = scheduler.step(first, sample).prev_sample
    before = sample.clone()
    c0, c1 = scheduler.get_lms_coefficients(1)
    sample = scheduler.step(second, sample).prev_sample

    torch.testing.assert_close(
        sample, before + c0 * second + c1 * first, rtol=1e-5, atol=1e-5)


def test_step_requires_timesteps():
    scheduler = LMSDiscreteScheduler()

    with pytest.raises(ValueError):
        scheduler.step(torch.zeros(1, 4, 2, 2), torch.zeros(1, 4, 2, 2))


def test_step_past_end_raises():
    scheduler = LMSDiscreteScheduler()
    scheduler.set_timesteps(2)
    sample = torch.zeros(1, 4, 2, 2)

    for _ in range(2):
        sample = scheduler.step(torch.zeros_like(sample), sample).prev_sample
    with pytest.raises(ValueError):
        scheduler.step(torch.zeros_like(sample), sample)


def test_zero_sigma_step_raises():
    scheduler = LMSDiscreteScheduler()
    scheduler.set_timesteps(2)
    scheduler.sigmas = np.array([0.0, 0.0, 0.0])

    with pytest.raises(DivisionByZeroSigma):
        scheduler.step(torch.zeros(1, 4, 2, 2), torch.ones(1, 4, 2, 2))


def test_scale_model_input():
    scheduler = LMSDiscreteScheduler()
    scheduler.set_timesteps(4)
    sample = torch.ones(1, 4, 2, 2)

    scaled = scheduler.scale_model_input(sample)
    sigma = scheduler.sigmas[0]
    torch.testing.assert_close(scaled, sample / math.sqrt(sigma**2 + 1))

    scheduler.step(torch.zeros_like(sample), sample)
    scaled = scheduler.scale_model_input(sample)
    sigma = scheduler.sigmas[1]
    torch.testing.assert_close(scaled, sample / math.sqrt(sigma**2 + 1))


def test_len_follows_trained_betas():
    betas = np.linspace(0.001, 0.02, 50)
    scheduler = LMSDiscreteScheduler(trained_betas=betas)

    assert len(scheduler) == 50
    assert len(scheduler) == len(scheduler.log_sigmas)

    scheduler.set_timesteps(5)
    assert scheduler.timesteps[0].item() == 49
