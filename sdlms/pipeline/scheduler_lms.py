"""Linear multistep (LMS) scheduler for epsilon-prediction latent diffusion.

The training-time noise schedule is kept as a table of log sigmas. Sampling
sigmas are interpolated from that table, and each step integrates the Lagrange
polynomial through the most recent ODE derivatives to advance the latent.
"""

import logging
import math
from collections import deque
from typing import List, Optional, Tuple, Union

import numpy as np
import torch
from diffusers.configuration_utils import ConfigMixin, register_to_config
from diffusers.schedulers.scheduling_utils import (
    SchedulerMixin,
    SchedulerOutput,
)

from ..errors import DegenerateStepCount, DivisionByZeroSigma, InvalidScheduleKind

__all__ = [
    'LMSDiscreteScheduler',
    'get_betas',
    'get_log_sigmas',
    'get_sampling_sigmas',
    'sigma_to_timestep',
    'trapezoidal',
    'lagrange_basis',
    'lms_coefficient',
]


def get_betas(num_train_timesteps=1000,
              beta_start=0.00085,
              beta_end=0.012,
              beta_schedule="scaled_linear",
              trained_betas=None):
    """Per-training-step noise variances for a named schedule family.

    A non-empty ``trained_betas`` overrides ``beta_schedule``.
    """
    if trained_betas is not None and len(trained_betas) > 0:
        betas = np.array(trained_betas, dtype=np.float64)
    elif beta_schedule == "linear":
        betas = np.linspace(
            beta_start, beta_end, num_train_timesteps, dtype=np.float64)
    elif beta_schedule == "scaled_linear":
        betas = np.linspace(
            beta_start**0.5,
            beta_end**0.5,
            num_train_timesteps,
            dtype=np.float64)**2
    else:
        raise InvalidScheduleKind(
            f"beta_schedule must be one of 'linear' or 'scaled_linear', got {beta_schedule!r}"
        )
    betas.setflags(write=False)
    return betas


def get_log_sigmas(betas):
    # float64 cumprod, 1000 factors close to 1 lose precision in float32
    alphas_cumprod = np.cumprod(1.0 - np.asarray(betas, dtype=np.float64))
    log_sigmas = np.log(np.sqrt((1 - alphas_cumprod) / alphas_cumprod))
    log_sigmas.setflags(write=False)
    return log_sigmas


def get_sampling_sigmas(log_sigmas, sampling_steps):
    """Runtime sigmas for ``sampling_steps`` steps, terminated by an exact 0."""
    if sampling_steps < 2:
        raise DegenerateStepCount(
            f"sampling_steps must be at least 2, got {sampling_steps}")
    num_train_timesteps = len(log_sigmas)
    t = np.linspace(num_train_timesteps - 1, 0, sampling_steps)
    low_idx = np.floor(t).astype(np.int64)
    high_idx = np.ceil(t).astype(np.int64)
    w = t - low_idx
    sigmas = np.exp((1 - w) * log_sigmas[low_idx] + w * log_sigmas[high_idx])
    return np.concatenate([sigmas, [0.0]])


def sigma_to_timestep(sigma, log_sigmas):
    """Fractional inverse lookup of ``sigma`` in the log sigma table, rounded."""
    log_sigma = math.log(float(sigma))

    dists = log_sigma - log_sigmas
    low_idx = int(np.cumsum(dists >= 0).argmax())
    low_idx = min(low_idx, len(log_sigmas) - 2)
    high_idx = low_idx + 1

    low = log_sigmas[low_idx]
    high = log_sigmas[high_idx]
    w = (low - log_sigma) / (low - high) if low != high else 0.0
    w = min(max(w, 0.0), 1.0)

    t = (1 - w) * low_idx + w * high_idx
    return int(math.floor(t + 0.5))


def trapezoidal(fn, a, b, tol=1e-4, max_refinements=100):
    """Adaptive trapezoidal integral of ``fn`` over ``[a, b]``.

    The panel count doubles until two successive estimates differ by less
    than ``tol``. If that never happens within ``max_refinements`` the last
    estimate is returned. ``fn`` must accept numpy arrays.
    """
    h = (b - a) / 2.0
    estimate = (fn(a) + fn(b)) * h

    for k in range(1, max_refinements + 1):
        nodes = a + (2 * np.arange(1, 2**(k - 1) + 1) - 1) * h
        refined = 0.5 * estimate + h * np.sum(fn(nodes))
        if k > 1 and abs(refined - estimate) < tol:
            return float(refined)
        estimate = refined
        h /= 2.0

    return float(estimate)


def lagrange_basis(tau, sigmas, step_index, order, curr_order):
    tau = np.asarray(tau, dtype=np.float64)
    prod = np.ones_like(tau)
    for k in range(order):
        if k == curr_order:
            continue
        prod = prod * (tau - sigmas[step_index - k]) / (
            sigmas[step_index - curr_order] - sigmas[step_index - k])
    return prod


def lms_coefficient(sigmas, step_index, order, curr_order, tol=1e-4):
    """Integral of the ``curr_order`` Lagrange basis from sigma_i to sigma_{i+1}."""

    def fn(tau):
        return lagrange_basis(tau, sigmas, step_index, order, curr_order)

    return trapezoidal(fn, float(sigmas[step_index]),
                       float(sigmas[step_index + 1]), tol)


class LMSDiscreteScheduler(SchedulerMixin, ConfigMixin):
    """Linear multistep solver over the sigma ODE of a DDPM-trained model."""

    order = 1

    @register_to_config
    def __init__(
        self,
        num_train_timesteps: int = 1000,
        beta_start: float = 0.00085,
        beta_end: float = 0.012,
        beta_schedule: str = "scaled_linear",
        trained_betas: Optional[Union[np.ndarray, List[float]]] = None,
        prediction_type: str = "epsilon",
        solver_order: int = 4,
        integration_tol: float = 1e-4,
    ):
        if prediction_type != "epsilon":
            raise NotImplementedError(
                f"prediction_type {prediction_type} is not implemented for {self.__class__}"
            )
        if solver_order < 1:
            raise ValueError(
                f"solver_order must be a positive integer, got {solver_order}")

        self.betas = get_betas(num_train_timesteps, beta_start, beta_end,
                               beta_schedule, trained_betas)
        self.log_sigmas = get_log_sigmas(self.betas)
        self.sigma_max = math.exp(self.log_sigmas[-1])

        self.num_inference_steps = None
        self.sigmas = None
        self.timesteps = None
        self.derivatives = deque(maxlen=solver_order)
        self._step_index = None

        logging.debug(
            f"LMS schedule {beta_schedule}: {len(self.betas)} train steps, "
            f"sigma_max {self.sigma_max:.4f}")

    @property
    def step_index(self):
        """Current step index, increments after each step."""
        return self._step_index

    @property
    def init_noise_sigma(self):
        """Scale applied to standard normal noise to form the initial latent."""
        if self.sigmas is None:
            return self.sigma_max
        return float(self.sigmas[0])

    def set_timesteps(
        self,
        num_inference_steps: int,
        device: Union[str, torch.device] = None,
    ):
        """Build the sampling sigmas and reset the derivative history."""
        sigmas = get_sampling_sigmas(self.log_sigmas, num_inference_steps)
        timesteps = [
            sigma_to_timestep(sigma, self.log_sigmas)
            for sigma in sigmas[:-1]
        ]

        self.sigmas = sigmas
        self.timesteps = torch.tensor(
            timesteps, dtype=torch.int64, device=device)
        self.num_inference_steps = num_inference_steps

        self.derivatives.clear()
        self._step_index = None

    def scale_model_input(self, sample: torch.Tensor) -> torch.Tensor:
        """Divide by sqrt(sigma^2 + 1) so the model sees unit variance input."""
        step_index = self._step_index or 0
        sigma = float(self.sigmas[step_index])
        return sample / ((sigma**2 + 1)**0.5)

    def get_lms_coefficients(self, step_index: int) -> List[float]:
        order = min(step_index + 1, self.config.solver_order)
        return [
            lms_coefficient(self.sigmas, step_index, order, curr_order,
                            self.config.integration_tol)
            for curr_order in range(order)
        ]

    def step(
        self,
        model_output: torch.Tensor,
        sample: torch.Tensor,
        return_dict: bool = True,
    ) -> Union[SchedulerOutput, Tuple]:
        """Advance ``sample`` from sigma_i to sigma_{i+1}."""
        if self.num_inference_steps is None:
            raise ValueError(
                "Number of inference steps is 'None', you need to run 'set_timesteps' after creating the scheduler"
            )
        if self._step_index is None:
            self._step_index = 0
        if self._step_index >= self.num_inference_steps:
            raise ValueError(
                f"all {self.num_inference_steps} steps have been taken, call 'set_timesteps' to start a new run"
            )

        sigma = float(self.sigmas[self._step_index])
        if sigma == 0:
            raise DivisionByZeroSigma(
                f"sigma is zero at step {self._step_index}")

        # 1. predicted x_0 from epsilon
        pred_original_sample = sample - sigma * model_output

        # 2. ODE derivative
        derivative = (sample - pred_original_sample) / sigma
        self.derivatives.append(derivative)

        # 3. coefficients over the newest derivatives first
        lms_coeffs = self.get_lms_coefficients(self._step_index)
        prev_sample = sample + sum(
            coeff * derivative
            for coeff, derivative in zip(lms_coeffs, reversed(self.derivatives)))

        self._step_index += 1

        if not return_dict:
            return (prev_sample,)
        return SchedulerOutput(prev_sample=prev_sample)

    def __len__(self):
        return len(self.betas)
