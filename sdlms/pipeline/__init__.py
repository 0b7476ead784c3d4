from .generator import StableDiffusionLMS, classifier_free_guidance
from .scheduler_lms import (
    LMSDiscreteScheduler,
    get_betas,
    get_log_sigmas,
    get_sampling_sigmas,
    sigma_to_timestep,
    trapezoidal,
)

__all__ = [
    'StableDiffusionLMS',
    'LMSDiscreteScheduler',
    'classifier_free_guidance',
    'get_betas',
    'get_log_sigmas',
    'get_sampling_sigmas',
    'sigma_to_timestep',
    'trapezoidal',
]
