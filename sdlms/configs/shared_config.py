import torch
from easydict import EasyDict

sd_shared_cfg = EasyDict()

sd_shared_cfg.num_train_timesteps = 1000
sd_shared_cfg.beta_start = 0.00085
sd_shared_cfg.beta_end = 0.012
sd_shared_cfg.beta_schedule = 'scaled_linear'
sd_shared_cfg.prediction_type = 'epsilon'
sd_shared_cfg.solver_order = 4

sd_shared_cfg.text_len = 77
sd_shared_cfg.param_dtype = torch.float32

sd_shared_cfg.vae_stride = 8
sd_shared_cfg.latent_channels = 4
sd_shared_cfg.vae_scaling_factor = 0.18215
