import logging

import torch
from diffusers import UNet2DConditionModel

__all__ = [
    'UNetDenoiser',
]


class UNetDenoiser:
    """Epsilon-predicting UNet behind the ``(timestep, latents, context)`` call."""

    def __init__(self, unet, device=torch.device('cpu'), dtype=torch.float32):
        self.device = device
        self.dtype = dtype
        self.unet = unet.eval().requires_grad_(False).to(device=device, dtype=dtype)

    @classmethod
    def from_pretrained(cls, checkpoint_path, device=torch.device('cpu'),
                        dtype=torch.float32):
        logging.info(f'loading {checkpoint_path}')
        unet = UNet2DConditionModel.from_pretrained(
            checkpoint_path, torch_dtype=dtype)
        return cls(unet, device=device, dtype=dtype)

    @torch.no_grad()
    def __call__(self, timestep, latent_batch, embeddings):
        t = torch.tensor([timestep], dtype=torch.int64, device=self.device)
        noise_pred = self.unet(
            latent_batch.to(device=self.device, dtype=self.dtype),
            t,
            encoder_hidden_states=embeddings.to(
                device=self.device, dtype=self.dtype),
        ).sample
        return noise_pred.float().to(latent_batch.device)
