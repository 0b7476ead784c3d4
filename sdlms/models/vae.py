import logging

import torch
from diffusers import AutoencoderKL
from einops import rearrange

__all__ = [
    'VAEDecoder',
]


class VAEDecoder:
    """Final latent to uint8 ``[B, H, W, 3]`` image batch."""

    def __init__(self,
                 vae,
                 scaling_factor=0.18215,
                 device=torch.device('cpu'),
                 dtype=torch.float32):
        self.scaling_factor = scaling_factor
        self.device = device
        self.dtype = dtype
        self.vae = vae.eval().requires_grad_(False).to(device=device, dtype=dtype)

    @classmethod
    def from_pretrained(cls,
                        checkpoint_path,
                        scaling_factor=0.18215,
                        device=torch.device('cpu'),
                        dtype=torch.float32):
        logging.info(f'loading {checkpoint_path}')
        vae = AutoencoderKL.from_pretrained(checkpoint_path, torch_dtype=dtype)
        return cls(vae, scaling_factor=scaling_factor, device=device, dtype=dtype)

    @torch.no_grad()
    def decode(self, latent):
        z = latent.to(device=self.device, dtype=self.dtype) / self.scaling_factor
        image = self.vae.decode(z).sample
        # [-1, 1] -> [0, 255], truncating
        image = (image.float() * 0.5 + 0.5).clamp(0, 1)
        image = rearrange(image, 'b c h w -> b h w c')
        return (image * 255).to(torch.uint8).cpu()
