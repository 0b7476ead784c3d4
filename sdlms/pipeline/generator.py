import logging
import os

import torch
from tqdm import tqdm

from ..errors import LatentShapeError, SamplingAborted
from ..models.text_encoder import CLIPTextEncoderModel
from ..models.unet import UNetDenoiser
from ..models.vae import VAEDecoder
from ..utils.utils import load_latents_txt, randn_latents
from .scheduler_lms import LMSDiscreteScheduler


def classifier_free_guidance(noise_pred, guide_scale=7.5):
    """Merge a ``[uncond, cond]`` prediction batch into one guided prediction."""
    noise_pred_uncond, noise_pred_cond = noise_pred.chunk(2)
    return noise_pred_uncond + guide_scale * (
        noise_pred_cond - noise_pred_uncond)


class StableDiffusionLMS:

    def __init__(
        self,
        config,
        denoiser,
        text_encoder=None,
        vae=None,
        device=torch.device('cpu'),
    ):
        """Text-to-image pipeline around an LMS-sampled latent diffusion model.

        Args:
            config (EasyDict): one of ``SDLMS_CONFIGS``.
            denoiser (callable): ``(timestep, latents[2B], context[2B]) ->
                noise prediction[2B]``, unconditional half first.
            text_encoder: object with ``encode(prompt) -> [text_len, dim]``.
            vae: object with ``decode(latent) -> images``. Without one,
                ``generate`` returns latents.
        """
        self.config = config
        self.device = device
        self.denoiser = denoiser
        self.text_encoder = text_encoder
        self.vae = vae

        self.vae_stride = config.vae_stride
        self.latent_channels = config.latent_channels

    @classmethod
    def from_pretrained(cls, config, checkpoint_dir, device=torch.device('cpu')):
        text_encoder = CLIPTextEncoderModel(
            text_len=config.text_len,
            dtype=config.param_dtype,
            device=device,
            checkpoint_path=os.path.join(checkpoint_dir,
                                         config.text_encoder_checkpoint),
            tokenizer_path=os.path.join(checkpoint_dir,
                                        config.tokenizer_checkpoint))
        denoiser = UNetDenoiser.from_pretrained(
            os.path.join(checkpoint_dir, config.unet_checkpoint),
            device=device,
            dtype=config.param_dtype)
        vae = VAEDecoder.from_pretrained(
            os.path.join(checkpoint_dir, config.vae_checkpoint),
            scaling_factor=config.vae_scaling_factor,
            device=device,
            dtype=config.param_dtype)
        return cls(config, denoiser, text_encoder=text_encoder, vae=vae,
                   device=device)

    def make_scheduler(self, solver_order=None):
        return LMSDiscreteScheduler(
            num_train_timesteps=self.config.num_train_timesteps,
            beta_start=self.config.beta_start,
            beta_end=self.config.beta_end,
            beta_schedule=self.config.beta_schedule,
            prediction_type=self.config.prediction_type,
            solver_order=self.config.solver_order
            if solver_order is None else solver_order,
        )

    def encode_prompts(self, input_prompt, n_prompt=""):
        """Stack negative and positive prompt embeddings, negative first."""
        context_null = self.text_encoder.encode(n_prompt)
        context = self.text_encoder.encode(input_prompt)
        return torch.stack([context_null, context]).to(self.device)

    def sample(
        self,
        noise,
        context,
        sampling_steps=20,
        guide_scale=7.5,
        solver_order=None,
        abort=None,
        progress=True,
    ):
        """Run the LMS sampling loop from standard normal ``noise``.

        Args:
            noise (torch.Tensor): ``[B, 4, H/8, W/8]`` standard normal latent.
            context (torch.Tensor): ``[2B, text_len, dim]`` embeddings,
                unconditional first.
            sampling_steps (int): at least 2.
            guide_scale (float): classifier-free guidance scale.
            solver_order (int): LMS order, defaults to the config's.
            abort (callable): polled before every step; a true result raises
                ``SamplingAborted``.

        Returns:
            torch.Tensor: the final latent, same shape as ``noise``.
        """
        if noise.dim() != 4 or noise.shape[1] != self.latent_channels:
            raise LatentShapeError(
                f"expected a [B, {self.latent_channels}, h, w] latent, got {tuple(noise.shape)}"
            )

        scheduler = self.make_scheduler(solver_order)
        scheduler.set_timesteps(sampling_steps, device=self.device)

        latents = noise.to(device=self.device,
                           dtype=torch.float32) * scheduler.init_noise_sigma

        for i, t in enumerate(tqdm(scheduler.timesteps, disable=not progress)):
            if abort is not None and abort():
                raise SamplingAborted(f"sampling aborted before step {i}")

            latent_model_input = torch.cat([scheduler.scale_model_input(latents)] * 2)
            timestep = int(t)

            noise_pred = self.denoiser(timestep, latent_model_input, context)
            if tuple(noise_pred.shape) != tuple(latent_model_input.shape):
                raise LatentShapeError(
                    f"denoiser returned {tuple(noise_pred.shape)}, expected {tuple(latent_model_input.shape)}"
                )
            noise_pred = classifier_free_guidance(noise_pred, guide_scale)

            latents = scheduler.step(noise_pred, latents, return_dict=False)[0]
            logging.debug(
                f"step {i}: sigma {scheduler.sigmas[i]:.4f}, timestep {timestep}, "
                f"order {len(scheduler.derivatives)}")

        return latents

    def generate(
        self,
        input_prompt,
        n_prompt="",
        seeds=(42,),
        size=(512, 512),
        sampling_steps=None,
        guide_scale=None,
        solver_order=None,
        latents_file=None,
        abort=None,
        progress=True,
    ):
        """Generate one image per seed from a text prompt.

        Args:
            input_prompt (str): positive prompt.
            n_prompt (str): negative prompt, the unconditional branch.
            seeds (Sequence[int]): one uint32 seed per image.
            size (tuple[int]): (width, height) in pixels, multiples of 8.
            latents_file (str): read initial noise from this text file instead
                of drawing it from the seed.

        Returns:
            list: uint8 ``[H, W, 3]`` images, or final latents without a VAE.
        """
        if sampling_steps is None:
            sampling_steps = self.config.sample_steps
        if guide_scale is None:
            guide_scale = self.config.sample_guide_scale

        width, height = size
        if width % self.vae_stride != 0 or height % self.vae_stride != 0:
            raise ValueError(
                f"size must be a multiple of {self.vae_stride}, got {width}*{height}"
            )
        shape = (1, self.latent_channels, height // self.vae_stride,
                 width // self.vae_stride)

        context = self.encode_prompts(input_prompt, n_prompt)

        outputs = []
        for seed in seeds:
            if latents_file is not None:
                noise = load_latents_txt(latents_file, shape)
            else:
                noise = randn_latents(seed, shape)
            logging.info(
                f"sampling seed {seed}: {sampling_steps} steps, latent shape {shape}")

            latents = self.sample(
                noise,
                context,
                sampling_steps=sampling_steps,
                guide_scale=guide_scale,
                solver_order=solver_order,
                abort=abort,
                progress=progress)

            if self.vae is not None:
                outputs.append(self.vae.decode(latents)[0])
            else:
                outputs.append(latents)
        return outputs
