from .utils import load_latents_txt, randn_latents, save_image, str2bool

__all__ = ['randn_latents', 'load_latents_txt', 'save_image', 'str2bool']
