from .text_encoder import CLIPTextEncoderModel
from .tokenizers import HuggingfaceTokenizer
from .unet import UNetDenoiser
from .vae import VAEDecoder

__all__ = [
    'CLIPTextEncoderModel',
    'HuggingfaceTokenizer',
    'UNetDenoiser',
    'VAEDecoder',
]
