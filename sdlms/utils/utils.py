import argparse
import logging
import os.path as osp

import numpy as np
import torch
from PIL import Image

from ..errors import LatentShapeError

__all__ = ['randn_latents', 'load_latents_txt', 'save_image', 'str2bool']


def randn_latents(seed, shape, dtype=torch.float32):
    """Standard normal latents from a seeded Mersenne Twister.

    The same (seed, shape) pair always yields the same tensor, independent of
    torch's global RNG state and of the device the run will use.
    """
    rng = np.random.RandomState(seed)
    noise = rng.standard_normal(tuple(shape)).astype(np.float32)
    return torch.from_numpy(noise).to(dtype)


def load_latents_txt(path, shape, dtype=torch.float32):
    """Read whitespace separated floats into a tensor of ``shape``."""
    with open(path) as f:
        values = np.array(f.read().split(), dtype=np.float32)

    size = int(np.prod(shape))
    if values.size < size:
        raise LatentShapeError(
            f"{path} holds {values.size} values, {size} needed for shape {tuple(shape)}"
        )
    return torch.from_numpy(values[:size].reshape(shape)).to(dtype)


def save_image(image, save_file):
    """Write one uint8 HWC image, defaulting to PNG for unknown suffixes."""
    suffix = osp.splitext(save_file)[1]
    if suffix.lower() not in [
            '.jpg', '.jpeg', '.png', '.tiff', '.gif', '.webp', '.bmp'
    ]:
        save_file = save_file + '.png'

    try:
        if isinstance(image, torch.Tensor):
            image = image.cpu().numpy()
        Image.fromarray(image).save(save_file)
        return save_file
    except Exception as e:
        logging.info(f'save_image failed, error: {e}')


def str2bool(v):
    """Convert string to boolean for argparse."""
    if isinstance(v, bool):
        return v
    v_lower = v.lower()
    if v_lower in ('yes', 'true', 't', 'y', '1'):
        return True
    elif v_lower in ('no', 'false', 'f', 'n', '0'):
        return False
    else:
        raise argparse.ArgumentTypeError('Boolean value expected (True/False)')
