from . import configs, models, pipeline, utils
from .pipeline import StableDiffusionLMS
