from easydict import EasyDict

from .shared_config import sd_shared_cfg


sd_1_5 = EasyDict(__name__='Config: Stable Diffusion 1.5 LMS')
sd_1_5.update(sd_shared_cfg)

sd_1_5.unet_checkpoint = 'unet'
sd_1_5.text_encoder_checkpoint = 'text_encoder'
sd_1_5.tokenizer_checkpoint = 'tokenizer'
sd_1_5.vae_checkpoint = 'vae'

sd_1_5.text_dim = 768

sd_1_5.sample_steps = 20
sd_1_5.sample_guide_scale = 7.5
