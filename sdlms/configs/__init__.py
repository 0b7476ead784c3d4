from .sd_1_5 import sd_1_5

SDLMS_CONFIGS = {
    'sd-1.5': sd_1_5,
}

SIZE_CONFIGS = {
    '512*512': (512, 512),
    '512*768': (512, 768),
    '768*512': (768, 512),
    '768*768': (768, 768),
}

SUPPORTED_SIZES = {
    'sd-1.5': ('512*512', '512*768', '768*512', '768*768'),
}
