import logging

import torch
from transformers import CLIPTextModel

from .tokenizers import HuggingfaceTokenizer

__all__ = [
    'CLIPTextEncoderModel',
]


class CLIPTextEncoderModel:
    """Prompt to ``[text_len, text_dim]`` embedding with a CLIP text tower."""

    def __init__(
        self,
        text_len,
        dtype=torch.float32,
        device=torch.device('cpu'),
        checkpoint_path=None,
        tokenizer_path=None,
    ):
        self.text_len = text_len
        self.dtype = dtype
        self.device = device
        self.checkpoint_path = checkpoint_path
        self.tokenizer_path = tokenizer_path

        logging.info(f'loading {checkpoint_path}')
        self.model = CLIPTextModel.from_pretrained(
            checkpoint_path, torch_dtype=dtype).eval().requires_grad_(False)
        self.model.to(device)

        self.tokenizer = HuggingfaceTokenizer(
            name=tokenizer_path, seq_len=text_len, clean=True)

    @torch.no_grad()
    def encode(self, prompt):
        ids = self.tokenizer(prompt).to(self.device)
        context = self.model(input_ids=ids).last_hidden_state
        return context[0].float()
