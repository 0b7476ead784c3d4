import argparse
import logging
import os
import sys
from datetime import datetime
from pathlib import Path

import torch
import yaml

import sdlms
from sdlms.configs import SDLMS_CONFIGS, SIZE_CONFIGS, SUPPORTED_SIZES
from sdlms.utils.utils import save_image, str2bool

PATHS_CONFIG = Path(__file__).parent.parent / "configs" / "paths.yaml"

EXAMPLE_PROMPT = {
    "sd-1.5": {
        "prompt":
            "cyberpunk cityscape like Tokyo New York with tall buildings at dusk golden hour cinematic lighting",
        "negative_prompt": "",
    },
}


def _default_ckpt_dir():
    if not PATHS_CONFIG.exists():
        return None
    with open(PATHS_CONFIG) as f:
        config = yaml.safe_load(f)
    return config["weights"]["base_path"]


def _validate_args(args):
    if args.ckpt_dir is None:
        args.ckpt_dir = _default_ckpt_dir()
    assert args.ckpt_dir is not None, "Please specify the checkpoint directory."
    assert args.task in SDLMS_CONFIGS, f"Unsupport task: {args.task}"
    assert args.task in EXAMPLE_PROMPT, f"Unsupport task: {args.task}"

    if args.prompt is None:
        args.prompt = EXAMPLE_PROMPT[args.task]["prompt"]
    if args.negative_prompt is None:
        args.negative_prompt = EXAMPLE_PROMPT[args.task]["negative_prompt"]

    cfg = SDLMS_CONFIGS[args.task]

    if args.sample_steps is None:
        args.sample_steps = cfg.sample_steps
    if args.sample_guide_scale is None:
        args.sample_guide_scale = cfg.sample_guide_scale

    assert args.sample_steps >= 2, "sample_steps must be at least 2."
    assert args.num_images >= 1, "num_images must be positive."

    if args.seed is None:
        args.seed = [42]
    # one seed per image, counting up from the last one given
    while len(args.seed) < args.num_images:
        args.seed.append((args.seed[-1] + 1) % 2**32)
    args.seed = args.seed[:args.num_images]

    assert args.size in SUPPORTED_SIZES[
        args.
        task], f"Unsupport size {args.size} for task {args.task}, supported sizes are: {', '.join(SUPPORTED_SIZES[args.task])}"


def _parse_args():
    parser = argparse.ArgumentParser(
        description="Generate an image from a text prompt with LMS sampling"
    )
    parser.add_argument(
        "--task",
        type=str,
        default="sd-1.5",
        choices=list(SDLMS_CONFIGS.keys()),
        help="The task to run.")
    parser.add_argument(
        "--size",
        type=str,
        default="512*512",
        choices=list(SIZE_CONFIGS.keys()),
        help="The area (width*height) of the generated image.")
    parser.add_argument(
        "--ckpt_dir",
        type=str,
        default=None,
        help="The path to the checkpoint directory, defaults to configs/paths.yaml.")
    parser.add_argument(
        "--device",
        type=str,
        default="cuda" if torch.cuda.is_available() else "cpu",
        help="The torch device to run the models on.")
    parser.add_argument(
        "--prompt",
        type=str,
        default=None,
        help="The prompt to generate the image from.")
    parser.add_argument(
        "--negative_prompt",
        type=str,
        default=None,
        help="The prompt used for the unconditional guidance branch.")
    parser.add_argument(
        "--sample_steps",
        type=int,
        default=None,
        help="The sampling steps.")
    parser.add_argument(
        "--sample_guide_scale",
        type=float,
        default=None,
        help="Classifier free guidance scale.")
    parser.add_argument(
        "--solver_order",
        type=int,
        default=None,
        help="Order of the linear multistep solver.")
    parser.add_argument(
        "--seed",
        type=int,
        action="append",
        default=None,
        help="The seed for an image, repeat for several images.")
    parser.add_argument(
        "--num_images",
        type=int,
        default=1,
        help="How many images to generate.")
    parser.add_argument(
        "--latents_file",
        type=str,
        default=None,
        help="Read the initial latent from a whitespace separated text file.")
    parser.add_argument(
        "--save_file",
        type=str,
        default=None,
        help="The file to save the generated image to.")
    parser.add_argument(
        "--progress",
        type=str2bool,
        default=True,
        help="Whether to show a progress bar over the sampling steps.")
    parser.add_argument(
        "--log_file",
        type=str,
        default=None,
        help="Also write log records to this file.")

    args = parser.parse_args()
    _validate_args(args)

    return args


def _init_logging(log_file=None):
    handlers = [logging.StreamHandler(stream=sys.stdout)]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file))
    logging.basicConfig(
        level=logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
        handlers=handlers)


def generate(args):
    _init_logging(args.log_file)
    logging.info(f"Generation job args: {args}")

    cfg = SDLMS_CONFIGS[args.task]
    logging.info(f"Generation model config: {cfg}")

    device = torch.device(args.device)
    pipe = sdlms.StableDiffusionLMS.from_pretrained(
        cfg, checkpoint_dir=args.ckpt_dir, device=device)

    logging.info(f"Generating {args.num_images} image(s) ...")
    images = pipe.generate(
        args.prompt,
        n_prompt=args.negative_prompt,
        seeds=args.seed,
        size=SIZE_CONFIGS[args.size],
        sampling_steps=args.sample_steps,
        guide_scale=args.sample_guide_scale,
        solver_order=args.solver_order,
        latents_file=args.latents_file,
        progress=args.progress)

    for seed, image in zip(args.seed, images):
        if args.save_file is None or len(images) > 1:
            formatted_time = datetime.now().strftime("%Y%m%d_%H%M%S")
            formatted_prompt = args.prompt.replace(" ", "_").replace("/", "_")[:50]
            stem = args.save_file or f"{args.task}_{args.size.replace('*', 'x')}_{formatted_prompt}_{formatted_time}"
            stem = os.path.splitext(stem)[0]
            save_file = f"{stem}_{seed}.png"
        else:
            save_file = args.save_file
        saved = save_image(image, save_file)
        if saved is not None:
            logging.info(f"Saving generated image to {saved}")

    logging.info("Finished.")


if __name__ == "__main__":
    args = _parse_args()
    generate(args)
