"""Generation script for Nano-Oasis: prompt latents + actions -> latent video."""

import sys
import os
import json
import torch
import numpy as np
import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import yaml
from PIL import Image

sys.path.append(os.path.join(os.path.dirname(__file__), '..'))
from nano_oasis.codec import IdentityCodec
from nano_oasis.config_parser import (
    load_config, merge_config, model_kwargs, parse_args, print_config, sampling_config, save_config,
)
from nano_oasis.errors import GenerationAborted
from nano_oasis.model import DiT, load_weights
from nano_oasis.pipeline import generate
from nano_oasis.utils import get_device, get_logger, seed_everything


def load_prompt(path: str) -> torch.Tensor:
    """Loads prompt latents as (B, T, C, H, W); a 4D (T, C, H, W) array gets a batch dim."""
    if path.endswith('.npy'):
        prompt = torch.from_numpy(np.load(path))
    else:
        prompt = torch.load(path, map_location='cpu')
    prompt = prompt.float()
    if prompt.dim() == 4:
        prompt = prompt.unsqueeze(0)
    return prompt


def load_actions(path: str, batch_size: int):
    """
    Loads action records from YAML or JSON.

    The file holds either one list of per-frame records (shared by the
    whole batch) or a list of such lists, one per batch element.
    """
    with open(path, 'r') as f:
        records = json.load(f) if path.endswith('.json') else yaml.safe_load(f)
    if records and isinstance(records[0], dict):
        records = [records] * batch_size
    return records


def latents_to_numpy(latents: torch.Tensor) -> np.ndarray:
    """(B, T, C, H, W) latents -> (B, T, H, W) channel means scaled to [0, 1]"""
    video = latents.float().mean(dim=2).cpu().numpy()
    lo, hi = video.min(), video.max()
    return (video - lo) / max(hi - lo, 1e-8)


def save_latent_strip(video: np.ndarray, save_path: str):
    """Saves (T, H, W) frames side by side as one image."""
    grid = np.concatenate([video[t] for t in range(video.shape[0])], axis=1)
    plt.imsave(save_path, grid, cmap='viridis')
    print(f"Saved strip: {save_path}")


def save_latent_gif(video: np.ndarray, save_path: str, fps: int = 8):
    """Saves (T, H, W) frames in [0, 1] as an animated GIF."""
    frames = [Image.fromarray((video[t] * 255).astype(np.uint8)) for t in range(video.shape[0])]
    frames[0].save(
        save_path,
        save_all=True,
        append_images=frames[1:],
        duration=1000 // fps,
        loop=0
    )
    print(f"Saved GIF: {save_path}")


def save_outputs(latents: torch.Tensor, output_dir: str, suffix: str = ''):
    os.makedirs(output_dir, exist_ok=True)
    latents_path = os.path.join(output_dir, f"latents{suffix}.pt")
    torch.save(latents.cpu(), latents_path)
    print(f"Saved latents: {latents_path}")

    videos = latents_to_numpy(latents)
    for i in range(videos.shape[0]):
        save_latent_strip(videos[i], os.path.join(output_dir, f"sample_{i}{suffix}_strip.png"))
        save_latent_gif(videos[i], os.path.join(output_dir, f"sample_{i}{suffix}.gif"))


def main(argv=None):
    args = parse_args(argv)
    config = merge_config(load_config(args.config), args)
    print_config(config)

    output_dir = config['experiment']['output_dir']
    logger = get_logger('nano_oasis', config['experiment'].get('log_dir'))
    seed_everything(config['experiment']['seed'])
    save_config(config, os.path.join(output_dir, 'config.yaml'))

    device = get_device()
    logger.info(f"Using device: {device}")

    model = DiT(**model_kwargs(config))
    if args.checkpoint is not None:
        if not os.path.exists(args.checkpoint):
            logger.error(f"Checkpoint not found at {args.checkpoint}")
            return 1
        state_dict = torch.load(args.checkpoint, map_location='cpu')
        load_weights(model, state_dict)
        logger.info(f"Loaded weights from {args.checkpoint}")
    else:
        logger.warning("No checkpoint given, sampling with freshly initialized weights")
    model = model.to(device).eval()
    logger.info(f"Model: {model.get_num_params():,} parameters")

    if args.prompt is not None:
        prompt = load_prompt(args.prompt).to(device)
    else:
        logger.warning("No prompt given, using a zero latent prompt")
        m = config['model']
        prompt = torch.zeros(
            1, config['sampling']['n_prompt_frames'], m['in_channels'], m['input_h'], m['input_w'],
            device=device,
        )

    total_frames = config['sampling']['total_frames']
    if args.actions is not None:
        actions = load_actions(args.actions, prompt.shape[0])
    elif model.action_space is not None:
        logger.warning("No actions given, using null actions")
        actions = model.action_space.null_actions(prompt.shape[0], total_frames, device=device)
    else:
        actions = None

    codec = IdentityCodec(scaling_factor=config['codec']['scaling_factor'])
    try:
        latents = generate(
            model, codec, prompt, actions, total_frames,
            sampling_config=sampling_config(config), logger=logger,
        )
    except GenerationAborted as e:
        logger.error(f"{e} ({e.num_finalized} frames finalized)")
        if e.frames is not None and e.num_finalized > 0:
            save_outputs(e.frames, output_dir, suffix='_partial')
        return 1

    save_outputs(latents, output_dir)
    logger.info(f"All outputs saved to: {output_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
