"""End-to-end video generation: encode prompt, sample latents, decode."""

import logging
import threading
from typing import Mapping, Optional, Sequence, Union

import torch
import torch.nn as nn

from .codec import LatentCodec
from .diffusion import NoiseSchedule
from .embeddings import ActionBatch
from .errors import GenerationAborted, ShapeMismatchError
from .sampler import AutoregressiveSampler, SamplingConfig

ActionInput = Union[ActionBatch, Sequence[Sequence[Mapping]], None]


def prepare_actions(model: nn.Module, actions: ActionInput, device: torch.device) -> Optional[ActionBatch]:
    """Encodes raw (B x T) action records with the model's action space."""
    if actions is None or isinstance(actions, ActionBatch):
        return actions
    action_space = getattr(model, 'action_space', None)
    if action_space is None:
        raise ShapeMismatchError("Action records were given but the model has no action space")
    return action_space.encode(actions, device=device)


def generate(
    model: nn.Module,
    codec: LatentCodec,
    prompt_frames: torch.Tensor,
    action_sequence: ActionInput,
    total_frames: int,
    sampling_config: Optional[SamplingConfig] = None,
    cancel_event: Optional[threading.Event] = None,
    schedule: Optional[NoiseSchedule] = None,
    logger: Optional[logging.Logger] = None,
) -> torch.Tensor:
    """
    Generates a video continuing ``prompt_frames`` under ``action_sequence``.

    Args:
        model: Trained DiT
        codec: Frame <-> latent codec
        prompt_frames: Prompt frames (B, T_prompt, ...) in the codec's image space
        action_sequence: ActionBatch or nested (B x T) action records covering
            at least ``total_frames`` frames; None for an unconditional model
        total_frames: Length of the output, prompt frames included
        sampling_config: Sampling parameters
        cancel_event: Set from another thread to stop between denoising steps

    Returns:
        Decoded frames (B, total_frames, ...)

    Raises:
        GenerationAborted: With ``frames`` holding the decoded finalized frames
    """
    config = sampling_config if sampling_config is not None else SamplingConfig()
    logger = logger if logger is not None else logging.getLogger(__name__)

    if prompt_frames.dim() < 3:
        raise ShapeMismatchError(f"Expected prompt frames (B, T, ...), got {prompt_frames.dim()}D")
    if prompt_frames.shape[1] < config.n_prompt_frames:
        raise ShapeMismatchError(
            f"Need {config.n_prompt_frames} prompt frames, got {prompt_frames.shape[1]}"
        )

    device = prompt_frames.device
    actions = prepare_actions(model, action_sequence, device)

    prompt = codec.encode_video(prompt_frames[:, :config.n_prompt_frames])
    logger.info(f"Encoded prompt to latents of shape {tuple(prompt.shape)}")

    sampler = AutoregressiveSampler(model, config=config, schedule=schedule, logger=logger)
    try:
        latents = sampler.sample(prompt, total_frames, actions, cancel_event=cancel_event)
    except GenerationAborted as e:
        if e.frames is not None:
            e.frames = codec.decode_video(e.frames)
        raise

    return codec.decode_video(latents)
