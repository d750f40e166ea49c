"""Image <-> latent codecs used around the sampler."""

from typing import Callable

import torch

# Latent scale of the Oasis VAE
DEFAULT_SCALING_FACTOR = 0.07843137255


class LatentCodec:
    """
    Maps image frames to latents and back.

    Subclasses implement ``encode`` (N, C_img, H_img, W_img) -> (N, C, H, W)
    and ``decode`` for the reverse direction. Latents are multiplied by
    ``scaling_factor`` before sampling and divided by it before decoding.
    """
    scaling_factor: float = DEFAULT_SCALING_FACTOR

    def encode(self, frames: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        raise NotImplementedError

    def encode_video(self, video: torch.Tensor) -> torch.Tensor:
        """(B, T, ...) frames -> scaled latents (B, T, C, H, W)"""
        B, T = video.shape[:2]
        latents = self.encode(video.reshape(B * T, *video.shape[2:]))
        latents = latents * self.scaling_factor
        return latents.reshape(B, T, *latents.shape[1:])

    def decode_video(self, latents: torch.Tensor) -> torch.Tensor:
        """Scaled latents (B, T, C, H, W) -> frames (B, T, ...)"""
        B, T = latents.shape[:2]
        frames = self.decode(latents.reshape(B * T, *latents.shape[2:]) / self.scaling_factor)
        return frames.reshape(B, T, *frames.shape[1:])


class IdentityCodec(LatentCodec):
    """Treats frames as latents; useful when prompts are already encoded."""

    def __init__(self, scaling_factor: float = 1.0):
        self.scaling_factor = scaling_factor

    def encode(self, frames: torch.Tensor) -> torch.Tensor:
        return frames

    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        return latents


class CallableCodec(LatentCodec):
    """
    Wraps an external autoencoder given as two callables.

    If ``encode_fn`` returns a distribution (anything with ``mean`` and
    ``sample``), its mean is used, or a sample when ``sample_posterior``.
    """

    def __init__(
        self,
        encode_fn: Callable[[torch.Tensor], object],
        decode_fn: Callable[[torch.Tensor], torch.Tensor],
        scaling_factor: float = DEFAULT_SCALING_FACTOR,
        sample_posterior: bool = False,
    ):
        self.encode_fn = encode_fn
        self.decode_fn = decode_fn
        self.scaling_factor = scaling_factor
        self.sample_posterior = sample_posterior

    @torch.no_grad()
    def encode(self, frames: torch.Tensor) -> torch.Tensor:
        out = self.encode_fn(frames)
        if isinstance(out, torch.Tensor):
            return out
        return out.sample() if self.sample_posterior else out.mean

    @torch.no_grad()
    def decode(self, latents: torch.Tensor) -> torch.Tensor:
        return self.decode_fn(latents)
