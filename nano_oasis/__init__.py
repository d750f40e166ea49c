"""
Nano-Oasis: an action-conditioned world model for latent video.

This package implements the core components of the model and its sampler:
- Spatio-temporal DiT with axial attention, rotary positions and AdaLN-Zero
- Sigmoid noise schedule with v-prediction and diffusion forcing
- Autoregressive DDIM sampling over a sliding frame window
"""

from .model import DiT, SpatioTemporalDiTBlock, FinalLayer, load_weights
from .embeddings import ActionBatch, ActionSpace, PatchEmbed, TimestepEmbedder
from .rotary import RotaryEmbedding
from .diffusion import NoiseSchedule, diffusion_loss, sigmoid_beta_schedule
from .sampler import AutoregressiveSampler, SamplingConfig
from .codec import CallableCodec, IdentityCodec, LatentCodec
from .pipeline import generate
from .utils import patchify, unpatchify, seed_everything, get_logger
from .config_parser import load_config, parse_args, merge_config
from .errors import (
    NanoOasisError,
    ShapeMismatchError,
    InvalidScheduleError,
    NumericalInstabilityError,
    ResourceExhaustionError,
    InvalidActionError,
    WeightLoadError,
    MissingParameterError,
    UnexpectedParameterError,
    GenerationAborted,
    GenerationCancelled,
)

__version__ = "0.1.0"

__all__ = [
    # Model components
    "DiT",
    "SpatioTemporalDiTBlock",
    "FinalLayer",
    "PatchEmbed",
    "TimestepEmbedder",
    "RotaryEmbedding",
    "ActionSpace",
    "ActionBatch",
    "load_weights",
    # Diffusion and sampling
    "NoiseSchedule",
    "sigmoid_beta_schedule",
    "diffusion_loss",
    "AutoregressiveSampler",
    "SamplingConfig",
    "LatentCodec",
    "IdentityCodec",
    "CallableCodec",
    "generate",
    # Utilities
    "patchify",
    "unpatchify",
    "seed_everything",
    "get_logger",
    # Config
    "load_config",
    "parse_args",
    "merge_config",
    # Errors
    "NanoOasisError",
    "ShapeMismatchError",
    "InvalidScheduleError",
    "NumericalInstabilityError",
    "ResourceExhaustionError",
    "InvalidActionError",
    "WeightLoadError",
    "MissingParameterError",
    "UnexpectedParameterError",
    "GenerationAborted",
    "GenerationCancelled",
]
