"""Exception types raised by the model, the noise schedule and the sampler."""

from typing import Optional

import torch


class NanoOasisError(Exception):
    """Base class for all Nano-Oasis errors."""


class ShapeMismatchError(NanoOasisError, ValueError):
    """Input resolution, channel count, timestep or action window does not match the model."""


class InvalidScheduleError(NanoOasisError, ValueError):
    """Step count, context noise index or noise level outside the valid range."""


class NumericalInstabilityError(NanoOasisError, ArithmeticError):
    """Non-positive / NaN alpha or a non-finite clean-signal estimate."""


class ResourceExhaustionError(NanoOasisError, MemoryError):
    """Tensor allocation failed. Retry with a smaller batch or window."""


class InvalidActionError(NanoOasisError, ValueError):
    """Action record violates its action space."""


class WeightLoadError(NanoOasisError):
    """Base class for weight loading failures."""


class MissingParameterError(WeightLoadError, KeyError):
    """A model parameter has no entry in the supplied state dict."""

    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"Missing parameters: {', '.join(self.names)}")

    def __str__(self) -> str:
        return self.args[0]


class UnexpectedParameterError(WeightLoadError, KeyError):
    """The supplied state dict names a parameter the model does not have."""

    def __init__(self, names):
        self.names = list(names)
        super().__init__(f"Unexpected parameters: {', '.join(self.names)}")

    def __str__(self) -> str:
        return self.args[0]


class GenerationAborted(NanoOasisError):
    """
    Generation stopped before reaching ``total_frames``.

    Only frames that finished denoising are attached; the frame that was
    in progress when the failure happened is dropped.

    Attributes:
        frames: Finalized frames of shape (B, num_finalized, C, H, W), or None
        num_finalized: Number of frames in ``frames``
        cause: The error that stopped generation, None for cancellation
    """

    def __init__(
        self,
        message: str,
        frames: Optional[torch.Tensor] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.frames = frames
        self.num_finalized = 0 if frames is None else frames.shape[1]
        self.cause = cause
        self.partial = True


class GenerationCancelled(GenerationAborted):
    """Generation was cancelled by the caller between denoising steps."""
