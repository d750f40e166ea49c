"""Autoregressive DDIM sampler that extends a latent video one frame at a time."""

import logging
import threading
from collections import deque
from dataclasses import asdict, dataclass, fields
from enum import Enum
from typing import Any, Dict, List, Optional

import torch
import torch.nn as nn
from tqdm import tqdm

from .diffusion import NoiseSchedule
from .embeddings import ActionBatch
from .errors import (
    GenerationAborted,
    GenerationCancelled,
    InvalidScheduleError,
    NanoOasisError,
    NumericalInstabilityError,
    ResourceExhaustionError,
    ShapeMismatchError,
)


_ALLOCATION_FAILURE_MESSAGES = (
    "can't allocate memory",
    "out of memory",
    "failed to allocate",
)


def _is_allocation_failure(error: BaseException) -> bool:
    """RuntimeErrors raised by the CPU / MPS allocators when memory runs out."""
    if not isinstance(error, RuntimeError):
        return False
    message = str(error).lower()
    return any(text in message for text in _ALLOCATION_FAILURE_MESSAGES)


class SamplerState(Enum):
    PRIMING = 'priming'
    EXTENDING = 'extending'
    DENOISING_STEP = 'denoising-step'
    DONE = 'done'


@dataclass
class SamplingConfig:
    """
    Sampling parameters.

    Attributes:
        ddim_noise_steps: Denoising steps per generated frame
        max_noise_level: Number of noise levels T of the schedule
        noise_abs_max: Fresh noise is clipped to [-noise_abs_max, noise_abs_max]
        ctx_max_noise_idx: Cap on the step index used to re-noise context
            frames; defaults to 30% of ddim_noise_steps
        n_prompt_frames: Number of prompt frames used as initial context
        max_frames: Sliding window length; defaults to the model's max_frames
        resample_ctx_noise: Draw fresh context noise at every denoising step
            (True) or once per generated frame (False)
        seed: Seed for the sampler's own random generator
        show_progress: Show a tqdm progress bar over generated frames
    """
    ddim_noise_steps: int = 100
    max_noise_level: int = 1000
    noise_abs_max: float = 20.0
    ctx_max_noise_idx: Optional[int] = None
    n_prompt_frames: int = 1
    max_frames: Optional[int] = None
    resample_ctx_noise: bool = True
    seed: Optional[int] = None
    show_progress: bool = False

    def __post_init__(self):
        if self.ctx_max_noise_idx is None and isinstance(self.ddim_noise_steps, int):
            self.ctx_max_noise_idx = self.ddim_noise_steps // 10 * 3
        self.validate()

    def validate(self) -> None:
        """
        Raises:
            InvalidScheduleError: If any value is outside its valid range
        """
        if not isinstance(self.ddim_noise_steps, int) or self.ddim_noise_steps <= 0:
            raise InvalidScheduleError(f"ddim_noise_steps must be a positive integer, got {self.ddim_noise_steps}")
        if not isinstance(self.max_noise_level, int) or self.max_noise_level <= 0:
            raise InvalidScheduleError(f"max_noise_level must be a positive integer, got {self.max_noise_level}")
        if self.ddim_noise_steps > self.max_noise_level:
            raise InvalidScheduleError(
                f"ddim_noise_steps={self.ddim_noise_steps} exceeds max_noise_level={self.max_noise_level}"
            )
        if not self.noise_abs_max > 0:
            raise InvalidScheduleError(f"noise_abs_max must be positive, got {self.noise_abs_max}")
        if not 0 <= self.ctx_max_noise_idx <= self.ddim_noise_steps:
            raise InvalidScheduleError(
                f"ctx_max_noise_idx must be in [0, {self.ddim_noise_steps}], got {self.ctx_max_noise_idx}"
            )
        if self.n_prompt_frames < 1:
            raise InvalidScheduleError(f"n_prompt_frames must be >= 1, got {self.n_prompt_frames}")
        if self.max_frames is not None and self.max_frames < 2:
            raise InvalidScheduleError(f"max_frames must be >= 2, got {self.max_frames}")

    @classmethod
    def from_dict(cls, config: Dict[str, Any]) -> 'SamplingConfig':
        known = {f.name for f in fields(cls)}
        unknown = set(config) - known
        if unknown:
            raise ValueError(f"Unknown sampling options: {', '.join(sorted(unknown))}")
        return cls(**config)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class FrameWindow:
    """
    Ring buffer over the most recent latent frames.

    Pushing into a full window evicts the oldest frame. Positions are also
    tracked globally so callers can slice per-frame data (actions) to match.
    """

    def __init__(self, capacity: int):
        if capacity < 1:
            raise ValueError(f"Window capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._frames = deque(maxlen=capacity)
        self._end = 0

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def start(self) -> int:
        """Global index of the oldest frame in the window."""
        return self._end - len(self._frames)

    @property
    def end(self) -> int:
        """Global index one past the newest frame."""
        return self._end

    @property
    def newest(self) -> torch.Tensor:
        return self._frames[-1]

    def push(self, frame: torch.Tensor) -> Optional[torch.Tensor]:
        """Appends a (B, C, H, W) frame; returns the evicted frame, if any."""
        evicted = self._frames[0] if len(self._frames) == self.capacity else None
        self._frames.append(frame)
        self._end += 1
        return evicted

    def replace_newest(self, frame: torch.Tensor) -> None:
        self._frames[-1] = frame

    def stack(self) -> torch.Tensor:
        """New (B, len, C, H, W) tensor; the buffered frames are not aliased."""
        return torch.stack(list(self._frames), dim=1)


class AutoregressiveSampler:
    """
    Extends a latent video frame by frame with DDIM-style denoising.

    Every new frame starts as clipped noise and is denoised over
    ``ddim_noise_steps`` steps. At each step the context frames are copied,
    re-noised to a capped noise level and fed to the model together with the
    new frame; only the new frame is updated. The model never sees more than
    ``max_frames`` frames.
    """

    def __init__(
        self,
        model: nn.Module,
        config: Optional[SamplingConfig] = None,
        schedule: Optional[NoiseSchedule] = None,
        logger: Optional[logging.Logger] = None,
    ):
        self.model = model
        self.config = config if config is not None else SamplingConfig()
        self.schedule = schedule if schedule is not None else NoiseSchedule(self.config.max_noise_level)
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.state = SamplerState.DONE

        if self.schedule.timesteps != self.config.max_noise_level:
            raise InvalidScheduleError(
                f"Schedule has {self.schedule.timesteps} noise levels, config expects {self.config.max_noise_level}"
            )

        model_max_frames = getattr(model, 'max_frames', None)
        self.max_frames = self.config.max_frames or model_max_frames
        if self.max_frames is None:
            raise ValueError("max_frames must be set in the config when the model doesn't define it")
        if model_max_frames is not None and self.max_frames > model_max_frames:
            raise ShapeMismatchError(
                f"Sliding window of {self.max_frames} frames exceeds model max_frames={model_max_frames}"
            )

    def _validate_inputs(self, prompt: torch.Tensor, total_frames: int, actions: Optional[ActionBatch]) -> None:
        n_prompt = self.config.n_prompt_frames
        if prompt.dim() != 5:
            raise ShapeMismatchError(f"Expected prompt latents (B, T, C, H, W), got {prompt.dim()}D")
        if prompt.shape[1] < n_prompt:
            raise ShapeMismatchError(f"Need {n_prompt} prompt frames, got {prompt.shape[1]}")
        if total_frames < n_prompt:
            raise ShapeMismatchError(f"total_frames={total_frames} is smaller than n_prompt_frames={n_prompt}")

        expected = tuple(getattr(self.model, name, None) for name in ('in_channels', 'input_h', 'input_w'))
        if None not in expected and tuple(prompt.shape[2:]) != expected:
            raise ShapeMismatchError(
                f"Prompt latent shape {tuple(prompt.shape[2:])} doesn't match model {expected}"
            )

        if actions is not None:
            if actions.discrete.shape[0] != prompt.shape[0]:
                raise ShapeMismatchError(
                    f"Actions batch {actions.discrete.shape[0]} doesn't match prompt batch {prompt.shape[0]}"
                )
            if actions.num_frames < total_frames:
                raise ShapeMismatchError(
                    f"Actions cover {actions.num_frames} frames, {total_frames} requested"
                )

    def _noise(self, shape, like: torch.Tensor, generator: Optional[torch.Generator]) -> torch.Tensor:
        noise = torch.randn(shape, generator=generator, device=like.device, dtype=like.dtype)
        return noise.clamp_(-self.config.noise_abs_max, self.config.noise_abs_max)

    def _denoise_next_frame(
        self,
        window: FrameWindow,
        levels: torch.Tensor,
        actions: Optional[ActionBatch],
        generator: Optional[torch.Generator],
        cancel_event: Optional[threading.Event],
    ) -> torch.Tensor:
        self.state = SamplerState.EXTENDING
        window.push(self._noise(window.newest.shape, window.newest, generator))

        B, n = window.newest.shape[0], len(window)
        device = window.newest.device
        action_window = actions.window(window.start, window.end) if actions is not None else None
        ctx_noise = None

        for noise_idx in range(self.config.ddim_noise_steps, 0, -1):
            if cancel_event is not None and cancel_event.is_set():
                raise GenerationCancelled("Generation cancelled")
            self.state = SamplerState.DENOISING_STEP

            # Context is re-noised to at most ctx_max_noise_idx
            ctx_idx = min(noise_idx, self.config.ctx_max_noise_idx)
            t = torch.full((B, n), int(levels[ctx_idx]), dtype=torch.long, device=device)
            t[:, -1] = levels[noise_idx]
            t_next = torch.full((B, 1), int(levels[noise_idx - 1]), dtype=torch.long, device=device)

            x_curr = window.stack()
            if n > 1:
                if ctx_noise is None or self.config.resample_ctx_noise:
                    ctx_noise = self._noise(x_curr[:, :-1].shape, x_curr, generator)
                x_curr[:, :-1] = self.schedule.q_sample(x_curr[:, :-1], t[:, :-1], ctx_noise)

            v = self.model(x_curr, t, action_window)

            x_start = self.schedule.predict_start_from_v(x_curr[:, -1:], t[:, -1:], v[:, -1:])
            if not torch.isfinite(x_start).all():
                raise NumericalInstabilityError(f"Non-finite clean-signal estimate at step {noise_idx}")
            x_noise = self.schedule.predict_noise_from_start(x_curr[:, -1:], t[:, -1:], x_start)
            x_pred = self.schedule.ddim_step(x_start, x_noise, t_next)

            window.replace_newest(x_pred[:, 0].to(x_curr.dtype))
            del x_curr, v, x_start, x_noise, x_pred

        return window.newest

    @torch.no_grad()
    def sample(
        self,
        prompt: torch.Tensor,
        total_frames: int,
        actions: Optional[ActionBatch] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> torch.Tensor:
        """
        Generates ``total_frames`` latent frames starting from ``prompt``.

        Args:
            prompt: Scaled prompt latents (B, T_prompt, C, H, W); the first
                n_prompt_frames are used and returned unchanged
            total_frames: Number of frames in the output, prompt included
            actions: Actions covering at least ``total_frames`` frames
            cancel_event: Checked between denoising steps

        Returns:
            Latents of shape (B, total_frames, C, H, W)

        Raises:
            ShapeMismatchError / InvalidScheduleError: Invalid inputs, before any work
            GenerationCancelled: ``cancel_event`` was set
            GenerationAborted: A denoising step failed; carries finalized frames
        """
        self._validate_inputs(prompt, total_frames, actions)
        self.model.eval()

        device = prompt.device
        self.schedule.to(device)
        if actions is not None:
            actions = actions.to(device)

        generator = None
        if self.config.seed is not None:
            generator = torch.Generator(device=device)
            generator.manual_seed(self.config.seed)

        levels = self.schedule.sampling_levels(self.config.ddim_noise_steps)
        n_prompt = self.config.n_prompt_frames

        self.state = SamplerState.PRIMING
        window = FrameWindow(self.max_frames)
        finalized: List[torch.Tensor] = []
        for i in range(n_prompt):
            finalized.append(prompt[:, i])
            window.push(prompt[:, i])

        self.logger.info(
            f"Generating {total_frames - n_prompt} frames after {n_prompt} prompt frames "
            f"({self.config.ddim_noise_steps} steps/frame, window={self.max_frames})"
        )

        frames = tqdm(
            range(n_prompt, total_frames),
            desc="Sampling (DDIM)",
            disable=not self.config.show_progress,
        )
        for i in frames:
            try:
                frame = self._denoise_next_frame(window, levels, actions, generator, cancel_event)
            except GenerationCancelled:
                self.state = SamplerState.DONE
                self.logger.info(f"Generation cancelled at frame {i}, {len(finalized)} frames finalized")
                raise GenerationCancelled(
                    f"Generation cancelled at frame {i}", frames=torch.stack(finalized, dim=1)
                ) from None
            except NanoOasisError as e:
                raise self._abort(i, finalized, e) from e
            except Exception as e:
                error = e
                if isinstance(e, torch.cuda.OutOfMemoryError) or _is_allocation_failure(e):
                    error = ResourceExhaustionError(
                        f"Out of memory during denoising ({e}); reduce batch size or max_frames"
                    )
                raise self._abort(i, finalized, error) from e
            finalized.append(frame)

        self.state = SamplerState.DONE
        return torch.stack(finalized, dim=1)

    def _abort(self, frame_index: int, finalized: List[torch.Tensor], error: BaseException) -> GenerationAborted:
        self.state = SamplerState.DONE
        self.logger.error(f"Generation aborted at frame {frame_index}: {error}")
        return GenerationAborted(
            f"Generation aborted at frame {frame_index}: {error}",
            frames=torch.stack(finalized, dim=1),
            cause=error,
        )
