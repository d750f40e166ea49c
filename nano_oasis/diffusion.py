"""Sigmoid noise schedule, v-parameterization helpers and the diffusion loss."""

import numbers
from typing import Optional

import torch
import torch.nn as nn

from .embeddings import ActionBatch
from .errors import InvalidScheduleError, NumericalInstabilityError


def sigmoid_beta_schedule(
    timesteps: int,
    start: float = -3.0,
    end: float = 3.0,
    tau: float = 1.0,
) -> torch.Tensor:
    """
    Sigmoid schedule (https://arxiv.org/abs/2212.11972).

    alphas_cumprod follows a sigmoid between the logits ``start`` and ``end``,
    normalized so it equals 1 at t=0; betas are clipped to [0, 0.999].

    Returns:
        float64 tensor of ``timesteps`` betas
    """
    if not isinstance(timesteps, numbers.Integral) or timesteps < 1:
        raise InvalidScheduleError(f"Number of noise levels must be a positive integer, got {timesteps}")

    steps = timesteps + 1
    t = torch.linspace(0, timesteps, steps, dtype=torch.float64) / timesteps
    v_start = torch.tensor(start / tau, dtype=torch.float64).sigmoid()
    v_end = torch.tensor(end / tau, dtype=torch.float64).sigmoid()
    alphas_cumprod = (-((t * (end - start) + start) / tau).sigmoid() + v_end) / (v_end - v_start)
    alphas_cumprod = alphas_cumprod / alphas_cumprod[0]
    betas = 1 - (alphas_cumprod[1:] / alphas_cumprod[:-1])
    return torch.clip(betas, 0, 0.999)


class NoiseSchedule(nn.Module):
    """
    Precomputed diffusion schedule over noise levels 0..T.

    Level 0 is the clean signal (alphas_cumprod[0] == 1); level k applies
    betas[0..k-1]. Buffers are non-persistent so the schedule never shows up
    in model weights and never receives gradients.
    """

    def __init__(self, timesteps: int = 1000, start: float = -3.0, end: float = 3.0, tau: float = 1.0):
        super().__init__()
        betas = sigmoid_beta_schedule(timesteps, start, end, tau)
        alphas_cumprod = torch.cat([torch.ones(1, dtype=torch.float64), torch.cumprod(1.0 - betas, dim=0)])

        self.timesteps = timesteps
        self.register_buffer('betas', betas.float(), persistent=False)
        self.register_buffer('alphas_cumprod', alphas_cumprod.float(), persistent=False)

    def sampling_levels(self, steps: int) -> torch.Tensor:
        """``steps + 1`` integer noise levels evenly spaced from 0 to T."""
        if steps < 1 or steps > self.timesteps:
            raise InvalidScheduleError(
                f"Number of sampling steps must be in [1, {self.timesteps}], got {steps}"
            )
        levels = torch.linspace(0, self.timesteps, steps + 1, device=self.alphas_cumprod.device)
        return levels.round().long()

    def alphas_at(self, t: torch.Tensor, ndim: int) -> torch.Tensor:
        """
        alphas_cumprod gathered at levels ``t`` (B, T) and shaped to broadcast
        against a (B, T, ...) tensor of rank ``ndim``.

        Raises:
            InvalidScheduleError: If a level is outside [0, T]
            NumericalInstabilityError: If a gathered alpha is non-positive or NaN
        """
        if t.numel() > 0 and (int(t.min()) < 0 or int(t.max()) > self.timesteps):
            raise InvalidScheduleError(
                f"Noise levels must be in [0, {self.timesteps}], got [{int(t.min())}, {int(t.max())}]"
            )
        alphas = self.alphas_cumprod[t.long()]
        if not torch.all(alphas > 0):
            raise NumericalInstabilityError("alphas_cumprod is non-positive or NaN at the requested levels")
        return alphas.reshape(*t.shape, *([1] * (ndim - t.dim())))

    def q_sample(self, x_start: torch.Tensor, t: torch.Tensor, noise: torch.Tensor) -> torch.Tensor:
        """Forward diffusion: noise ``x_start`` to levels ``t``."""
        alphas = self.alphas_at(t, x_start.dim())
        return alphas.sqrt() * x_start + (1 - alphas).sqrt() * noise

    def v_target(self, x_start: torch.Tensor, t: torch.Tensor, noise: torch.Tensor) -> torch.Tensor:
        alphas = self.alphas_at(t, x_start.dim())
        return alphas.sqrt() * noise - (1 - alphas).sqrt() * x_start

    def predict_start_from_v(self, x_t: torch.Tensor, t: torch.Tensor, v: torch.Tensor) -> torch.Tensor:
        alphas = self.alphas_at(t, x_t.dim())
        return alphas.sqrt() * x_t - (1 - alphas).sqrt() * v

    def predict_noise_from_start(self, x_t: torch.Tensor, t: torch.Tensor, x_start: torch.Tensor) -> torch.Tensor:
        """Noise implied by ``x_t`` and ``x_start``; undefined at level 0."""
        alphas = self.alphas_at(t, x_t.dim())
        return ((1 / alphas).sqrt() * x_t - x_start) / (1 / alphas - 1).sqrt()

    def ddim_step(self, x_start: torch.Tensor, noise: torch.Tensor, t_next: torch.Tensor) -> torch.Tensor:
        """Deterministic DDIM update: recombine the estimates at levels ``t_next``."""
        alphas_next = self.alphas_at(t_next, x_start.dim())
        return alphas_next.sqrt() * x_start + (1 - alphas_next).sqrt() * noise


def diffusion_loss(
    model: nn.Module,
    schedule: NoiseSchedule,
    x: torch.Tensor,
    actions: Optional[ActionBatch] = None,
    t: Optional[torch.Tensor] = None,
    noise: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    v-prediction MSE with an independent noise level per frame.

    Args:
        model: DiT taking (x_t, t, actions)
        schedule: Noise schedule (treated as constant data)
        x: Clean latents of shape (B, T, C, H, W)
        actions: Optional actions for the T frames
        t: Optional levels (B, T); sampled uniformly from [1, T] if omitted
        noise: Optional noise; standard normal if omitted

    Returns:
        Scalar loss
    """
    B, T = x.shape[:2]
    if t is None:
        t = torch.randint(1, schedule.timesteps + 1, (B, T), device=x.device)
    if noise is None:
        noise = torch.randn_like(x)

    with torch.no_grad():
        x_t = schedule.q_sample(x, t, noise)
        target = schedule.v_target(x, t, noise)

    v_pred = model(x_t, t, actions)
    return torch.mean((v_pred - target) ** 2)
