"""Patch, timestep, position and action embeddings."""

import math
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence, Tuple

import torch
import torch.nn as nn

from .errors import InvalidActionError, ShapeMismatchError


class PatchEmbed(nn.Module):
    """
    Latent frame to patch token embedding.
    Conv2d with stride=kernel_size, i.e. a linear projection of every
    non-overlapping patch, followed by LayerNorm.
    """
    def __init__(
        self,
        img_height: int = 18,
        img_width: int = 32,
        patch_size: int = 2,
        in_chans: int = 16,
        embed_dim: int = 1024,
        flatten: bool = True,
        norm: bool = True,
    ):
        super().__init__()
        if img_height % patch_size != 0 or img_width % patch_size != 0:
            raise ShapeMismatchError(
                f"Input size ({img_height}*{img_width}) not divisible by patch size {patch_size}"
            )
        self.img_height = img_height
        self.img_width = img_width
        self.patch_size = patch_size
        self.in_chans = in_chans
        self.embed_dim = embed_dim
        self.flatten = flatten

        self.grid_size = (img_height // patch_size, img_width // patch_size)
        self.num_patches = self.grid_size[0] * self.grid_size[1]

        self.proj = nn.Conv2d(in_chans, embed_dim, kernel_size=patch_size, stride=patch_size, bias=True)
        self.norm = nn.LayerNorm(embed_dim, eps=1e-6) if norm else nn.Identity()

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() != 4:
            raise ShapeMismatchError(f"Expected 4D tensor (B, C, H, W), got {x.dim()}D")
        B, C, H, W = x.shape
        if C != self.in_chans:
            raise ShapeMismatchError(f"Input has {C} channels, model expects {self.in_chans}")
        if H != self.img_height or W != self.img_width:
            raise ShapeMismatchError(
                f"Input image size ({H}*{W}) doesn't match model ({self.img_height}*{self.img_width})."
            )

        x = self.proj(x)
        if self.flatten:
            x = x.flatten(2).transpose(1, 2)  # (B, N, D)
        else:
            x = x.permute(0, 2, 3, 1)  # (B, gh, gw, D)
        return self.norm(x)


def timestep_embedding(
    t: torch.Tensor,
    dim: int,
    max_period: float = 10000.0,
    flip_sin_to_cos: bool = True,
    downscale_freq_shift: float = 0.0,
) -> torch.Tensor:
    """
    Sinusoidal embedding of (possibly fractional) positions or noise levels.

    Args:
        t: 1D or 2D tensor of positions
        dim: Output width; odd widths are zero-padded by one channel
        max_period: Controls the lowest frequency
        flip_sin_to_cos: If True the cosine half comes first
        downscale_freq_shift: Shift of the frequency exponent denominator

    Returns:
        Tensor of shape (*t.shape, dim)
    """
    if t.dim() not in (1, 2):
        raise ShapeMismatchError(f"Timesteps should be a 1D or 2D tensor, got {t.dim()}D")

    half = dim // 2
    exponent = -math.log(max_period) * torch.arange(half, device=t.device, dtype=torch.float32)
    exponent = exponent / max(half - downscale_freq_shift, 1)
    args = t[..., None].float() * torch.exp(exponent)

    if flip_sin_to_cos:
        embedding = torch.cat([torch.cos(args), torch.sin(args)], dim=-1)
    else:
        embedding = torch.cat([torch.sin(args), torch.cos(args)], dim=-1)

    if dim % 2:
        embedding = torch.cat([embedding, torch.zeros_like(embedding[..., :1])], dim=-1)
    return embedding


class TimestepEmbedder(nn.Module):
    """Embeds scalar noise levels into vector representations."""
    def __init__(self, hidden_size: int, frequency_embedding_size: int = 256):
        super().__init__()
        self.hidden_size = hidden_size
        self.frequency_embedding_size = frequency_embedding_size

        self.mlp = nn.Sequential(
            nn.Linear(frequency_embedding_size, hidden_size),
            nn.SiLU(),
            nn.Linear(hidden_size, hidden_size),
        )

    @staticmethod
    def sinusoidal_embedding(t: torch.Tensor, dim: int) -> torch.Tensor:
        return timestep_embedding(t.reshape(-1), dim)

    def forward(self, t: torch.Tensor) -> torch.Tensor:
        t_freq = self.sinusoidal_embedding(t, self.frequency_embedding_size)
        return self.mlp(t_freq)


class TimePosEmbedding(nn.Module):
    """Additive sinusoidal embedding of frame indices, used when temporal rotary is off."""
    def __init__(self, dim: int):
        super().__init__()
        self.dim = dim

    def forward(self, num_frames: int, device: Optional[torch.device] = None) -> torch.Tensor:
        steps = torch.arange(num_frames, device=device, dtype=torch.float32)
        return timestep_embedding(steps, self.dim)  # (T, D)


class SpacePosEmbedding(nn.Module):
    """Additive 2D sinusoidal embedding, half the channels per axis."""
    def __init__(self, dim: int):
        super().__init__()
        if dim % 2:
            raise ValueError(f"2D position embedding needs an even dim, got {dim}")
        self.dim = dim

    def forward(self, height: int, width: int, device: Optional[torch.device] = None) -> torch.Tensor:
        h_steps = torch.arange(height, device=device, dtype=torch.float32)
        w_steps = torch.arange(width, device=device, dtype=torch.float32)
        h_grid, w_grid = torch.meshgrid(h_steps, w_steps, indexing='ij')
        h_emb = timestep_embedding(h_grid, self.dim // 2)
        w_emb = timestep_embedding(w_grid, self.dim // 2)
        return torch.cat([h_emb, w_emb], dim=-1)  # (H, W, D)


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class ActionBatch(NamedTuple):
    """Encoded actions: category ids (B, T, G) and continuous values (B, T, K)."""
    discrete: torch.Tensor
    continuous: torch.Tensor

    @property
    def num_frames(self) -> int:
        return self.discrete.shape[1]

    def window(self, start: int, end: int) -> 'ActionBatch':
        return ActionBatch(self.discrete[:, start:end], self.continuous[:, start:end])

    def to(self, device) -> 'ActionBatch':
        return ActionBatch(self.discrete.to(device), self.continuous.to(device))


class ActionSpace:
    """
    Layout of a per-frame action record.

    Each discrete group lists its categories; index 0 is the "nothing active"
    category. A record activates a category by mapping its name to a truthy
    value. Continuous components are read from ``continuous_key`` as a list.

    Example record::

        {"forward": 1, "camera": [0.1, -0.05], "interaction": 0}
    """

    def __init__(
        self,
        discrete_groups: Sequence[Tuple[str, Sequence[str]]] = (
            ('movement', ('none', 'forward', 'back', 'left', 'right')),
            ('interaction', ('none', 'interaction')),
        ),
        continuous_key: str = 'camera',
        num_continuous: int = 2,
    ):
        self.discrete_groups: List[Tuple[str, Tuple[str, ...]]] = [
            (name, tuple(categories)) for name, categories in discrete_groups
        ]
        for name, categories in self.discrete_groups:
            if len(categories) < 2:
                raise ValueError(f"Action group '{name}' needs a null category plus at least one action")
        self.continuous_key = continuous_key
        self.num_continuous = num_continuous

    @property
    def num_groups(self) -> int:
        return len(self.discrete_groups)

    @property
    def group_sizes(self) -> List[int]:
        return [len(categories) for _, categories in self.discrete_groups]

    @classmethod
    def from_dict(cls, config: Mapping) -> 'ActionSpace':
        groups = [(name, categories) for name, categories in config.get('discrete_groups', {}).items()]
        return cls(
            discrete_groups=groups,
            continuous_key=config.get('continuous_key', 'camera'),
            num_continuous=config.get('num_continuous', 2),
        )

    def encode_record(self, record: Mapping) -> Tuple[List[int], List[float]]:
        """Category id per group and the continuous components of one frame."""
        ids = []
        for name, categories in self.discrete_groups:
            active = [i for i, category in enumerate(categories[1:], start=1) if record.get(category)]
            if len(active) > 1:
                raise InvalidActionError(
                    f"More than one '{name}' action active: {[categories[i] for i in active]}"
                )
            ids.append(active[0] if active else 0)

        values = list(record.get(self.continuous_key, [0.0] * self.num_continuous))
        if len(values) != self.num_continuous:
            raise InvalidActionError(
                f"Expected {self.num_continuous} '{self.continuous_key}' values, got {len(values)}"
            )
        return ids, [float(v) for v in values]

    def encode(self, records: Sequence[Sequence[Mapping]], device: Optional[torch.device] = None) -> ActionBatch:
        """
        Encodes a (B x T) nested list of action records.

        Raises:
            InvalidActionError: If a record violates the action space
            ShapeMismatchError: If batch entries have different lengths
        """
        if len(records) == 0:
            raise ShapeMismatchError("Action sequence is empty")
        num_frames = len(records[0])
        discrete, continuous = [], []
        for sequence in records:
            if len(sequence) != num_frames:
                raise ShapeMismatchError(
                    f"All action sequences must have the same length, got {len(sequence)} and {num_frames}"
                )
            encoded = [self.encode_record(record) for record in sequence]
            discrete.append([ids for ids, _ in encoded])
            continuous.append([values for _, values in encoded])

        B = len(records)
        return ActionBatch(
            discrete=torch.tensor(discrete, dtype=torch.long, device=device).reshape(B, num_frames, self.num_groups),
            continuous=torch.tensor(continuous, dtype=torch.float32, device=device).reshape(
                B, num_frames, self.num_continuous
            ),
        )

    def null_actions(self, batch_size: int, num_frames: int, device: Optional[torch.device] = None) -> ActionBatch:
        return ActionBatch(
            discrete=torch.zeros(batch_size, num_frames, self.num_groups, dtype=torch.long, device=device),
            continuous=torch.zeros(batch_size, num_frames, self.num_continuous, device=device),
        )

    def to_dict(self) -> Dict:
        return {
            'discrete_groups': {name: list(categories) for name, categories in self.discrete_groups},
            'continuous_key': self.continuous_key,
            'num_continuous': self.num_continuous,
        }


class ActionEmbedder(nn.Module):
    """
    Embeds encoded actions into the conditioning space.

    Every discrete group has its own lookup table; the embeddings are
    concatenated with the continuous components and projected to hidden_size.
    """
    def __init__(self, action_space: ActionSpace, hidden_size: int, embedding_dim: int = 32):
        super().__init__()
        self.action_space = action_space
        self.embeds = nn.ModuleList([
            nn.Embedding(size, embedding_dim) for size in action_space.group_sizes
        ])
        in_features = embedding_dim * action_space.num_groups + action_space.num_continuous
        self.proj = nn.Linear(in_features, hidden_size)

    def forward(self, actions: ActionBatch) -> torch.Tensor:
        discrete, continuous = actions
        if discrete.shape[-1] != len(self.embeds):
            raise ShapeMismatchError(
                f"Expected {len(self.embeds)} discrete action groups, got {discrete.shape[-1]}"
            )
        if continuous.shape[-1] != self.action_space.num_continuous:
            raise ShapeMismatchError(
                f"Expected {self.action_space.num_continuous} continuous action values, got {continuous.shape[-1]}"
            )

        parts = [embed(discrete[..., i]) for i, embed in enumerate(self.embeds)]
        parts.append(continuous.to(self.proj.weight.dtype))
        return self.proj(torch.cat(parts, dim=-1))
