"""Rotary position embeddings for axial spatial and causal temporal attention."""

import math
import threading
from typing import Optional, Tuple

import torch
import torch.nn as nn

from .errors import ShapeMismatchError


def rotate_half(x: torch.Tensor) -> torch.Tensor:
    """Maps each consecutive pair (x_even, x_odd) to (-x_odd, x_even)."""
    x = x.reshape(*x.shape[:-1], -1, 2)
    x1, x2 = x.unbind(dim=-1)
    x = torch.stack((-x2, x1), dim=-1)
    return x.flatten(-2)


def apply_rotary_emb(
    freqs: torch.Tensor,
    t: torch.Tensor,
    start_index: int = 0,
    scale: float = 1.0,
    seq_dim: int = -2,
) -> torch.Tensor:
    """
    Rotates the channels ``t[..., start_index:start_index + rot_dim]`` by ``freqs``.

    Channels outside the rotated slice pass through unchanged, so a vector
    with an odd trailing dimension keeps its last channel as is.

    Args:
        freqs: Angle table whose last dim is the (even) rotation width
        t: Queries or keys; ``freqs`` must broadcast against the rotated slice
        start_index: First channel to rotate
        scale: Multiplier on cos/sin (xpos-style scaling)
        seq_dim: Sequence axis of ``t``, used to trim ``freqs`` for 3D inputs

    Raises:
        ShapeMismatchError: If the rotation is wider than the available channels
    """
    dtype = t.dtype

    if t.ndim == 3:
        seq_len = t.shape[seq_dim]
        freqs = freqs[-seq_len:]

    rot_dim = freqs.shape[-1]
    end_index = start_index + rot_dim

    if end_index > t.shape[-1]:
        raise ShapeMismatchError(
            f"Feature dimension {t.shape[-1]} is not large enough to rotate "
            f"positions {start_index}:{end_index}"
        )

    t_left = t[..., :start_index]
    t_middle = t[..., start_index:end_index]
    t_right = t[..., end_index:]

    t_middle = (t_middle * freqs.cos() * scale) + (rotate_half(t_middle) * freqs.sin() * scale)
    return torch.cat((t_left, t_middle, t_right), dim=-1).type(dtype)


class RotaryCache:
    """
    Holds one precomputed frequency table, either for positions
    ``0..cached_len-1`` or for a single axial grid identified by ``key``.

    The table is replaced as a whole, never mutated, so a reader that took a
    slice keeps a consistent view while another call re-caches. Requests past
    the cached length miss; tables longer than ``capacity`` are never stored.
    """

    def __init__(self, capacity: int = 8192):
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self._table: Optional[torch.Tensor] = None
        self._key: Optional[Tuple[int, ...]] = None
        self._lock = threading.Lock()

    @property
    def cached_len(self) -> int:
        table = self._table
        return 0 if table is None else table.shape[0]

    @property
    def cached_key(self) -> Optional[Tuple[int, ...]]:
        return self._key

    def lookup(self, offset: int, seq_len: int, device: torch.device) -> Optional[torch.Tensor]:
        with self._lock:
            table = self._table
        if table is None or table.device != device:
            return None
        if offset + seq_len > table.shape[0]:
            return None
        return table[offset:offset + seq_len]

    def lookup_key(self, key: Tuple[int, ...], device: torch.device) -> Optional[torch.Tensor]:
        """The whole table stored under ``key``, or None."""
        with self._lock:
            table, table_key = self._table, self._key
        if table is None or table_key != key or table.device != device:
            return None
        return table

    def store(self, table: torch.Tensor, key: Optional[Tuple[int, ...]] = None) -> bool:
        if table.shape[0] > self.capacity:
            return False
        with self._lock:
            self._table = table
            self._key = key
        return True

    def invalidate(self) -> None:
        with self._lock:
            self._table = None
            self._key = None

    def resize(self, capacity: int) -> None:
        if capacity < 1:
            raise ValueError(f"Cache capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.invalidate()


class RotaryEmbedding(nn.Module):
    """
    Frequency generator for rotary position embeddings.

    ``freqs_for="lang"`` uses log-spaced frequencies over integer positions
    (temporal axis); ``freqs_for="pixel"`` uses linearly spaced frequencies
    over positions normalized to [-1, 1] (spatial axes). No learned state.
    """

    def __init__(
        self,
        dim: int,
        freqs_for: str = 'lang',
        theta: float = 10000.0,
        max_freq: float = 10.0,
        interpolate_factor: float = 1.0,
        theta_rescale_factor: float = 1.0,
        cache_if_possible: bool = True,
        cache_max_seq_len: int = 8192,
    ):
        super().__init__()
        if dim < 2:
            raise ValueError(f"Rotary dim must be at least 2, got {dim}")
        if interpolate_factor < 1.0:
            raise ValueError(f"interpolate_factor must be >= 1, got {interpolate_factor}")

        if theta_rescale_factor != 1.0 and dim > 2:
            theta *= theta_rescale_factor ** (dim / (dim - 2))

        self.dim = dim
        self.freqs_for = freqs_for
        self.interpolate_factor = interpolate_factor
        num_freqs = dim // 2

        if freqs_for == 'lang':
            freqs = 1.0 / (theta ** (torch.arange(0, dim, 2)[:num_freqs].float() / dim))
        elif freqs_for == 'pixel':
            freqs = torch.linspace(1.0, max_freq / 2, num_freqs) * math.pi
        else:
            raise ValueError(f"Unknown freqs_for: {freqs_for}")

        self.register_buffer('freqs', freqs, persistent=False)

        self.cache_if_possible = cache_if_possible and freqs_for == 'lang'
        self.cache = RotaryCache(cache_max_seq_len)
        self.cache_axial = cache_if_possible
        self.axial_cache = RotaryCache(cache_max_seq_len)

    @property
    def rot_dim(self) -> int:
        """Width of the angle table returned for a single axis."""
        return self.freqs.shape[0] * 2

    def _apply(self, fn, *args, **kwargs):
        # Cached tables live on the old device after .to()/.cuda()
        self.cache.invalidate()
        self.axial_cache.invalidate()
        return super()._apply(fn, *args, **kwargs)

    def get_seq_pos(self, seq_len: int, offset: int = 0) -> torch.Tensor:
        pos = torch.arange(seq_len, device=self.freqs.device, dtype=self.freqs.dtype) + offset
        return pos / self.interpolate_factor

    def forward(self, positions: torch.Tensor) -> torch.Tensor:
        """Angle table of shape (*positions.shape, rot_dim)."""
        freqs = positions.to(self.freqs.dtype)[..., None] * self.freqs
        return freqs.repeat_interleave(2, dim=-1)

    def seq_freqs(self, seq_len: int, offset: int = 0) -> torch.Tensor:
        """Angles for positions ``offset .. offset + seq_len - 1``, served from the cache when possible."""
        if offset < 0:
            raise ValueError(f"Rotary positions must be non-negative, got offset={offset}")

        if not self.cache_if_possible:
            return self.forward(self.get_seq_pos(seq_len, offset))

        cached = self.cache.lookup(offset, seq_len, self.freqs.device)
        if cached is not None:
            return cached

        table = self.forward(self.get_seq_pos(offset + seq_len))
        self.cache.store(table)
        return table[offset:]

    def rotate_queries_or_keys(self, t: torch.Tensor, seq_dim: int = -2, offset: int = 0) -> torch.Tensor:
        seq_len = t.shape[seq_dim]
        freqs = self.seq_freqs(seq_len, offset)
        if seq_dim == -3:
            freqs = freqs.unsqueeze(-2)
        return apply_rotary_emb(freqs, t, seq_dim=seq_dim)

    def get_axial_freqs(self, *dims: int) -> torch.Tensor:
        """
        Combined table of shape (*dims, len(dims) * rot_dim), indexable by grid position.

        Pixel embeddings normalize each axis to [-1, 1]; language embeddings
        use integer positions. The most recent grid is cached; callers must
        not modify the returned table in place.
        """
        if self.cache_axial:
            cached = self.axial_cache.lookup_key(dims, self.freqs.device)
            if cached is not None:
                return cached

        all_freqs = []
        for ind, dim in enumerate(dims):
            if self.freqs_for == 'pixel':
                pos = torch.linspace(-1, 1, steps=dim, device=self.freqs.device)
            else:
                pos = torch.arange(dim, device=self.freqs.device)

            freqs = self.forward(pos)

            view_shape = [1] * len(dims)
            view_shape[ind] = dim
            freqs = freqs.reshape(*view_shape, self.rot_dim)
            all_freqs.append(freqs.expand(*dims, self.rot_dim))

        table = torch.cat(all_freqs, dim=-1)
        if self.cache_axial:
            self.axial_cache.store(table, key=dims)
        return table
