"""Axial attention over the spatial grid and over time."""

from typing import Optional

import torch
import torch.nn as nn
import torch.nn.functional as F

from .embeddings import SpacePosEmbedding, TimePosEmbedding
from .errors import ShapeMismatchError
from .rotary import RotaryEmbedding, apply_rotary_emb

MASK_BIAS = -1e9


def causal_bias(seq_len: int, device: torch.device, dtype: torch.dtype) -> torch.Tensor:
    """(seq_len, seq_len) additive bias: 0 on and below the diagonal, MASK_BIAS above it."""
    allowed = torch.ones(seq_len, seq_len, device=device, dtype=torch.bool).tril()
    bias = torch.zeros(seq_len, seq_len, device=device, dtype=dtype)
    return bias.masked_fill(~allowed, MASK_BIAS)


def axial_attention(
    q: torch.Tensor,
    k: torch.Tensor,
    v: torch.Tensor,
    is_causal: bool = False,
) -> torch.Tensor:
    """
    softmax(QK^T / sqrt(d)) V over the second to last axis.

    The causal mask is an additive bias on the scores, so masked entries still
    take part in the softmax normalization with ~zero weight.
    """
    attn_mask = None
    if is_causal:
        attn_mask = causal_bias(q.shape[-2], q.device, q.dtype)
    return F.scaled_dot_product_attention(q, k, v, attn_mask=attn_mask)


class SpatialAxialAttention(nn.Module):
    """
    Attention over the H*W patch grid of every frame independently.

    Input and output are (B, T, H, W, D); (B, T) is folded into the batch.
    """

    def __init__(
        self,
        dim: int,
        heads: int = 4,
        dim_head: int = 32,
        rotary_emb: Optional[RotaryEmbedding] = None,
    ):
        super().__init__()
        self.inner_dim = dim_head * heads
        self.heads = heads
        self.dim_head = dim_head

        self.to_qkv = nn.Linear(dim, self.inner_dim * 3, bias=False)
        self.to_out = nn.Linear(self.inner_dim, dim)

        self.rotary_emb = rotary_emb
        self.space_pos_embedding = SpacePosEmbedding(dim) if rotary_emb is None else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() != 5:
            raise ShapeMismatchError(f"Expected 5D tensor (B, T, H, W, D), got {x.dim()}D")
        B, T, H, W, D = x.shape

        if self.space_pos_embedding is not None:
            x = x + self.space_pos_embedding(H, W, device=x.device).to(x.dtype)

        qkv = self.to_qkv(x).reshape(B * T, H, W, 3, self.heads, self.dim_head)
        qkv = qkv.permute(3, 0, 4, 1, 2, 5)  # (3, B*T, heads, H, W, dim_head)
        q, k, v = qkv.unbind(0)

        if self.rotary_emb is not None:
            freqs = self.rotary_emb.get_axial_freqs(H, W)
            q = apply_rotary_emb(freqs, q)
            k = apply_rotary_emb(freqs, k)

        q, k, v = (t.reshape(B * T, self.heads, H * W, self.dim_head) for t in (q, k, v))
        out = axial_attention(q, k, v, is_causal=False)

        out = out.reshape(B, T, self.heads, H, W, self.dim_head)
        out = out.permute(0, 1, 3, 4, 2, 5).reshape(B, T, H, W, self.inner_dim)
        return self.to_out(out)


class TemporalAxialAttention(nn.Module):
    """
    Attention over time at every spatial position.

    Input and output are (B, T, H, W, D); (B, H, W) is folded into the batch.
    With ``is_causal`` a frame attends only to itself and earlier frames.
    """

    def __init__(
        self,
        dim: int,
        heads: int = 4,
        dim_head: int = 32,
        is_causal: bool = True,
        rotary_emb: Optional[RotaryEmbedding] = None,
    ):
        super().__init__()
        self.inner_dim = dim_head * heads
        self.heads = heads
        self.dim_head = dim_head
        self.is_causal = is_causal

        self.to_qkv = nn.Linear(dim, self.inner_dim * 3, bias=False)
        self.to_out = nn.Linear(self.inner_dim, dim)

        self.rotary_emb = rotary_emb
        self.time_pos_embedding = TimePosEmbedding(dim) if rotary_emb is None else None

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        if x.dim() != 5:
            raise ShapeMismatchError(f"Expected 5D tensor (B, T, H, W, D), got {x.dim()}D")
        B, T, H, W, D = x.shape

        if self.time_pos_embedding is not None:
            time_emb = self.time_pos_embedding(T, device=x.device).to(x.dtype)
            x = x + time_emb.reshape(1, T, 1, 1, D)

        qkv = self.to_qkv(x).reshape(B, T, H, W, 3, self.heads, self.dim_head)
        qkv = qkv.permute(4, 0, 2, 3, 5, 1, 6)  # (3, B, H, W, heads, T, dim_head)
        q, k, v = (t.reshape(B * H * W, self.heads, T, self.dim_head) for t in qkv.unbind(0))

        if self.rotary_emb is not None:
            q = self.rotary_emb.rotate_queries_or_keys(q)
            k = self.rotary_emb.rotate_queries_or_keys(k)

        out = axial_attention(q, k, v, is_causal=self.is_causal)

        out = out.reshape(B, H, W, self.heads, T, self.dim_head)
        out = out.permute(0, 4, 1, 2, 3, 5).reshape(B, T, H, W, self.inner_dim)
        return self.to_out(out)
