"""Nano-Oasis: spatio-temporal Diffusion Transformer for action-conditioned video."""

from collections import OrderedDict
from typing import Iterable, Mapping, NamedTuple, Optional, Tuple, Union

import torch
import torch.nn as nn

from .attention import SpatialAxialAttention, TemporalAxialAttention
from .embeddings import ActionBatch, ActionEmbedder, ActionSpace, PatchEmbed, TimestepEmbedder
from .errors import MissingParameterError, ShapeMismatchError, UnexpectedParameterError
from .rotary import RotaryEmbedding
from .utils import unpatchify


class Modulation(NamedTuple):
    shift_msa: torch.Tensor
    scale_msa: torch.Tensor
    gate_msa: torch.Tensor
    shift_mlp: torch.Tensor
    scale_mlp: torch.Tensor
    gate_mlp: torch.Tensor


def split_modulation(vector: torch.Tensor) -> Modulation:
    """Splits a (..., 6 * D) AdaLN output into its six named (..., D) chunks."""
    return Modulation(*vector.chunk(6, dim=-1))


def _expand_like(c: torch.Tensor, x: torch.Tensor) -> torch.Tensor:
    # (B, T, D) -> (B, T, 1, ..., 1, D)
    while c.dim() < x.dim():
        c = c.unsqueeze(-2)
    return c


def modulate(x: torch.Tensor, shift: torch.Tensor, scale: torch.Tensor) -> torch.Tensor:
    return x * (1 + _expand_like(scale, x)) + _expand_like(shift, x)


def gate(x: torch.Tensor, g: torch.Tensor) -> torch.Tensor:
    return _expand_like(g, x) * x


class FeedForward(nn.Module):
    def __init__(self, hidden_size: int, mlp_ratio: float = 4.0, dropout: float = 0.0):
        super().__init__()
        mlp_dim = int(hidden_size * mlp_ratio)
        self.net = nn.Sequential(
            nn.Linear(hidden_size, mlp_dim),
            nn.GELU(approximate="tanh"),
            nn.Dropout(dropout),
            nn.Linear(mlp_dim, hidden_size),
            nn.Dropout(dropout),
        )

    def forward(self, x: torch.Tensor) -> torch.Tensor:
        return self.net(x)


class SpatioTemporalDiTBlock(nn.Module):
    """
    DiT block with a spatial and a temporal sub-block, each AdaLN-Zero conditioned.

    Each sub-block runs modulated attention and a modulated MLP, both added
    back through gated residuals. x is (B, T, H, W, D), c is (B, T, D).
    """
    def __init__(
        self,
        hidden_size: int,
        num_heads: int,
        mlp_ratio: float = 4.0,
        is_causal: bool = True,
        spatial_rotary_emb: Optional[RotaryEmbedding] = None,
        temporal_rotary_emb: Optional[RotaryEmbedding] = None,
        dropout: float = 0.0,
    ):
        super().__init__()
        self.hidden_size = hidden_size
        self.num_heads = num_heads
        self.is_causal = is_causal
        dim_head = hidden_size // num_heads

        # Spatial sub-block
        self.s_norm1 = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.s_attn = SpatialAxialAttention(hidden_size, num_heads, dim_head, rotary_emb=spatial_rotary_emb)
        self.s_norm2 = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.s_mlp = FeedForward(hidden_size, mlp_ratio, dropout)
        self.s_adaLN_modulation = nn.Sequential(
            nn.SiLU(),
            nn.Linear(hidden_size, 6 * hidden_size, bias=True)
        )

        # Temporal sub-block
        self.t_norm1 = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.t_attn = TemporalAxialAttention(
            hidden_size, num_heads, dim_head, is_causal=is_causal, rotary_emb=temporal_rotary_emb
        )
        self.t_norm2 = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.t_mlp = FeedForward(hidden_size, mlp_ratio, dropout)
        self.t_adaLN_modulation = nn.Sequential(
            nn.SiLU(),
            nn.Linear(hidden_size, 6 * hidden_size, bias=True)
        )

        # Zero-Init
        for modulation in (self.s_adaLN_modulation, self.t_adaLN_modulation):
            nn.init.constant_(modulation[-1].weight, 0)
            nn.init.constant_(modulation[-1].bias, 0)

    @staticmethod
    def _sub_block(x, c, adaLN_modulation, norm1, attn, norm2, mlp):
        m = split_modulation(adaLN_modulation(c))
        x = x + gate(attn(modulate(norm1(x), m.shift_msa, m.scale_msa)), m.gate_msa)
        x = x + gate(mlp(modulate(norm2(x), m.shift_mlp, m.scale_mlp)), m.gate_mlp)
        return x

    def forward(self, x: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
        x = self._sub_block(x, c, self.s_adaLN_modulation, self.s_norm1, self.s_attn, self.s_norm2, self.s_mlp)
        x = self._sub_block(x, c, self.t_adaLN_modulation, self.t_norm1, self.t_attn, self.t_norm2, self.t_mlp)
        return x


class FinalLayer(nn.Module):
    """AdaLN-modulated projection from hidden_size to patch_size**2 * out_channels."""
    def __init__(self, hidden_size: int, patch_size: int, out_channels: int):
        super().__init__()
        self.norm_final = nn.LayerNorm(hidden_size, elementwise_affine=False, eps=1e-6)
        self.linear = nn.Linear(hidden_size, patch_size * patch_size * out_channels, bias=True)
        self.adaLN_modulation = nn.Sequential(
            nn.SiLU(),
            nn.Linear(hidden_size, 2 * hidden_size, bias=True)
        )

    def forward(self, x: torch.Tensor, c: torch.Tensor) -> torch.Tensor:
        shift, scale = self.adaLN_modulation(c).chunk(2, dim=-1)
        x = modulate(self.norm_final(x), shift, scale)
        return self.linear(x)


class DiT(nn.Module):
    """
    Spatio-temporal Diffusion Transformer over latent video windows.

    Predicts the v-parameterized denoising target for every frame of a
    (B, T, C, H, W) latent window, given per-frame noise levels (B, T) and
    optional per-frame actions.
    """
    def __init__(
        self,
        input_h: int = 18,
        input_w: int = 32,
        patch_size: int = 2,
        in_channels: int = 16,
        hidden_size: int = 1024,
        depth: int = 16,
        num_heads: int = 16,
        mlp_ratio: float = 4.0,
        action_space: Optional[ActionSpace] = None,
        action_embedding_dim: int = 32,
        use_actions: bool = True,
        max_frames: int = 32,
        use_rotary: bool = True,
        is_causal: bool = True,
        dropout: float = 0.0,
        frequency_embedding_size: int = 256,
    ):
        super().__init__()
        if hidden_size % num_heads != 0:
            raise ValueError(f"hidden_size={hidden_size} must be divisible by num_heads={num_heads}")

        self.input_h = input_h
        self.input_w = input_w
        self.patch_size = patch_size
        self.in_channels = in_channels
        self.out_channels = in_channels
        self.hidden_size = hidden_size
        self.depth = depth
        self.num_heads = num_heads
        self.max_frames = max_frames

        self.x_embedder = PatchEmbed(input_h, input_w, patch_size, in_channels, hidden_size, flatten=False)
        self.t_embedder = TimestepEmbedder(hidden_size, frequency_embedding_size)

        if use_actions:
            self.action_space = action_space if action_space is not None else ActionSpace()
            self.action_embedder = ActionEmbedder(self.action_space, hidden_size, action_embedding_dim)
        else:
            self.action_space = None
            self.action_embedder = None

        dim_head = hidden_size // num_heads
        if use_rotary:
            self.spatial_rotary_emb = RotaryEmbedding(dim_head // 2, freqs_for='pixel', max_freq=256)
            self.temporal_rotary_emb = RotaryEmbedding(dim_head)
        else:
            self.spatial_rotary_emb = None
            self.temporal_rotary_emb = None

        self.blocks = nn.ModuleList([
            SpatioTemporalDiTBlock(
                hidden_size,
                num_heads,
                mlp_ratio,
                is_causal=is_causal,
                spatial_rotary_emb=self.spatial_rotary_emb,
                temporal_rotary_emb=self.temporal_rotary_emb,
                dropout=dropout,
            )
            for _ in range(depth)
        ])
        self.final_layer = FinalLayer(hidden_size, patch_size, self.out_channels)

        self.initialize_weights()

    def initialize_weights(self):
        def _basic_init(module):
            if isinstance(module, nn.Linear):
                nn.init.xavier_uniform_(module.weight)
                if module.bias is not None:
                    nn.init.constant_(module.bias, 0)
        self.apply(_basic_init)

        # Patch projection initialized like nn.Linear
        w = self.x_embedder.proj.weight.data
        nn.init.xavier_uniform_(w.view([w.shape[0], -1]))
        nn.init.constant_(self.x_embedder.proj.bias, 0)

        nn.init.normal_(self.t_embedder.mlp[0].weight, std=0.02)
        nn.init.normal_(self.t_embedder.mlp[2].weight, std=0.02)

        # AdaLN-Zero
        for block in self.blocks:
            for modulation in (block.s_adaLN_modulation, block.t_adaLN_modulation):
                nn.init.constant_(modulation[-1].weight, 0)
                nn.init.constant_(modulation[-1].bias, 0)

        nn.init.constant_(self.final_layer.adaLN_modulation[-1].weight, 0)
        nn.init.constant_(self.final_layer.adaLN_modulation[-1].bias, 0)
        nn.init.constant_(self.final_layer.linear.weight, 0)
        nn.init.constant_(self.final_layer.linear.bias, 0)

    def unpatchify(self, x: torch.Tensor) -> torch.Tensor:
        """(N, gh, gw, patch_size**2 * C) -> (N, C, H, W)"""
        return unpatchify(x, self.patch_size, self.out_channels)

    def condition(self, t: torch.Tensor, actions: Optional[ActionBatch] = None) -> torch.Tensor:
        """Per-frame conditioning vector (B, T, D): timestep embedding plus action embedding."""
        B, T = t.shape
        c = self.t_embedder(t.reshape(-1)).reshape(B, T, self.hidden_size)

        if actions is not None:
            if self.action_embedder is None:
                raise ShapeMismatchError("Actions were given but the model has no action conditioning")
            if actions.discrete.shape[:2] != (B, T) or actions.continuous.shape[:2] != (B, T):
                raise ShapeMismatchError(
                    f"Action window {tuple(actions.discrete.shape[:2])} doesn't match frame window {(B, T)}"
                )
            c = c + self.action_embedder(actions)
        return c

    def forward(self, x: torch.Tensor, t: torch.Tensor, actions: Optional[ActionBatch] = None) -> torch.Tensor:
        """
        Args:
            x: Noisy latents of shape (B, T, C, H, W)
            t: Integer noise levels of shape (B, T)
            actions: Optional actions covering the same T frames

        Returns:
            Prediction of shape (B, T, C, H, W)
        """
        if x.dim() != 5:
            raise ShapeMismatchError(f"Expected 5D tensor (B, T, C, H, W), got {x.dim()}D")
        B, T, C, H, W = x.shape
        if tuple(t.shape) != (B, T):
            raise ShapeMismatchError(f"Expected noise levels of shape {(B, T)}, got {tuple(t.shape)}")
        if T > self.max_frames:
            raise ShapeMismatchError(f"Window of {T} frames exceeds max_frames={self.max_frames}")

        x = self.x_embedder(x.reshape(B * T, C, H, W))
        gh, gw = self.x_embedder.grid_size
        x = x.reshape(B, T, gh, gw, self.hidden_size)

        c = self.condition(t, actions)

        for block in self.blocks:
            x = block(x, c)

        x = self.final_layer(x, c)  # (B, T, gh, gw, p*p*C)
        x = self.unpatchify(x.reshape(B * T, gh, gw, -1))
        return x.reshape(B, T, self.out_channels, H, W)

    def get_num_params(self) -> int:
        return sum(p.numel() for p in self.parameters())


NamedTensors = Union[Mapping[str, torch.Tensor], Iterable[Tuple[str, torch.Tensor]]]


def load_weights(model: nn.Module, named_tensors: NamedTensors) -> nn.Module:
    """
    Loads an ordered name -> tensor collection into ``model``.

    Every entry of ``model.state_dict()`` must be supplied with a matching
    shape; nothing is left at its initialized value.

    Raises:
        MissingParameterError: If a model parameter is not supplied
        UnexpectedParameterError: If a supplied name is not a model parameter
        ShapeMismatchError: If a supplied tensor has the wrong shape
    """
    items = named_tensors.items() if isinstance(named_tensors, Mapping) else named_tensors
    provided = OrderedDict(items)
    expected = model.state_dict()

    missing = [name for name in expected if name not in provided]
    if missing:
        raise MissingParameterError(missing)

    unexpected = [name for name in provided if name not in expected]
    if unexpected:
        raise UnexpectedParameterError(unexpected)

    for name, tensor in expected.items():
        if tuple(provided[name].shape) != tuple(tensor.shape):
            raise ShapeMismatchError(
                f"Parameter '{name}' has shape {tuple(provided[name].shape)}, expected {tuple(tensor.shape)}"
            )

    model.load_state_dict(provided, strict=True)
    return model
