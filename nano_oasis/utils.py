import os
import random
import logging
import numpy as np
import torch
from typing import Optional

from .errors import ShapeMismatchError


def seed_everything(seed: int = 42):
    """Sets the random seed for reproducibility."""
    random.seed(seed)
    os.environ['PYTHONHASHSEED'] = str(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    if torch.cuda.is_available():
        torch.cuda.manual_seed(seed)
        torch.cuda.manual_seed_all(seed)
        torch.backends.cudnn.deterministic = True
        torch.backends.cudnn.benchmark = False


def get_logger(name: str, log_dir: Optional[str] = None, filename: str = 'generate.log') -> logging.Logger:
    """
    Configures a logger to output to console and file.
    Prevents duplicate handlers when called multiple times.
    """
    logger = logging.getLogger(name)

    # Clear existing handlers to prevent duplicates
    if logger.handlers:
        logger.handlers.clear()

    logger.setLevel(logging.INFO)
    logger.propagate = False  # Prevent propagation to root logger

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    # Console handler
    ch = logging.StreamHandler()
    ch.setLevel(logging.INFO)
    ch.setFormatter(formatter)
    logger.addHandler(ch)

    # File handler (optional)
    if log_dir:
        os.makedirs(log_dir, exist_ok=True)
        fh = logging.FileHandler(os.path.join(log_dir, filename))
        fh.setLevel(logging.INFO)
        fh.setFormatter(formatter)
        logger.addHandler(fh)

    return logger


def patchify(x: torch.Tensor, patch_size: int) -> torch.Tensor:
    """
    Reshapes a (N, C, H, W) latent frame batch into a (N, H/p, W/p, p*p*C) patch grid.

    The per-patch feature order is (row-in-patch, col-in-patch, channel), the
    same order the DiT final layer emits and ``unpatchify`` consumes.

    Args:
        x: Input tensor of shape (N, C, H, W)
        patch_size: Side length p of the square patches

    Returns:
        Tensor of shape (N, H/p, W/p, p*p*C)

    Raises:
        ShapeMismatchError: If input dimensions are not divisible by the patch size
    """
    if x.dim() != 4:
        raise ShapeMismatchError(f"Expected 4D tensor (N, C, H, W), got {x.dim()}D")

    N, C, H, W = x.shape
    p = patch_size

    if H % p != 0:
        raise ShapeMismatchError(f"Height {H} not divisible by patch size {p}")
    if W % p != 0:
        raise ShapeMismatchError(f"Width {W} not divisible by patch size {p}")

    # 1. Split both spatial axes into (grid, patch)
    x = x.reshape(N, C, H // p, p, W // p, p)

    # 2. Group patch content: (N, gh, gw, p, p, C)
    x = x.permute(0, 2, 4, 3, 5, 1)

    # 3. Flatten patch content
    return x.reshape(N, H // p, W // p, p * p * C)


def unpatchify(x: torch.Tensor, patch_size: int, channels: int) -> torch.Tensor:
    """
    Reconstructs latent frames from a patch grid.

    Args:
        x: Input tensor of shape (N, gh, gw, p*p*C)
        patch_size: Side length p of the square patches
        channels: Number of output channels C

    Returns:
        Tensor of shape (N, C, gh*p, gw*p)

    Raises:
        ShapeMismatchError: If the patch volume does not match p*p*C
    """
    if x.dim() != 4:
        raise ShapeMismatchError(f"Expected 4D tensor (N, gh, gw, patch_vol), got {x.dim()}D")

    N, gh, gw, patch_vol = x.shape
    p = patch_size

    if patch_vol != p * p * channels:
        raise ShapeMismatchError(f"Expected patch volume={p * p * channels}, got {patch_vol}")

    # 1. Unflatten patch content
    x = x.reshape(N, gh, gw, p, p, channels)

    # 2. Interleave grid and patch axes: (N, C, gh, p, gw, p)
    x = x.permute(0, 5, 1, 3, 2, 4)

    # 3. Fuse dimensions
    return x.reshape(N, channels, gh * p, gw * p)


def get_device() -> torch.device:
    """Get the best available device (CUDA if available, else CPU)."""
    if torch.cuda.is_available():
        return torch.device('cuda')
    elif hasattr(torch.backends, 'mps') and torch.backends.mps.is_available():
        return torch.device('mps')
    else:
        return torch.device('cpu')
