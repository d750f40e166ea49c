import argparse
import yaml
import os
from typing import Dict, Any, List, Optional

from .embeddings import ActionSpace
from .sampler import SamplingConfig

# Required config keys for validation
REQUIRED_KEYS = {
    'experiment': ['name', 'seed', 'output_dir'],
    'model': ['input_h', 'input_w', 'patch_size', 'in_channels', 'hidden_size', 'depth', 'num_heads'],
    'sampling': ['ddim_noise_steps', 'max_noise_level', 'noise_abs_max', 'n_prompt_frames', 'total_frames'],
    'codec': ['scaling_factor'],
}

# model keys that are not DiT constructor arguments
_MODEL_EXTRA_KEYS = ('action_space',)
# sampling keys that are not SamplingConfig fields
_SAMPLING_EXTRA_KEYS = ('total_frames',)


def validate_config(config: Dict[str, Any]) -> List[str]:
    """
    Validate that all required config keys are present.

    Returns:
        List of missing keys (empty if valid)
    """
    missing = []
    for section, keys in REQUIRED_KEYS.items():
        if section not in config:
            missing.append(f"Section '{section}'")
            continue
        for key in keys:
            if key not in config[section]:
                missing.append(f"'{section}.{key}'")
    return missing


def load_config(config_path: str) -> Dict[str, Any]:
    """
    Load and validate a YAML configuration file.

    Args:
        config_path: Path to the YAML config file

    Returns:
        Validated configuration dictionary

    Raises:
        FileNotFoundError: If config file doesn't exist
        ValueError: If required keys are missing
    """
    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        config = yaml.safe_load(f)

    if not isinstance(config, dict):
        raise ValueError(f"Config file must contain a mapping: {config_path}")

    missing = validate_config(config)
    if missing:
        raise ValueError(f"Missing required config keys: {', '.join(missing)}")

    return config


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    """
    Parses CLI arguments for a generation run.
    Sampling parameters given here override the config file.
    """
    parser = argparse.ArgumentParser(
        description="Nano-Oasis: action-conditioned autoregressive latent video generation"
    )

    parser.add_argument('--config', type=str, default='configs/default.yaml',
                        help='Path to config file')
    parser.add_argument('--checkpoint', type=str, default=None,
                        help='Path to a torch-saved state dict with the model weights')
    parser.add_argument('--prompt', type=str, default=None,
                        help='Prompt frames (.pt or .npy) of shape (B, T, C, H, W) or (T, C, H, W)')
    parser.add_argument('--actions', type=str, default=None,
                        help='YAML/JSON file with a list of per-frame action records')

    # Sampling overrides
    parser.add_argument('--total_frames', type=int, default=None,
                        help='Override number of output frames (prompt included)')
    parser.add_argument('--ddim_noise_steps', type=int, default=None,
                        help='Override denoising steps per frame')
    parser.add_argument('--ctx_max_noise_idx', type=int, default=None,
                        help='Override context noise cap (step index)')
    parser.add_argument('--noise_abs_max', type=float, default=None,
                        help='Override noise clipping bound')
    parser.add_argument('--n_prompt_frames', type=int, default=None,
                        help='Override number of prompt frames')
    parser.add_argument('--max_frames', type=int, default=None,
                        help='Override sliding window length')
    parser.add_argument('--no_progress', action='store_true',
                        help='Disable the progress bar')

    # Experiment overrides
    parser.add_argument('--name', type=str, default=None,
                        help='Override experiment name')
    parser.add_argument('--seed', type=int, default=None,
                        help='Override random seed')
    parser.add_argument('--output_dir', type=str, default=None,
                        help='Override output directory')

    return parser.parse_args(argv)


def merge_config(config: Dict[str, Any], args: argparse.Namespace) -> Dict[str, Any]:
    """
    Merges CLI args into the nested config dictionary.
    CLI arguments take precedence over config file values.

    Args:
        config: Base configuration from YAML file
        args: Parsed command line arguments

    Returns:
        Merged configuration dictionary
    """
    # Sampling overrides
    for key in ('total_frames', 'ddim_noise_steps', 'ctx_max_noise_idx',
                'noise_abs_max', 'n_prompt_frames', 'max_frames'):
        value = getattr(args, key, None)
        if value is not None:
            config['sampling'][key] = value
    if getattr(args, 'no_progress', False):
        config['sampling']['show_progress'] = False

    # Experiment overrides
    if args.name is not None:
        config['experiment']['name'] = args.name
    if args.seed is not None:
        config['experiment']['seed'] = args.seed
    if args.output_dir is not None:
        config['experiment']['output_dir'] = args.output_dir

    return config


def model_kwargs(config: Dict[str, Any]) -> Dict[str, Any]:
    """DiT constructor arguments from the 'model' section."""
    kwargs = {k: v for k, v in config['model'].items() if k not in _MODEL_EXTRA_KEYS}
    if 'action_space' in config['model']:
        kwargs['action_space'] = ActionSpace.from_dict(config['model']['action_space'])
    return kwargs


def sampling_config(config: Dict[str, Any]) -> SamplingConfig:
    """SamplingConfig from the 'sampling' section; the experiment seed is used if none is set."""
    options = {k: v for k, v in config['sampling'].items() if k not in _SAMPLING_EXTRA_KEYS}
    options.setdefault('seed', config['experiment'].get('seed'))
    return SamplingConfig.from_dict(options)


def save_config(config: Dict[str, Any], path: str) -> None:
    """Save configuration to a YAML file."""
    os.makedirs(os.path.dirname(path) or '.', exist_ok=True)
    with open(path, 'w') as f:
        yaml.dump(config, f, default_flow_style=False, sort_keys=False)


def print_config(config: Dict[str, Any]) -> None:
    """Pretty print configuration."""
    print("\n" + "=" * 50)
    print("Configuration")
    print("=" * 50)
    for section, values in config.items():
        print(f"\n[{section}]")
        if isinstance(values, dict):
            for key, value in values.items():
                print(f"  {key}: {value}")
        else:
            print(f"  {values}")
    print("=" * 50 + "\n")
