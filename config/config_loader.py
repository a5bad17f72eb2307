"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All modules access configuration through this — never hardcoded values.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to config/ relative to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.environ.get(
            "SAVEPLUS_CONFIG", os.path.join(os.path.dirname(__file__), "config.yaml")
        )

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def _get_block(name: str) -> Dict[str, Any]:
    config = load_config()
    if name not in config:
        raise KeyError(
            f"No config block '{name}'. Available: {list(config.keys())}"
        )
    return config[name]


def get_recurring_detection_config() -> Dict[str, Any]:
    """Returns the recurring_detection block."""
    return _get_block("recurring_detection")


def get_merchant_normalization_config() -> Dict[str, Any]:
    """Returns the merchant_normalization block."""
    return _get_block("merchant_normalization")


def get_zombie_scoring_config() -> Dict[str, Any]:
    """Returns the zombie_scoring block."""
    return _get_block("zombie_scoring")


def get_price_hike_config() -> Dict[str, Any]:
    """Returns the price_hike block."""
    return _get_block("price_hike")


def get_anomaly_detection_config() -> Dict[str, Any]:
    """Returns the anomaly_detection block."""
    return _get_block("anomaly_detection")


def get_batch_config() -> Dict[str, Any]:
    return _get_block("batch")


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
