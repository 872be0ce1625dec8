import os
from pathlib import Path

import yaml


def _package_root() -> Path:
    # kb_chat/utils/config_loader.py -> kb_chat/
    return Path(__file__).resolve().parents[1]


def load_config(config_path: str | None = None) -> dict:
    """
    Load the YAML config. Resolution order: explicit argument, CONFIG_PATH env
    variable, then the packaged kb_chat/config/config.yaml.
    """
    env_path = os.getenv("CONFIG_PATH", None)

    if config_path is None:
        config_path = env_path or str(_package_root() / "config" / "config.yaml")

    path = Path(config_path)

    if not path.is_absolute():
        path = Path.cwd() / path
    if not path.exists():
        raise FileNotFoundError(f"Config file not found at {path}")
    with open(path, "r", encoding="utf-8") as file:
        return yaml.safe_load(file) or {}
