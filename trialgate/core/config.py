"""
Where trialgate finds its files.

engine.yaml and experiments.yaml live in config/ at the repository root,
or in TRIALGATE_CONFIG_DIR when set. Relative paths named inside those
files (such as audit.file) are resolved against the repository root, so
the demo and the tests behave the same from any working directory.
"""
from pathlib import Path
from typing import Union
import os

# trialgate/core/config.py -> trialgate -> repository root
_PROJECT_ROOT = Path(__file__).parent.parent.parent.resolve()

CONFIG_DIR = _PROJECT_ROOT / "config"

if os.getenv("TRIALGATE_CONFIG_DIR"):
    CONFIG_DIR = Path(os.getenv("TRIALGATE_CONFIG_DIR")).resolve()


def get_config_path(filename: str) -> Path:
    """Absolute path of engine.yaml / experiments.yaml; raises if missing."""
    path = CONFIG_DIR / filename
    if not path.exists():
        raise FileNotFoundError(
            f"Config file not found: {path}\n"
            f"Config directory: {CONFIG_DIR}\n"
            f"Project root: {_PROJECT_ROOT}"
        )
    return path


def resolve_project_path(path: Union[str, Path]) -> Path:
    """Absolute paths pass through; relative ones hang off the repository root."""
    path = Path(path)
    if path.is_absolute():
        return path
    return _PROJECT_ROOT / path
