"""
Path utilities for consistent path resolution across the codebase.

Usage:
    from spokenkb.utils.paths import get_project_root, get_config_path

    root = get_project_root()
    config = get_config_path()
"""
from pathlib import Path
from typing import Optional
import os

# Cache the project root
_project_root: Optional[Path] = None


def get_project_root() -> Path:
    """Get the project root directory (where config/ lives).

    SPOKENKB_ROOT overrides the location, otherwise this file's position in
    src/spokenkb/utils/ is used.

    Returns:
        Path to project root
    """
    global _project_root
    if _project_root is None:
        override = os.environ.get('SPOKENKB_ROOT')
        if override:
            _project_root = Path(override).resolve()
        else:
            _project_root = Path(__file__).parent.parent.parent.parent.resolve()
    return _project_root


def get_env_path() -> Path:
    """Get the path to the .env file."""
    return get_project_root() / '.env'


def get_config_path(filename: str = "config.yaml") -> Path:
    """Get path to a config file.

    Args:
        filename: Config filename (default: config.yaml)

    Returns:
        Path to config file
    """
    env_path = os.environ.get('SPOKENKB_CONFIG')
    if env_path and filename == "config.yaml":
        return Path(env_path)
    return get_project_root() / "config" / filename


def ensure_dir(path: Path) -> Path:
    """Ensure a directory exists, creating if necessary.

    Args:
        path: Directory path

    Returns:
        The same path (for chaining)
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
