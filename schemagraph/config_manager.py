"""TOML configuration files for SchemaGraph.

Two files are consulted, later ones winning section by section:

1. ``~/.schemagraph/config.toml`` (or ``$SCHEMAGRAPH_HOME/config.toml``)
2. ``<repo>/.schemagraph/config.toml``

Recognised sections are ``[crawl]``, ``[drift]`` and ``[git]``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import toml

from . import config

logger = logging.getLogger(__name__)


DEFAULT_CONFIG: Dict[str, Dict[str, Any]] = {
    "crawl": {
        "max_workers": config.DEFAULT_MAX_WORKERS,
    },
    "drift": {
        "threshold": config.DEFAULT_DRIFT_THRESHOLD,
    },
    "git": {
        "timeout": config.DEFAULT_GIT_TIMEOUT,
    },
    "impact": {
        "max_depth": config.DEFAULT_MAX_DEPTH,
    },
}


def _config_files(repo_path: Optional[Path]) -> List[Path]:
    files = [config.USER_CONFIG_FILE]
    if repo_path is not None:
        files.append(config.state_dir_for(repo_path) / config.REPO_CONFIG_NAME)
    return files


def _read_toml(path: Path) -> Dict[str, Any]:
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            return toml.load(f)
    except (OSError, toml.TomlDecodeError) as exc:
        logger.warning("Ignoring unreadable config file %s: %s", path, exc)
        return {}


def load_full_config(repo_path: Optional[Path] = None) -> Dict[str, Dict[str, Any]]:
    """Load defaults merged with the user-level and repository-level files."""
    merged: Dict[str, Dict[str, Any]] = {name: dict(values) for name, values in DEFAULT_CONFIG.items()}
    for path in _config_files(repo_path):
        for section, values in _read_toml(path).items():
            if isinstance(values, dict):
                merged.setdefault(section, {}).update(values)
    return merged


def load_section(name: str, repo_path: Optional[Path] = None) -> Dict[str, Any]:
    return load_full_config(repo_path).get(name, {})


def save_section(name: str, values: Dict[str, Any], repo_path: Optional[Path] = None) -> Path:
    """Write one section, preserving the others in the same file.

    Args:
        name: Section name, e.g. ``"drift"``.
        values: Keys to store under the section (replaces the section).
        repo_path: When given, writes the repository-level file instead of
            the user-level one.

    Returns:
        Path of the file written.
    """
    if repo_path is not None:
        target = config.ensure_state_dir(repo_path) / config.REPO_CONFIG_NAME
    else:
        config.BASE_DIR.mkdir(parents=True, exist_ok=True)
        target = config.USER_CONFIG_FILE

    current = _read_toml(target)
    current[name] = dict(values)
    with open(target, "w", encoding="utf-8") as f:
        toml.dump(current, f)
    return target
