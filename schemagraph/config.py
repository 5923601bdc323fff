"""Configuration paths, defaults and the per-comparison configuration object."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional

BASE_DIR = Path(os.environ.get("SCHEMAGRAPH_HOME", str(Path.home() / ".schemagraph"))).expanduser()
USER_CONFIG_FILE = BASE_DIR / "config.toml"

# Per-repository state lives next to the code it describes.
STATE_DIRNAME = ".schemagraph"
GRAPH_DB_NAME = "graph.db"
GRAPH_SNAPSHOT_NAME = "graph.json"
DRIFT_REPORT_NAME = "drift.json"
REPO_CONFIG_NAME = "config.toml"

DEFAULT_MAX_DEPTH = 3
DEFAULT_DRIFT_THRESHOLD = 0.80
DEFAULT_GIT_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 4
DEFAULT_EDGE_CONFIDENCE = 0.9

SKIP_DIRS = {
    ".git", "node_modules", "dist", "build", "coverage",
    ".venv", "venv", "__pycache__", ".tox", STATE_DIRNAME,
}


def state_dir_for(repo_root: Path) -> Path:
    return Path(repo_root).resolve() / STATE_DIRNAME


def ensure_state_dir(repo_root: Path) -> Path:
    """Create the per-repository state directory if needed.

    The directory ignores itself so git never reports it as untracked.
    """
    path = state_dir_for(repo_root)
    path.mkdir(parents=True, exist_ok=True)
    ignore = path / ".gitignore"
    if not ignore.exists():
        ignore.write_text("*\n", encoding="utf-8")
    return path


@dataclass
class ComparisonConfig:
    """Explicit settings for one snapshot comparison run.

    Built once per run (usually via :meth:`load`) and handed to the
    :class:`~schemagraph.git_scanner.SnapshotComparator`; nothing in the
    core reads these values from module globals or the environment.
    """

    repo_path: Path
    timeout: float = DEFAULT_GIT_TIMEOUT
    max_workers: int = DEFAULT_MAX_WORKERS
    drift_threshold: float = DEFAULT_DRIFT_THRESHOLD
    patterns: Optional[List[str]] = None

    def __post_init__(self) -> None:
        self.repo_path = Path(self.repo_path).resolve()
        if self.timeout <= 0:
            raise ValueError("timeout must be positive")
        if self.max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        if not 0.0 <= self.drift_threshold <= 1.0:
            raise ValueError("drift_threshold must be within [0, 1]")

    @classmethod
    def load(cls, repo_path: Path, **overrides: Any) -> "ComparisonConfig":
        """Build a config from the TOML files, then apply explicit overrides."""
        from .config_manager import load_section

        git_cfg = load_section("git", repo_path)
        crawl_cfg = load_section("crawl", repo_path)
        drift_cfg = load_section("drift", repo_path)

        values: Dict[str, Any] = {
            "timeout": float(git_cfg.get("timeout", DEFAULT_GIT_TIMEOUT)),
            "max_workers": int(crawl_cfg.get("max_workers", DEFAULT_MAX_WORKERS)),
            "drift_threshold": float(drift_cfg.get("threshold", DEFAULT_DRIFT_THRESHOLD)),
            "patterns": crawl_cfg.get("patterns") or None,
        }
        values.update({k: v for k, v in overrides.items() if v is not None})
        return cls(repo_path=repo_path, **values)
