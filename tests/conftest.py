"""Pytest configuration and fixtures for SchemaGraph tests."""

import json
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Callable, Generator, List, Optional

import pytest

from schemagraph.extractor import Extractor, artifact_id
from schemagraph.fingerprints import FingerprintStore
from schemagraph.graph import GraphEngine
from schemagraph.models import ArtifactNode, ArtifactRecord, Property
from schemagraph.storage import GraphStore


class FakeExtractor(Extractor):
    """Reads artifacts from a tiny JSON format so tests need no parser grammar.

    File content::

        {"artifacts": [{"name": "UserDto", "kind": "dto",
                        "properties": [["id", "string", true]],
                        "intent": "...", "imports": ["models/base.schema"]}]}
    """

    def __init__(self):
        self.calls: List[str] = []

    def supports(self, file_path: str) -> bool:
        return file_path.endswith(".json")

    def extract(self, file_path: str, content: str) -> List[ArtifactRecord]:
        self.calls.append(file_path)
        payload = json.loads(content)
        records = []
        for item in payload.get("artifacts", []):
            records.append(ArtifactRecord(
                id=artifact_id(file_path, item["name"]),
                kind=item.get("kind", "schema"),
                name=item["name"],
                file_path=file_path,
                properties=[Property(*p) for p in item.get("properties", [])],
                intent=item.get("intent"),
                import_targets=list(item.get("imports", [])),
                import_confidence=dict(item.get("confidence", {})),
            ))
        return records


@pytest.fixture(autouse=True)
def _isolated_home(monkeypatch, tmp_path_factory):
    """Point the user-level config at a throw-away directory."""
    home = tmp_path_factory.mktemp("sg-home")
    monkeypatch.setattr("schemagraph.config.BASE_DIR", home)
    monkeypatch.setattr("schemagraph.config.USER_CONFIG_FILE", home / "config.toml")
    return home


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    tmp = Path(tempfile.mkdtemp())
    yield tmp
    shutil.rmtree(tmp, ignore_errors=True)


@pytest.fixture
def graph_store(temp_dir: Path) -> Generator[GraphStore, None, None]:
    """Create a GraphStore with temporary storage."""
    store = GraphStore(temp_dir / "state")
    yield store
    store.close()


@pytest.fixture
def engine(graph_store: GraphStore) -> GraphEngine:
    return GraphEngine(graph_store)


@pytest.fixture
def fingerprints(graph_store: GraphStore) -> FingerprintStore:
    return FingerprintStore(graph_store)


@pytest.fixture
def fake_extractor() -> FakeExtractor:
    return FakeExtractor()


@pytest.fixture
def repo_dir(temp_dir: Path) -> Path:
    """Empty source tree to crawl."""
    root = temp_dir / "repo"
    root.mkdir()
    return root


@pytest.fixture
def write_schema() -> Callable[..., Path]:
    """Write a FakeExtractor-format schema file under a root directory."""

    def _write(root: Path, rel: str, *artifacts: dict) -> Path:
        path = root / rel
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps({"artifacts": list(artifacts)}, indent=2), encoding="utf-8")
        return path

    return _write


@pytest.fixture
def make_node() -> Callable[..., ArtifactNode]:
    """Build an ArtifactNode from ``<file>:<Name>`` plus property tuples."""

    def _make(
        node_id: str,
        props=(),
        imports=(),
        intent: Optional[str] = None,
        kind: str = "schema",
        content_hash: str = "hash",
        confidence: Optional[dict] = None,
    ) -> ArtifactNode:
        file_path, _, name = node_id.rpartition(":")
        return ArtifactNode(
            id=node_id,
            kind=kind,
            name=name,
            file_path=file_path,
            content_hash=content_hash,
            properties=[Property(*p) for p in props],
            intent=intent,
            import_targets=list(imports),
            import_confidence=dict(confidence or {}),
        )

    return _make


# ---------------------------------------------------------------------------
# Git
# ---------------------------------------------------------------------------

def git(repo: Path, *args: str) -> str:
    result = subprocess.run(
        ["git", *args], cwd=str(repo), capture_output=True, text=True, timeout=30, check=True,
    )
    return result.stdout.strip()


@pytest.fixture
def git_repo(temp_dir: Path) -> Path:
    """A fresh repository on branch ``main`` with one empty commit."""
    if shutil.which("git") is None:
        pytest.skip("git is not installed")
    repo = temp_dir / "gitrepo"
    repo.mkdir()
    git(repo, "init", "-q")
    git(repo, "symbolic-ref", "HEAD", "refs/heads/main")
    git(repo, "config", "user.email", "dev@example.com")
    git(repo, "config", "user.name", "Schema Dev")
    git(repo, "config", "commit.gpgsign", "false")
    git(repo, "commit", "-q", "--allow-empty", "-m", "initial")
    return repo


@pytest.fixture
def run_git() -> Callable[..., str]:
    return git
