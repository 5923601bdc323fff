"""Git integration: compare artifact graphs between two repository states.

A comparison rebuilds the graph twice from scratch, once per repository
state, in throw-away in-memory stores, and diffs the two snapshots. The
working tree is mutated along the way (checkout, stash), so every
comparison runs under the repository lock and always restores the
original branch and stash before returning, including on error.
"""

from __future__ import annotations

import logging
import re
import subprocess
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional

from .config import ComparisonConfig, DEFAULT_GIT_TIMEOUT
from .crawler import Crawler
from .diff_engine import DiffEngine
from .errors import GitCommandError, OperationTimeout, RepositoryStateError
from .extractor import Extractor, is_schema_file
from .fingerprints import FingerprintStore
from .graph import GraphEngine
from .intent_drift import IntentDriftDetector
from .locks import RepositoryLock
from .models import ArtifactNode, ComparisonResult
from .storage import GraphStore

logger = logging.getLogger(__name__)

MODE_COMMIT_RANGE = "commit-range"
MODE_WORKING_TREE = "working-tree"
WORKING_TREE_REF = "working-tree"

STASH_MESSAGE = "schemagraph-temp-scan"

_REMOTE_NAME = re.compile(r"[:/]([^/:]+/[^/]+?)(?:\.git)?/?$")


class ComparisonState(str, Enum):
    START = "START"
    RESOLVE_REFS = "RESOLVE_REFS"
    LIST_CHANGED_FILES = "LIST_CHANGED_FILES"
    SAVE_CURRENT_STATE = "SAVE_CURRENT_STATE"
    CHECKOUT_BASE = "CHECKOUT_BASE"
    BUILD_BASE_GRAPH = "BUILD_BASE_GRAPH"
    CHECKOUT_HEAD = "CHECKOUT_HEAD"
    RESTORE_WORKDIR = "RESTORE_WORKDIR"
    BUILD_HEAD_GRAPH = "BUILD_HEAD_GRAPH"
    DIFF = "DIFF"
    RESTORE_CURRENT_STATE = "RESTORE_CURRENT_STATE"
    DONE = "DONE"


class GitRepository:
    """Thin, timeout-bounded wrapper around the ``git`` executable.

    Every command runs with ``cwd`` set to :attr:`path`; path-listing
    commands use ``--relative`` so results are relative to that directory.
    """

    def __init__(self, path: Path, timeout: float = DEFAULT_GIT_TIMEOUT):
        self.path = Path(path).resolve()
        self.timeout = timeout

    def run(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run ``git <args>`` and return the completed process.

        Raises:
            OperationTimeout: if git did not finish within :attr:`timeout`
            RepositoryStateError: if git is not installed
            GitCommandError: on non-zero exit when *check* is true
        """
        command = ["git", *args]
        logger.debug("Running %s in %s", " ".join(command), self.path)
        try:
            result = subprocess.run(
                command,
                cwd=str(self.path),
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired as exc:
            raise OperationTimeout(" ".join(command), self.timeout) from exc
        except FileNotFoundError as exc:
            raise RepositoryStateError("git executable not found on PATH") from exc

        if check and result.returncode != 0:
            raise GitCommandError(args, result.returncode, result.stderr)
        return result

    def _output(self, *args: str) -> str:
        return self.run(*args).stdout.strip()

    # ------------------------------------------------------------------
    # Preconditions and refs
    # ------------------------------------------------------------------

    def ensure_repository(self) -> None:
        result = self.run("rev-parse", "--is-inside-work-tree", check=False)
        if result.returncode != 0 or result.stdout.strip() != "true":
            raise RepositoryStateError(f"Not a git repository: {self.path}")

    def toplevel(self) -> Path:
        return Path(self._output("rev-parse", "--show-toplevel")).resolve()

    def resolve_ref(self, ref: str) -> str:
        """Resolve a branch, tag or commit-ish to a full commit hash."""
        result = self.run("rev-parse", "--verify", "--quiet", f"{ref}^{{commit}}", check=False)
        sha = result.stdout.strip()
        if result.returncode != 0 or not sha:
            raise RepositoryStateError(f"Failed to resolve git ref: {ref}")
        return sha

    def current_commit(self) -> str:
        return self.resolve_ref("HEAD")

    def current_branch(self) -> Optional[str]:
        """Checked-out branch name, or None when HEAD is detached."""
        result = self.run("symbolic-ref", "-q", "--short", "HEAD", check=False)
        branch = result.stdout.strip()
        return branch if result.returncode == 0 and branch else None

    # ------------------------------------------------------------------
    # Changed files
    # ------------------------------------------------------------------

    def changed_files(self, base: str, head: str, patterns: Optional[List[str]] = None) -> List[str]:
        """Schema files that differ between two commits."""
        output = self._output("diff", "--name-only", "--relative", base, head)
        return _filter_schema_files(output.splitlines(), patterns)

    def working_tree_changes(self, patterns: Optional[List[str]] = None) -> List[str]:
        """Schema files with uncommitted changes, untracked files included."""
        tracked = self._output("diff", "--name-only", "--relative", "HEAD").splitlines()
        untracked = self._output("ls-files", "--others", "--exclude-standard").splitlines()
        return _filter_schema_files(tracked + untracked, patterns)

    def is_clean(self) -> bool:
        return not self._output("status", "--porcelain")

    # ------------------------------------------------------------------
    # Mutating operations
    # ------------------------------------------------------------------

    def _stash_ref(self) -> str:
        return self.run("rev-parse", "-q", "--verify", "refs/stash", check=False).stdout.strip()

    def stash_push(self, message: str = STASH_MESSAGE) -> bool:
        """Stash tracked and untracked changes.

        Returns:
            True if a stash entry was created
        """
        before = self._stash_ref()
        self.run("stash", "push", "--include-untracked", "-m", message)
        created = self._stash_ref() != before
        logger.debug("git stash push created=%s", created)
        return created

    def stash_pop(self) -> None:
        self.run("stash", "pop", "--index")

    def checkout(self, target: str, detach: bool = False) -> None:
        if detach:
            self.run("checkout", "--quiet", "--detach", target)
        else:
            self.run("checkout", "--quiet", target)

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    def repository_name(self) -> str:
        """``owner/repo`` derived from the origin remote, or ``unknown``."""
        result = self.run("config", "--get", "remote.origin.url", check=False)
        match = _REMOTE_NAME.search(result.stdout.strip()) if result.returncode == 0 else None
        return match.group(1) if match else "unknown"

    def commit_message(self, commit: str = "HEAD") -> str:
        result = self.run("log", "-1", "--pretty=%B", commit, check=False)
        return result.stdout.strip() if result.returncode == 0 else ""

    def commit_author(self, commit: str = "HEAD") -> str:
        result = self.run("log", "-1", "--pretty=%an", commit, check=False)
        return result.stdout.strip() if result.returncode == 0 else ""


class SnapshotComparator:
    """Builds and diffs the artifact graph at two repository states.

    Usage::

        with SnapshotComparator(ComparisonConfig.load(repo), extractor) as cmp:
            result = cmp.compare_working_tree()

    The comparator never touches the long-lived graph or fingerprints of
    the repository; both snapshots live in scratch in-memory stores.
    """

    def __init__(
        self,
        config: ComparisonConfig,
        extractor: Extractor,
        repository: Optional[GitRepository] = None,
    ):
        self.config = config
        self.extractor = extractor
        self.repository = repository or GitRepository(config.repo_path, config.timeout)
        self.diff_engine = DiffEngine()
        self.drift_detector = IntentDriftDetector(config.drift_threshold)
        self._states: List[str] = []
        self._closed = False

    def __enter__(self) -> "SnapshotComparator":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def close(self) -> None:
        self._closed = True

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def compare_commits(self, base_ref: str, head_ref: str = "HEAD") -> ComparisonResult:
        """Diff the artifact graph of *base_ref* against *head_ref*.

        Raises:
            RepositoryStateError: not a repository, unresolvable ref, or the
                original branch/stash could not be restored
            OperationTimeout: a git call or a crawl exceeded the timeout
        """
        self._begin()
        repo = self.repository
        self._enter(ComparisonState.RESOLVE_REFS)
        repo.ensure_repository()

        with RepositoryLock.for_path(repo.toplevel()).hold(self.config.timeout):
            base_commit = repo.resolve_ref(base_ref)
            head_commit = repo.resolve_ref(head_ref)
            logger.info("Comparing %s (%s) -> %s (%s)", base_ref, base_commit[:8], head_ref, head_commit[:8])

            self._enter(ComparisonState.LIST_CHANGED_FILES)
            files_changed = repo.changed_files(base_commit, head_commit, self.config.patterns)
            if not files_changed:
                return self._finish(MODE_COMMIT_RANGE, base_commit, head_commit)

            self._enter(ComparisonState.SAVE_CURRENT_STATE)
            original_branch = repo.current_branch()
            original_commit = repo.current_commit()
            stashed = False if repo.is_clean() else repo.stash_push()
            moved = False

            try:
                self._enter(ComparisonState.CHECKOUT_BASE)
                moved = True
                repo.checkout(base_commit, detach=True)

                self._enter(ComparisonState.BUILD_BASE_GRAPH)
                base_nodes = self._build_snapshot()

                self._enter(ComparisonState.CHECKOUT_HEAD)
                repo.checkout(head_commit, detach=True)

                self._enter(ComparisonState.BUILD_HEAD_GRAPH)
                head_nodes = self._build_snapshot()

                self._enter(ComparisonState.DIFF)
                result = self._diff(MODE_COMMIT_RANGE, base_commit, head_commit, base_nodes, head_nodes, files_changed)
            finally:
                self._enter(ComparisonState.RESTORE_CURRENT_STATE)
                self._restore(original_branch, original_commit if moved else None, stashed)

            return self._finish(result=result)

    def compare_working_tree(self) -> ComparisonResult:
        """Diff the last commit against uncommitted changes (untracked included).

        Raises:
            RepositoryStateError: not a repository, or the stash could not
                be restored
            OperationTimeout: a git call or a crawl exceeded the timeout
        """
        self._begin()
        repo = self.repository
        self._enter(ComparisonState.RESOLVE_REFS)
        repo.ensure_repository()

        with RepositoryLock.for_path(repo.toplevel()).hold(self.config.timeout):
            head_commit = repo.current_commit()

            self._enter(ComparisonState.LIST_CHANGED_FILES)
            files_changed = repo.working_tree_changes(self.config.patterns)
            if not files_changed:
                return self._finish(MODE_WORKING_TREE, head_commit, WORKING_TREE_REF)

            self._enter(ComparisonState.SAVE_CURRENT_STATE)
            stashed = repo.stash_push()
            popped = False

            try:
                self._enter(ComparisonState.BUILD_BASE_GRAPH)
                base_nodes = self._build_snapshot()

                self._enter(ComparisonState.RESTORE_WORKDIR)
                if stashed:
                    popped = True
                    repo.stash_pop()

                self._enter(ComparisonState.BUILD_HEAD_GRAPH)
                head_nodes = self._build_snapshot()

                self._enter(ComparisonState.DIFF)
                result = self._diff(MODE_WORKING_TREE, head_commit, WORKING_TREE_REF, base_nodes, head_nodes, files_changed)
            finally:
                self._enter(ComparisonState.RESTORE_CURRENT_STATE)
                self._restore(None, None, stashed and not popped)

            return self._finish(result=result)

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    def _begin(self) -> None:
        if self._closed:
            raise RepositoryStateError("SnapshotComparator is closed")
        self._states = []
        self._enter(ComparisonState.START)

    def _enter(self, state: ComparisonState) -> None:
        self._states.append(state.value)
        logger.debug("compare[%s] -> %s", self.config.repo_path.name, state.value)

    def _finish(
        self,
        mode: str = "",
        base_commit: str = "",
        head_commit: str = "",
        result: Optional[ComparisonResult] = None,
    ) -> ComparisonResult:
        self._enter(ComparisonState.DONE)
        if result is None:
            result = ComparisonResult(mode=mode, base_commit=base_commit, head_commit=head_commit)
        result.states = list(self._states)
        return result

    def _build_snapshot(self) -> Dict[str, ArtifactNode]:
        store = GraphStore.in_memory()
        try:
            engine = GraphEngine(store)
            crawler = Crawler(
                engine,
                FingerprintStore(store),
                self.extractor,
                self.config.repo_path,
                patterns=self.config.patterns,
                max_workers=self.config.max_workers,
            )
            summary = crawler.crawl(incremental=False, timeout=self.config.timeout)
            if summary.failed:
                logger.warning("Snapshot skipped %d file(s) that failed to extract", len(summary.failed))
            return engine.snapshot()
        finally:
            store.close()

    def _diff(
        self,
        mode: str,
        base_commit: str,
        head_commit: str,
        base_nodes: Dict[str, ArtifactNode],
        head_nodes: Dict[str, ArtifactNode],
        files_changed: List[str],
    ) -> ComparisonResult:
        diffs = self.diff_engine.diff_many(base_nodes, head_nodes)
        drifts = self.drift_detector.detect_batch_drift(
            {k: n.intent for k, n in base_nodes.items()},
            {k: n.intent for k, n in head_nodes.items()},
        )
        logger.info(
            "Comparison found %d diff(s), %d breaking, %d intent drift(s)",
            len(diffs), sum(1 for d in diffs if d.breaking), len(drifts),
        )
        return ComparisonResult(
            mode=mode,
            base_commit=base_commit,
            head_commit=head_commit,
            diffs=diffs,
            files_changed=files_changed,
            intent_drifts=drifts,
        )

    def _restore(self, branch: Optional[str], commit: Optional[str], pop_stash: bool) -> None:
        """Return HEAD to where it was and re-apply the stash.

        Runs inside ``finally``; a failure here replaces the in-flight error
        with a RepositoryStateError chained to it.
        """
        repo = self.repository
        try:
            if commit is not None:
                if branch:
                    repo.checkout(branch)
                else:
                    repo.checkout(commit, detach=True)
        except Exception as exc:
            target = branch or commit
            logger.error("Failed to restore original checkout %s: %s", target, exc)
            if pop_stash:
                logger.error("Stashed changes left in 'git stash list' as '%s'", STASH_MESSAGE)
            raise RepositoryStateError(
                f"Could not restore original checkout '{target}'; repository left at a different commit"
            ) from exc

        if not pop_stash:
            return
        try:
            repo.stash_pop()
        except Exception as exc:
            logger.error("Failed to restore stashed changes: %s", exc)
            raise RepositoryStateError(
                f"Could not re-apply stashed changes; recover them with 'git stash pop' ({STASH_MESSAGE})"
            ) from exc


def _filter_schema_files(paths: List[str], patterns: Optional[List[str]]) -> List[str]:
    return sorted({p.strip() for p in paths if p.strip() and is_schema_file(p.strip(), patterns)})
