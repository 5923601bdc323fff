"""Tests for GitRepository and SnapshotComparator against real git repositories."""

from pathlib import Path

import pytest

from schemagraph.config import ComparisonConfig
from schemagraph.errors import OperationTimeout, RepositoryStateError
from schemagraph.git_scanner import (
    MODE_COMMIT_RANGE,
    MODE_WORKING_TREE,
    WORKING_TREE_REF,
    ComparisonState,
    GitRepository,
    SnapshotComparator,
)
from schemagraph.locks import RepositoryLock

USER_V1 = {"name": "User", "properties": [["id", "string", True]], "intent": "Account holder"}
USER_V2 = {"name": "User", "properties": [["id", "number", True]], "intent": "Account holder"}
USER_FILE = "models/user.schema.json"
USER_ID = "models/user.schema.json:User"


@pytest.fixture
def committed_repo(git_repo: Path, write_schema, run_git) -> Path:
    """Repository whose last commit holds one schema file."""
    write_schema(git_repo, USER_FILE, USER_V1)
    (git_repo / "README.md").write_text("# schemas\n")
    run_git(git_repo, "add", "-A")
    run_git(git_repo, "commit", "-q", "-m", "add user schema")
    return git_repo


@pytest.fixture
def make_comparator(fake_extractor):
    def _make(repo: Path, timeout: float = 30.0) -> SnapshotComparator:
        return SnapshotComparator(ComparisonConfig(repo_path=repo, timeout=timeout, max_workers=2), fake_extractor)

    return _make


def stash_list(run_git, repo: Path) -> str:
    return run_git(repo, "stash", "list")


class TestGitRepository:
    """Tests for the git wrapper."""

    def test_refs_and_branch(self, committed_repo: Path, run_git):
        repo = GitRepository(committed_repo)

        assert repo.current_commit() == run_git(committed_repo, "rev-parse", "HEAD")
        assert repo.current_branch() == "main"
        assert repo.toplevel() == committed_repo.resolve()

        run_git(committed_repo, "checkout", "-q", "--detach")
        assert repo.current_branch() is None

    def test_unknown_ref(self, committed_repo: Path):
        with pytest.raises(RepositoryStateError, match="Failed to resolve git ref: nope"):
            GitRepository(committed_repo).resolve_ref("nope")

    def test_not_a_repository(self, temp_dir: Path):
        plain = temp_dir / "plain"
        plain.mkdir()
        with pytest.raises(RepositoryStateError):
            GitRepository(plain).ensure_repository()

    def test_changed_files_filters_schema_files(self, committed_repo: Path, write_schema, run_git):
        base = run_git(committed_repo, "rev-parse", "HEAD")
        write_schema(committed_repo, USER_FILE, USER_V2)
        (committed_repo / "README.md").write_text("# changed\n")
        run_git(committed_repo, "commit", "-q", "-am", "change")

        assert GitRepository(committed_repo).changed_files(base, "HEAD") == [USER_FILE]

    def test_working_tree_changes_include_untracked(self, committed_repo: Path, write_schema):
        write_schema(committed_repo, "models/order.schema.json", {"name": "Order"})
        (committed_repo / "notes.txt").write_text("scratch")

        assert GitRepository(committed_repo).working_tree_changes() == ["models/order.schema.json"]

    def test_metadata(self, committed_repo: Path, run_git):
        repo = GitRepository(committed_repo)
        assert repo.repository_name() == "unknown"
        assert repo.commit_message() == "add user schema"
        assert repo.commit_author() == "Schema Dev"

        run_git(committed_repo, "remote", "add", "origin", "git@github.com:acme/schemas.git")
        assert repo.repository_name() == "acme/schemas"

    def test_stash_roundtrip(self, committed_repo: Path, write_schema):
        repo = GitRepository(committed_repo)
        assert repo.stash_push() is False

        path = write_schema(committed_repo, USER_FILE, USER_V2)
        assert repo.stash_push() is True
        assert repo.is_clean()
        repo.stash_pop()
        assert "number" in path.read_text()


class TestWorkingTreeComparison:
    """Tests for comparing HEAD with uncommitted changes."""

    def test_no_schema_changes_does_not_touch_git(self, committed_repo: Path, make_comparator, monkeypatch, run_git):
        """Nothing changed: empty result and no stash."""
        (committed_repo / "README.md").write_text("# edited\n")
        comparator = make_comparator(committed_repo)

        def forbidden(*args, **kwargs):
            raise AssertionError("stash must not run")

        monkeypatch.setattr(comparator.repository, "stash_push", forbidden)
        result = comparator.compare_working_tree()

        payload = result.to_dict()
        assert payload["diffs"] == []
        assert payload["filesChanged"] == []
        assert result.mode == MODE_WORKING_TREE
        assert result.head_commit == WORKING_TREE_REF
        assert ComparisonState.SAVE_CURRENT_STATE.value not in result.states
        assert result.states[-1] == ComparisonState.DONE.value
        assert (committed_repo / "README.md").read_text() == "# edited\n"

    def test_diffs_uncommitted_and_untracked(self, committed_repo: Path, make_comparator, write_schema, run_git):
        user_path = write_schema(committed_repo, USER_FILE, USER_V2)
        write_schema(committed_repo, "models/order.schema.json", {"name": "Order"})
        (committed_repo / "notes.txt").write_text("scratch")

        with make_comparator(committed_repo) as comparator:
            result = comparator.compare_working_tree()

        assert result.files_changed == ["models/order.schema.json", USER_FILE]
        assert [(d.node_id, d.change_type) for d in result.diffs] == [
            ("models/order.schema.json:Order", "added"),
            (USER_ID, "modified"),
        ]
        assert result.has_breaking is True
        assert result.base_commit == run_git(committed_repo, "rev-parse", "HEAD")
        assert ComparisonState.RESTORE_WORKDIR.value in result.states

        # The working tree is exactly as it was.
        assert "number" in user_path.read_text()
        assert (committed_repo / "models/order.schema.json").exists()
        assert (committed_repo / "notes.txt").read_text() == "scratch"
        assert stash_list(run_git, committed_repo) == ""

    def test_staged_changes_stay_staged(self, committed_repo: Path, make_comparator, write_schema, run_git):
        write_schema(committed_repo, USER_FILE, USER_V2)
        run_git(committed_repo, "add", USER_FILE)

        make_comparator(committed_repo).compare_working_tree()

        assert run_git(committed_repo, "diff", "--cached", "--name-only") == USER_FILE

    def test_intent_drift_reported(self, committed_repo: Path, make_comparator, write_schema):
        write_schema(committed_repo, USER_FILE, dict(USER_V1, intent="Shipping label printer queue"))

        result = make_comparator(committed_repo).compare_working_tree()

        assert result.diffs == []
        assert [d.node_id for d in result.intent_drifts] == [USER_ID]
        assert result.intent_drifts[0].severity == "high"

    def test_failure_restores_stash(self, committed_repo: Path, make_comparator, write_schema, monkeypatch, run_git):
        """A crash while building the base graph still re-applies the stash."""
        user_path = write_schema(committed_repo, USER_FILE, USER_V2)
        comparator = make_comparator(committed_repo)

        def crash():
            raise RuntimeError("extractor exploded")

        monkeypatch.setattr(comparator, "_build_snapshot", crash)
        with pytest.raises(RuntimeError, match="exploded"):
            comparator.compare_working_tree()

        assert "number" in user_path.read_text()
        assert stash_list(run_git, committed_repo) == ""


class TestCommitComparison:
    """Tests for comparing two commits."""

    @pytest.fixture
    def two_commits(self, committed_repo: Path, write_schema, run_git) -> Path:
        write_schema(committed_repo, USER_FILE, USER_V2)
        run_git(committed_repo, "commit", "-q", "-am", "user id becomes numeric")
        return committed_repo

    def test_diff_between_commits(self, two_commits: Path, make_comparator, run_git):
        head = run_git(two_commits, "rev-parse", "HEAD")

        result = make_comparator(two_commits).compare_commits("HEAD~1", "HEAD")

        assert result.mode == MODE_COMMIT_RANGE
        assert result.head_commit == head
        assert result.files_changed == [USER_FILE]
        assert result.diffs[0].changes[0].kind == "type-changed"
        assert result.states == [
            "START", "RESOLVE_REFS", "LIST_CHANGED_FILES", "SAVE_CURRENT_STATE",
            "CHECKOUT_BASE", "BUILD_BASE_GRAPH", "CHECKOUT_HEAD", "BUILD_HEAD_GRAPH",
            "DIFF", "RESTORE_CURRENT_STATE", "DONE",
        ]
        assert run_git(two_commits, "symbolic-ref", "--short", "HEAD") == "main"
        assert run_git(two_commits, "rev-parse", "HEAD") == head

    def test_same_commit_is_empty(self, two_commits: Path, make_comparator):
        result = make_comparator(two_commits).compare_commits("HEAD", "HEAD")
        assert result.diffs == [] and result.files_changed == []
        assert "CHECKOUT_BASE" not in result.states

    def test_dirty_tree_is_restored(self, two_commits: Path, make_comparator, write_schema, run_git):
        write_schema(two_commits, USER_FILE, dict(USER_V2, intent="Work in progress"))
        (two_commits / "draft.txt").write_text("draft")

        make_comparator(two_commits).compare_commits("HEAD~1")

        assert "Work in progress" in (two_commits / USER_FILE).read_text()
        assert (two_commits / "draft.txt").exists()
        assert run_git(two_commits, "symbolic-ref", "--short", "HEAD") == "main"
        assert stash_list(run_git, two_commits) == ""

    def test_failure_after_checkout_restores_branch(self, two_commits: Path, make_comparator, write_schema, monkeypatch, run_git):
        head = run_git(two_commits, "rev-parse", "HEAD")
        (two_commits / "draft.txt").write_text("draft")
        comparator = make_comparator(two_commits)

        def timeout():
            raise OperationTimeout("crawl", 0.1)

        monkeypatch.setattr(comparator, "_build_snapshot", timeout)
        with pytest.raises(OperationTimeout):
            comparator.compare_commits("HEAD~1")

        assert run_git(two_commits, "symbolic-ref", "--short", "HEAD") == "main"
        assert run_git(two_commits, "rev-parse", "HEAD") == head
        assert (two_commits / "draft.txt").read_text() == "draft"
        assert stash_list(run_git, two_commits) == ""

    def test_detached_head_is_restored(self, two_commits: Path, make_comparator, run_git):
        run_git(two_commits, "checkout", "-q", "--detach", "HEAD")
        head = run_git(two_commits, "rev-parse", "HEAD")

        make_comparator(two_commits).compare_commits("HEAD~1", "HEAD")

        assert run_git(two_commits, "rev-parse", "HEAD") == head
        assert GitRepository(two_commits).current_branch() is None

    def test_bad_ref(self, two_commits: Path, make_comparator):
        with pytest.raises(RepositoryStateError, match="does-not-exist"):
            make_comparator(two_commits).compare_commits("does-not-exist")

    def test_not_a_repository(self, temp_dir: Path, make_comparator):
        plain = temp_dir / "plain"
        plain.mkdir()
        with pytest.raises(RepositoryStateError):
            make_comparator(plain).compare_commits("HEAD~1")

    def test_busy_repository_times_out(self, two_commits: Path, make_comparator):
        """A second comparison waits on the lock only as long as the timeout."""
        lock = RepositoryLock.for_path(GitRepository(two_commits).toplevel())
        with lock.hold():
            with pytest.raises(OperationTimeout):
                make_comparator(two_commits, timeout=0.1).compare_commits("HEAD~1")

    def test_closed_comparator(self, two_commits: Path, make_comparator):
        comparator = make_comparator(two_commits)
        comparator.close()
        with pytest.raises(RepositoryStateError):
            comparator.compare_commits("HEAD~1")
