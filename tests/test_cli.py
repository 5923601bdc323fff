"""Integration tests for CLI commands."""

import json
from pathlib import Path

import pytest
from typer.testing import CliRunner

from schemagraph import __version__
from schemagraph.cli import app
from schemagraph.config import GRAPH_SNAPSHOT_NAME, REPO_CONFIG_NAME, state_dir_for
from schemagraph.config_manager import save_section


runner = CliRunner()

USER = {"name": "User", "properties": [["id", "string", True]], "intent": "Account holder",
        "imports": ["models/address.schema"]}
ADDRESS = {"name": "Address", "properties": [["street", "string", True]], "intent": "Postal address"}
USER_ID = "models/user.schema.json:User"
ADDRESS_ID = "models/address.schema.json:Address"


@pytest.fixture(autouse=True)
def fake_default_extractor(monkeypatch, fake_extractor):
    """Run the CLI against the JSON test extractor."""
    monkeypatch.setattr("schemagraph.cli.default_extractor", lambda: fake_extractor)
    return fake_extractor


@pytest.fixture
def crawled_repo(repo_dir: Path, write_schema) -> Path:
    write_schema(repo_dir, "models/user.schema.json", USER)
    write_schema(repo_dir, "models/address.schema.json", ADDRESS)
    result = runner.invoke(app, ["crawl", "--path", str(repo_dir)])
    assert result.exit_code == 0, result.output
    return repo_dir


class TestGeneral:
    """Tests for the top-level options."""

    def test_version(self):
        result = runner.invoke(app, ["--version"])
        assert result.exit_code == 0
        assert __version__ in result.output

    def test_init(self, repo_dir: Path):
        """Test initialising a repository twice."""
        first = runner.invoke(app, ["init", "--path", str(repo_dir)])
        second = runner.invoke(app, ["init", "--path", str(repo_dir)])

        assert first.exit_code == 0
        assert "Initialised" in first.output
        assert (state_dir_for(repo_dir) / REPO_CONFIG_NAME).exists()
        assert "Already initialised" in second.output


class TestCrawlCommand:
    """Tests for 'sg crawl'."""

    def test_crawl_writes_graph(self, crawled_repo: Path):
        snapshot = json.loads((state_dir_for(crawled_repo) / GRAPH_SNAPSHOT_NAME).read_text())

        assert sorted(n["id"] for n in snapshot["nodes"]) == [ADDRESS_ID, USER_ID]
        assert snapshot["edges"][0]["source"] == USER_ID

    def test_crawl_summary(self, repo_dir: Path, write_schema):
        write_schema(repo_dir, "models/user.schema.json", USER)

        result = runner.invoke(app, ["crawl", "--path", str(repo_dir), "--workers", "1"])

        assert result.exit_code == 0
        assert "Crawl summary" in result.output
        assert "Dangling edges" in result.output

    def test_recrawl_uses_fingerprints(self, crawled_repo: Path, fake_default_extractor):
        fake_default_extractor.calls.clear()

        result = runner.invoke(app, ["crawl", "--path", str(crawled_repo)])

        assert result.exit_code == 0
        assert fake_default_extractor.calls == []

    def test_full_crawl(self, crawled_repo: Path, fake_default_extractor):
        fake_default_extractor.calls.clear()
        runner.invoke(app, ["crawl", "--path", str(crawled_repo), "--full"])
        assert len(fake_default_extractor.calls) == 2


class TestGraphQueries:
    """Tests for 'sg impact', 'sg why', 'sg check' and 'sg export'."""

    def test_impact(self, crawled_repo: Path):
        result = runner.invoke(app, ["impact", ADDRESS_ID, "--path", str(crawled_repo)])

        assert result.exit_code == 0
        assert "used by -> User" in result.output
        assert "1 artifact(s) impacted" in result.output

    def test_impact_depth_from_config(self, crawled_repo: Path, write_schema):
        """Without --depth the [impact] max_depth setting bounds the traversal."""
        write_schema(crawled_repo, "orders/order.schema.json", {"name": "Order", "imports": ["models/user.schema"]})
        runner.invoke(app, ["crawl", "--path", str(crawled_repo)])
        save_section("impact", {"max_depth": 1}, crawled_repo)

        configured = runner.invoke(app, ["impact", ADDRESS_ID, "--path", str(crawled_repo)])
        explicit = runner.invoke(app, ["impact", ADDRESS_ID, "--path", str(crawled_repo), "--depth", "2"])

        assert configured.exit_code == 0
        assert "1 artifact(s) impacted within 1 hop(s)" in configured.output
        assert "2 artifact(s) impacted within 2 hop(s)" in explicit.output

    def test_impact_unknown_node(self, crawled_repo: Path):
        result = runner.invoke(app, ["impact", "nope.schema.json:Nope", "--path", str(crawled_repo)])

        assert result.exit_code == 1
        assert "Node not found" in result.output

    def test_impact_without_graph(self, repo_dir: Path):
        result = runner.invoke(app, ["impact", USER_ID, "--path", str(repo_dir)])
        assert result.exit_code != 0

    def test_why(self, crawled_repo: Path):
        result = runner.invoke(app, ["why", USER_ID, "--path", str(crawled_repo)])

        assert result.exit_code == 0
        assert f"uses -> {ADDRESS_ID}" in result.output
        assert "why: Postal address" in result.output

    def test_check_all_resolved(self, crawled_repo: Path):
        result = runner.invoke(app, ["check", "--path", str(crawled_repo)])

        assert result.exit_code == 0
        assert "All dependencies resolve" in result.output

    def test_check_dangling(self, repo_dir: Path, write_schema):
        write_schema(repo_dir, "models/user.schema.json", USER)
        runner.invoke(app, ["crawl", "--path", str(repo_dir)])

        result = runner.invoke(app, ["check", "--path", str(repo_dir)])

        assert result.exit_code == 1
        assert "models/address.schema" in result.output

    def test_export(self, crawled_repo: Path, temp_dir: Path):
        target = temp_dir / "out.json"
        result = runner.invoke(app, ["export", "--path", str(crawled_repo), "--output", str(target)])

        assert result.exit_code == 0
        assert "Exported 2 nodes and 1 edges" in result.output
        assert json.loads(target.read_text())["version"] == 1


class TestComparisonCommands:
    """Tests for 'sg diff' and 'sg drift'."""

    @pytest.fixture
    def committed_repo(self, git_repo: Path, write_schema, run_git) -> Path:
        write_schema(git_repo, "models/user.schema.json", {"name": "User", "properties": [["id", "string", True]],
                                                           "intent": "Account holder"})
        run_git(git_repo, "add", "-A")
        run_git(git_repo, "commit", "-q", "-m", "add user")
        return git_repo

    def test_diff_without_changes(self, committed_repo: Path, temp_dir: Path):
        report = temp_dir / "drift.json"
        result = runner.invoke(app, ["diff", "--path", str(committed_repo), "--output", str(report)])

        assert result.exit_code == 0
        assert "No schema changes detected." in result.output
        assert json.loads(report.read_text())["diffs"] == []

    def test_diff_breaking_exits_nonzero(self, committed_repo: Path, write_schema, temp_dir: Path):
        write_schema(committed_repo, "models/user.schema.json", {"name": "User", "properties": []})
        report = temp_dir / "drift.json"

        result = runner.invoke(app, ["diff", "--path", str(committed_repo), "--output", str(report)])

        assert result.exit_code == 1
        assert "property 'id' removed" in result.output
        payload = json.loads(report.read_text())
        assert payload["mode"] == "working-tree"
        assert payload["diffs"][0]["breaking"] is True

    def test_diff_commit_range(self, committed_repo: Path, write_schema, run_git, temp_dir: Path):
        write_schema(committed_repo, "models/user.schema.json",
                     {"name": "User", "properties": [["id", "string", True], ["nick", "string", False]]})
        run_git(committed_repo, "commit", "-q", "-am", "add nick")

        result = runner.invoke(app, ["diff", "--path", str(committed_repo), "--base", "HEAD~1",
                                     "--output", str(temp_dir / "r.json")])

        assert result.exit_code == 0
        assert "optional property 'nick' added" in result.output

    def test_drift(self, committed_repo: Path, write_schema):
        write_schema(committed_repo, "models/user.schema.json",
                     {"name": "User", "properties": [["id", "string", True]], "intent": "Shipping label queue"})

        result = runner.invoke(app, ["drift", "--path", str(committed_repo)])

        assert result.exit_code == 0
        assert "[HIGH]" in result.output
        assert USER_ID in result.output

    def test_diff_outside_repository(self, repo_dir: Path, temp_dir: Path):
        result = runner.invoke(app, ["diff", "--path", str(repo_dir), "--output", str(temp_dir / "r.json")])

        assert result.exit_code == 1
        assert "Not a git repository" in result.output
