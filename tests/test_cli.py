"""Tests for the command-line entry point."""

from __future__ import annotations

import json

import pytest
import yaml

from conftest import pattern_dict
from patternreview import cli
from patternreview.cli import create_parser, main
from patternreview.collaborators import StaticFetcher
from patternreview.orchestrator import EXIT_BLOCKING, EXIT_CLEAN, EXIT_CONFIG, EXIT_FATAL

ADMIN_DIFF = (
    "diff --git a/lib/app/accounts.ex b/lib/app/accounts.ex\n"
    "--- a/lib/app/accounts.ex\n"
    "+++ b/lib/app/accounts.ex\n"
    "@@ -1,2 +1,3 @@\n"
    " def admin?(user) do\n"
    '+  user.role == "admin"\n'
    " end\n"
)


@pytest.fixture
def pattern_dir(tmp_path):
    d = tmp_path / "patterns"
    d.mkdir()
    (d / "admin.yaml").write_text(yaml.safe_dump(pattern_dict()))
    return d


@pytest.fixture
def diff_file(tmp_path):
    f = tmp_path / "pr-1.diff"
    f.write_text(ADMIN_DIFF)
    return f


def test_parser_rejects_repo_with_diff():
    with pytest.raises(SystemExit):
        create_parser().parse_args(["pr-1", "--repo", ".", "--diff", "x.diff"])


def test_repo_defaults_to_current_directory(pattern_dir, monkeypatch):
    assert create_parser().parse_args(["pr-1"]).repo is None
    seen = []

    def fake_git_fetcher(repo_path, base="main"):
        seen.append((repo_path, base))
        return StaticFetcher({"pr-1": []})

    monkeypatch.setattr(cli, "GitFetcher", fake_git_fetcher)

    assert main(["pr-1", "--patterns", str(pattern_dir), "--dry-run"]) == EXIT_CLEAN
    assert seen == [(".", "main")]


def test_dry_run_prints_summary_and_exits_blocking(pattern_dir, diff_file, capsys):
    code = main(["pr-1", "--diff", str(diff_file), "--patterns", str(pattern_dir), "--dry-run"])
    out = capsys.readouterr().out
    assert code == EXIT_BLOCKING
    assert "Anti-pattern review: pr-1" in out
    assert "lib/app/accounts.ex:2" in out


def test_json_output(pattern_dir, diff_file, capsys):
    main(["pr-1", "--diff", str(diff_file), "--patterns", str(pattern_dir), "--dry-run", "--json"])
    report = json.loads(capsys.readouterr().out)
    assert report["total_issues"] == 1
    assert report["dry_run"] is True


def test_publishes_to_output_dir(pattern_dir, diff_file, tmp_path):
    out_dir = tmp_path / "reviews"
    code = main(
        ["pr-1", "--diff", str(diff_file), "--patterns", str(pattern_dir), "--output-dir", str(out_dir)]
    )
    assert code == EXIT_BLOCKING
    assert (out_dir / "pr-1.json").exists()


def test_clean_diff_exits_zero(pattern_dir, tmp_path):
    f = tmp_path / "clean.diff"
    f.write_text(ADMIN_DIFF.replace('user.role == "admin"', "Policy.admin?(user)"))
    assert main(["pr-1", "--diff", str(f), "--patterns", str(pattern_dir), "--dry-run"]) == EXIT_CLEAN


def test_invalid_config_exits_three(diff_file, tmp_path):
    cfg = tmp_path / "review.yaml"
    cfg.write_text("max_workers: -2\n")
    assert main(["pr-1", "--diff", str(diff_file), "--config", str(cfg)]) == EXIT_CONFIG


def test_missing_diff_exits_two(tmp_path):
    assert main(["pr-1", "--diff", str(tmp_path / "none.diff"), "--dry-run"]) == EXIT_FATAL
