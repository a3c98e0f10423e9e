"""Tests for repository metadata collection."""

from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

from hooktrace.metadata import collect_git_metadata


def test_missing_directory() -> None:
    assert collect_git_metadata("/definitely/not/here") == {}
    assert collect_git_metadata("") == {}


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_plain_directory(tmp_path: Path) -> None:
    assert collect_git_metadata(str(tmp_path)) == {}


@pytest.mark.skipif(shutil.which("git") is None, reason="git not installed")
def test_repository(tmp_path: Path) -> None:
    repo = tmp_path / "myrepo"
    repo.mkdir()
    git = ["git", "-c", "user.email=t@example.com", "-c", "user.name=t"]
    subprocess.run(git + ["init", "-q"], cwd=repo, check=True)
    (repo / "a.txt").write_text("a", encoding="utf-8")
    subprocess.run(git + ["add", "a.txt"], cwd=repo, check=True)
    subprocess.run(git + ["commit", "-q", "-m", "init"], cwd=repo, check=True)

    meta = collect_git_metadata(str(repo))
    assert meta["repository"] == "myrepo"
    assert meta["commit"]
    assert meta["dirty"] is False

    (repo / "a.txt").write_text("b", encoding="utf-8")
    assert collect_git_metadata(str(repo))["dirty"] is True
