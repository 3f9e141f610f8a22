from __future__ import annotations

import shutil
import subprocess
from pathlib import Path

import pytest

import sys

ROOT = Path(__file__).resolve().parents[2]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))


def _git_available() -> bool:
    if shutil.which("git") is None:
        return False
    result = subprocess.run(["git", "--version"], check=False, capture_output=True, text=True)
    return result.returncode == 0


@pytest.fixture(scope="session")
def git_available() -> bool:
    return _git_available()


@pytest.fixture()
def git_repo(tmp_path: Path, git_available: bool) -> Path:
    if not git_available:
        pytest.skip("git is unavailable")
    repo = tmp_path / "repo"
    (repo / "nested" / "dir").mkdir(parents=True)
    subprocess.run(["git", "init", "--quiet", str(repo)], check=True)
    return repo
