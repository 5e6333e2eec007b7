from __future__ import annotations

import sys
from pathlib import Path

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(PROJECT_ROOT / "src"))
sys.path.insert(0, str(Path(__file__).resolve().parent))

from fakes import LOGIN_FILES, LOGIN_TREE, FakeGit, FakeRuntime, FakeSourceHost  # noqa: E402


@pytest.fixture
def source_host() -> FakeSourceHost:
    return FakeSourceHost(tree=dict(LOGIN_TREE), files=dict(LOGIN_FILES))


@pytest.fixture
def runtime() -> FakeRuntime:
    return FakeRuntime()


@pytest.fixture
def git() -> FakeGit:
    return FakeGit()
