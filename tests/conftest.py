from __future__ import annotations

import pytest

from helixflow.settings import EngineConfig
from helixflow.ui.console import Console, set_console


@pytest.fixture(autouse=True)
def quiet_console():
    set_console(Console(quiet=True))
    yield
    set_console(Console())


@pytest.fixture
def config(tmp_path) -> EngineConfig:
    return EngineConfig(
        work_dir=str(tmp_path / "work"),
        cache_dir=str(tmp_path / "cache"),
        max_workers=4,
    )


@pytest.fixture
def counter(tmp_path):
    """A file tasks append to, so tests can count process launches."""
    p = tmp_path / "launches.txt"
    p.touch()
    return p
