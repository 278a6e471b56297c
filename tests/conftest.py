"""Shared fixtures: a state store in a temp dir and the default selectors."""

import pytest

from delphi_bot.crawler.selectors import load_selectors
from delphi_bot.storage.store import StateStore


@pytest.fixture
def store(tmp_path):
    return StateStore(tmp_path / "data", backup_keep=3)


@pytest.fixture
def selectors():
    return load_selectors()
