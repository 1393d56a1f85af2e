"""Shared pytest fixtures for enhance-ticket tests.

Fakes live in :mod:`tests.mocks` and builders in :mod:`tests.helpers`;
prefer importing those directly. The fixtures here only isolate tests from
the host environment.
"""

from __future__ import annotations

import os
from collections.abc import Iterator

import pytest

from enhance_ticket.config import clear_config_cache

_ENV_PREFIX = "ENHANCE_TICKET_"


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch: pytest.MonkeyPatch) -> Iterator[None]:
    """Remove ENHANCE_TICKET_* variables and reset the config cache."""
    for name in list(os.environ):
        if name.startswith(_ENV_PREFIX):
            monkeypatch.delenv(name)
    clear_config_cache()
    yield
    clear_config_cache()
