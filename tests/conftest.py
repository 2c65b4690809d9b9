"""Global test fixtures for pr-loop."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from helpers.clock import FakeClock

from prloop.config import Config, set_config

if TYPE_CHECKING:
    from pytest_mock import MockerFixture


@pytest.fixture(autouse=True)
def _default_config():
    """Reset config to defaults before every test.

    A developer's own .pr-loop.toml or PR_LOOP_* variables must not leak into
    tests that rely on default patterns and timings.
    """
    set_config(Config())
    yield
    set_config(Config())


@pytest.fixture
def clock(mocker: MockerFixture) -> FakeClock:
    """Patch the wait loop's clocks with a :class:`FakeClock`."""
    fake = FakeClock()
    mocker.patch("prloop.tools.wait.time.monotonic", side_effect=fake.monotonic)
    mocker.patch("prloop.tools.wait.time.sleep", side_effect=fake.sleep)
    mocker.patch("prloop.tools.wait._now", side_effect=fake.now)
    return fake
