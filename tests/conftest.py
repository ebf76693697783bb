from __future__ import annotations

import asyncio
from collections.abc import Callable, Coroutine
from typing import Any

import pytest

from tally import Error, Ok, Result
from tally.config import Settings


@pytest.fixture
def settings(tmp_path) -> Settings:
    """A file-backed SQLite database per test, so concurrent sessions get their own connections."""
    return Settings().with_database(f"sqlite+aiosqlite:///{tmp_path / 'tally.db'}")


@pytest.fixture
def run() -> Callable[[Callable[[], Coroutine[Any, Any, None]]], None]:
    def _run(main: Callable[[], Coroutine[Any, Any, None]]) -> None:
        asyncio.run(main())

    return _run


@pytest.fixture
def ok() -> Callable[[Result[Any, Any]], Any]:
    """Unwrap an Ok, failing the test on Error."""

    def _ok(result: Result[Any, Any]) -> Any:
        match result:
            case Ok(value):
                return value
            case Error(e):
                raise AssertionError(f"expected Ok, got Error({e})")

    return _ok
