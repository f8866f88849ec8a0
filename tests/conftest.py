"""Pytest configuration and shared fixtures for the linepump test suite."""

import sys
from pathlib import Path
from typing import Callable, Generator

import pytest

# Add the project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from linepump.session.config import DispatcherConfig
from linepump.session.dispatcher import Dispatcher
from tests.fixtures.workers import worker_config, write_worker


@pytest.fixture
def worker_script(tmp_path: Path) -> Path:
    """Path of a scripted worker written into the test's temp directory."""
    return write_worker(tmp_path)


@pytest.fixture
def make_dispatcher(
    worker_script: Path,
) -> Generator[Callable[..., Dispatcher], None, None]:
    """Factory for dispatchers running the scripted worker.

    Positional arguments go to the worker, keyword arguments to
    ``DispatcherConfig``. Workers still running at teardown are killed.
    """
    created: list[Dispatcher] = []

    def _make(*worker_args: str, **overrides) -> Dispatcher:
        dispatcher = Dispatcher(config=worker_config(worker_script, *worker_args, **overrides))
        created.append(dispatcher)
        return dispatcher

    yield _make

    for dispatcher in created:
        dispatcher.channel.close()


@pytest.fixture
def dispatcher(make_dispatcher: Callable[..., Dispatcher]) -> Dispatcher:
    return make_dispatcher()


@pytest.fixture
def inline_config() -> Callable[[str], DispatcherConfig]:
    """Config running a one-line Python program as the worker."""

    def _config(code: str) -> DispatcherConfig:
        return DispatcherConfig(
            executable_path=sys.executable,
            args=("-u", "-c", code),
            poll_interval=0.01,
        )

    return _config
