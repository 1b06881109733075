import logging
import os
import pathlib
import sys

import pytest


# Ensure repo root is on PYTHONPATH for direct package imports (e.g. `import shielded_counter`).
_REPO_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(_REPO_ROOT) not in sys.path:
    sys.path.insert(0, str(_REPO_ROOT))

from shielded_counter.config import ConfigManager, CounterConfig  # noqa: E402


def _env_flag(name: str) -> bool:
    v = (os.environ.get(name) or '').strip().lower()
    return v in {'1', 'true', 'yes', 'y', 'on'}


def pytest_configure(config: pytest.Config) -> None:
    config.addinivalue_line(
        "markers",
        "slow: slow correctness tests (skipped unless COUNTER_RUN_SLOW=1)",
    )


def pytest_collection_modifyitems(config: pytest.Config, items: list) -> None:
    run_slow = _env_flag('COUNTER_RUN_SLOW')

    for item in items:
        if 'slow' in item.keywords and not run_slow:
            item.add_marker(pytest.mark.skip(reason='slow tests skipped; set COUNTER_RUN_SLOW=1 to enable'))


@pytest.fixture(autouse=True)
def _isolate_global_state():
    """Fresh configuration singleton and no package log handlers per test."""
    ConfigManager.reset()
    yield
    ConfigManager.reset()
    root = logging.getLogger("shielded_counter")
    for h in list(root.handlers):
        root.removeHandler(h)
    root.setLevel(logging.NOTSET)


def _fast_config(depth: int = 16, **orchestrator) -> CounterConfig:
    """Configuration with a small tree and no retry backoff."""
    cfg = CounterConfig()
    cfg.tree.depth.set(depth)
    cfg.prover.max_workers.set(4)
    cfg.orchestrator.retry_base_delay.set(0.0)
    for name, value in orchestrator.items():
        getattr(cfg.orchestrator, name).set(value)
    return cfg


@pytest.fixture
def make_config():
    """Factory for small, fast configurations."""
    return _fast_config


@pytest.fixture
def counter_config() -> CounterConfig:
    return _fast_config()
