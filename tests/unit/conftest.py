import os

import pytest

from stackpilot import config
from stackpilot.engine.state import InMemoryStateStore
from stackpilot.providers.memory import MemoryProvider

TEMPLATES_DIR = os.path.join(os.path.dirname(__file__), "templates")


@pytest.fixture(autouse=True)
def default_engine_config(monkeypatch):
    """
    Pins the engine configuration for all unit tests, independent of the environment the tests run in.
    """
    monkeypatch.setattr(config, "REGION", "us-east-1")
    monkeypatch.setattr(config, "ACCOUNT_ID", "000000000000")
    monkeypatch.setattr(config, "REPLACEMENT_STRATEGY", None)
    monkeypatch.setattr(config, "DISABLE_ROLLBACK", False)
    monkeypatch.setattr(config, "PROVIDER_MAX_RETRIES", 4)
    monkeypatch.setattr(config, "PROVIDER_RETRY_INITIAL_INTERVAL", 0.01)
    monkeypatch.setattr(config, "PROVIDER_RETRY_MAX_INTERVAL", 0.05)
    monkeypatch.setattr(config, "ROLLBACK_MAX_ATTEMPTS", 2)


@pytest.fixture
def state_store():
    return InMemoryStateStore()


@pytest.fixture
def provider():
    return MemoryProvider(region="us-east-1", account_id="000000000000")


@pytest.fixture
def load_template_file():
    def _load(file_name: str) -> str:
        with open(os.path.join(TEMPLATES_DIR, file_name)) as fd:
            return fd.read()

    return _load
