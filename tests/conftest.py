import os
import sys

import pytest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)

from core.config import settings  # noqa: E402
from core.storage import MemoryObjectStore  # noqa: E402
from tests.test_helpers import make_samples  # noqa: E402


@pytest.fixture(autouse=True)
def fast_settings(monkeypatch):
    """Short training budgets and no retry backoff so the suite stays quick."""
    monkeypatch.setattr(settings, "prediction_backoff", 0.0)
    monkeypatch.setattr(settings, "sequence_length", 30)
    monkeypatch.setattr(settings, "full_epochs", 6)
    monkeypatch.setattr(settings, "fine_tune_epochs", 3)
    monkeypatch.setattr(settings, "incremental_epochs", 2)
    monkeypatch.setattr(settings, "max_samples_per_epoch", 20)
    monkeypatch.setattr(settings, "auto_retrain", False)
    yield


@pytest.fixture
def memory_store():
    return MemoryObjectStore()


@pytest.fixture
def rising_samples():
    return make_samples("EURUSD", n=80, start=1.1, step_pct=0.001)


@pytest.fixture
def falling_samples():
    return make_samples("EURUSD", n=80, start=1.1, step_pct=-0.001)
