"""
Pytest configuration: put src/ (namespace packages, no install needed) and
this directory (shared fakes) on the import path.
"""

import sys
from pathlib import Path

import pytest

tests_path = Path(__file__).parent
src_path = tests_path.parent / "src"
sys.path.insert(0, str(src_path))
sys.path.insert(0, str(tests_path))

from common.encryption import generate_private_key  # noqa: E402
from fulfillment.store import FulfillmentStore  # noqa: E402


@pytest.fixture
def store():
    """Volatile store with backoff disabled so released requests are immediately eligible."""
    s = FulfillmentStore(":memory:", backoff_base_s=0)
    yield s
    s.close()


@pytest.fixture
def worker_key():
    return generate_private_key()
