import sys
from pathlib import Path

import pytest

_root = Path(__file__).resolve().parents[1]
_src = _root / "src"
if _src.exists() and str(_src) not in sys.path:
    sys.path.insert(0, str(_src))

from chatcore.services.message_store import InMemoryMessageStore  # noqa: E402


@pytest.fixture
def memory_store() -> InMemoryMessageStore:
    """Fresh in-memory message store."""
    return InMemoryMessageStore()
