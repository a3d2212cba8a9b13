import os
import sys
from datetime import UTC, datetime

import pytest


PROJECT_ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC_DIR = os.path.join(PROJECT_ROOT, "src")

if SRC_DIR not in sys.path:
    sys.path.insert(0, SRC_DIR)


FIXED_NOW = datetime(2026, 2, 10, 0, 0, tzinfo=UTC)


@pytest.fixture
def fixed_clock():
    """固定时钟：首次运行空批次时的基线取该时间。"""
    return lambda: FIXED_NOW


@pytest.fixture
def memory_store():
    from pte.state.memory_store import MemoryCursorStore

    return MemoryCursorStore()
