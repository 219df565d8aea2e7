from __future__ import annotations

from datetime import datetime

import pytest

from tests.support import ManualScheduler


@pytest.fixture
def scheduler() -> ManualScheduler:
    # A Wednesday evening, after the default 09:00-18:00 opening hours.
    return ManualScheduler(datetime(2024, 5, 15, 20, 0).astimezone())


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
