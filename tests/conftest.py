from __future__ import annotations

import pytest

from retrieval_fakes import ManualClock, RecordingSleep


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def recording_sleep() -> RecordingSleep:
    return RecordingSleep()
