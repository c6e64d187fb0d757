from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest

from parley.app.config.app_config import GlobalAppConfig
from parley.app.event_bus import EventBus


@pytest.fixture
def app_config(tmp_path):
    """Default configuration with every storage path redirected into a temp directory."""
    return GlobalAppConfig(storage={"user_data_root": str(tmp_path / "user_data")})


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def mock_event_bus():
    bus = Mock()
    bus.publish = AsyncMock()
    bus.subscribe = Mock()
    bus.unsubscribe = Mock(return_value=True)
    bus.join = AsyncMock(return_value=True)
    bus.is_worker_task = Mock(return_value=False)
    return bus


@pytest.fixture
def frame_size(app_config):
    return app_config.audio.frame_size


@pytest.fixture
def silent_frame(frame_size):
    """One frame of digital silence."""
    return np.zeros(frame_size, dtype="<i2").tobytes()


@pytest.fixture
def voiced_frame(frame_size):
    """One frame of a 440Hz tone at roughly a third of full scale."""
    t = np.arange(frame_size) / 24000.0
    samples = (0.3 * np.sin(2 * np.pi * 440.0 * t) * 32767).astype("<i2")
    return samples.tobytes()
