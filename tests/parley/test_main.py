from unittest.mock import Mock

import pytest

from parley import main
from parley.app.services.session.session_models import SessionPhase
from parley.app.services.session.session_orchestrator import SessionOrchestrator


@pytest.mark.asyncio
async def test_create_session_wires_services_and_shuts_down(app_config, monkeypatch):
    configure_logging = Mock()
    monkeypatch.setattr(main, "setup_logging", configure_logging)

    session = await main.create_session(config=app_config)

    configure_logging.assert_called_once_with(app_config.logging)
    assert set(session.services) == {"storage", "history", "credentials", "channel", "audio", "orchestrator"}
    assert isinstance(session.orchestrator, SessionOrchestrator)
    assert session.orchestrator.phase == SessionPhase.DISCONNECTED
    assert session.event_bus.get_stats()["worker_status"] == "running"
    assert "AudioFrameEvent" in session.event_bus.get_stats()["subscribers"]

    await main.shutdown(session)

    stats = session.event_bus.get_stats()
    assert stats["is_shutting_down"] is True
    assert stats["subscribers"] == {}
