# tests/services/test_session_probe.py
import httpx
import pytest

from broker.database import models
from broker.services.session_probe import (
    NullSessionProbe,
    PlazaSessionProbe,
    create_session_probe,
)


def machine(ip="10.0.0.5"):
    return models.Machine(id="m-1", name="exec-server", ip=ip)


def probe_with(handler):
    return PlazaSessionProbe(9090, "Administrator", transport=httpx.MockTransport(handler))


def test_active_session_is_detected():
    """에이전트가 Active 세션을 보고하면 활성으로 판단하는지 테스트합니다."""
    # === Arrange ===
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(200, json={"data": [{"state": "Disconnected"}, {"state": "Active"}]})

    # === Act ===
    active = probe_with(handler).is_session_active(machine())

    # === Assert ===
    assert active is True
    assert requested == ["http://10.0.0.5:9090/sessions/Administrator"]


def test_no_active_session():
    probe = probe_with(lambda request: httpx.Response(200, json={"data": [{"state": "Disconnected"}]}))

    assert probe.is_session_active(machine()) is False


def test_unreachable_agent_counts_as_inactive():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    assert probe_with(handler).is_session_active(machine()) is False


def test_machine_without_ip_is_inactive():
    probe = probe_with(lambda request: pytest.fail("no request expected"))

    assert probe.is_session_active(machine(ip=None)) is False


def test_create_session_probe_by_name(settings):
    assert isinstance(create_session_probe(settings), NullSessionProbe)
    assert isinstance(create_session_probe(settings.model_copy(update={"session_probe": "plaza"})), PlazaSessionProbe)

    with pytest.raises(ValueError):
        create_session_probe(settings.model_copy(update={"session_probe": "rdp"}))
