# broker/services/session_probe.py
import logging
from abc import ABC, abstractmethod

import httpx

from broker.database import models

logger = logging.getLogger(__name__)


class SessionProbe(ABC):
    @abstractmethod
    def is_session_active(self, machine: models.Machine) -> bool:
        """사용자가 머신에서 원격 세션을 사용 중인지 확인합니다."""
        pass


class NullSessionProbe(SessionProbe):
    """세션 상태를 알 수 없는 환경용. 항상 비활성으로 보고 end_date만으로 만료를 판단합니다."""

    def is_session_active(self, machine: models.Machine) -> bool:
        return False


class PlazaSessionProbe(SessionProbe):
    """
    실행 서버에서 동작하는 에이전트(plaza)에 세션 목록을 물어봅니다.
    GET http://{ip}:{port}/sessions/{username} 응답의 data 배열에 Active 세션이 있으면 활성입니다.
    """

    def __init__(self, port: int, username: str, timeout: float = 5.0, transport: httpx.BaseTransport = None):
        self.port = port
        self.username = username
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def is_session_active(self, machine: models.Machine) -> bool:
        if not machine.ip:
            return False
        url = f"http://{machine.ip}:{self.port}/sessions/{self.username}"
        try:
            response = self._client.get(url)
            response.raise_for_status()
            sessions = response.json().get("data") or []
        except (httpx.HTTPError, ValueError) as e:
            # 에이전트에 연결할 수 없으면 세션이 없는 것으로 간주합니다.
            logger.info("Session probe failed for machine %s: %s", machine.id, e)
            return False
        return any(str(session.get("state", "")).lower() == "active" for session in sessions)


def create_session_probe(settings) -> SessionProbe:
    if settings.session_probe == "plaza":
        return PlazaSessionProbe(settings.plaza_port, settings.plaza_username)
    if settings.session_probe == "none":
        return NullSessionProbe()
    raise ValueError(f"Unknown session probe '{settings.session_probe}'.")
