# broker/drivers/openstack.py
import logging
import threading
from typing import Any, Dict, Optional

import httpx

from broker.database import models
from broker.database.models import MachineStatus
from broker.services.exceptions import UpstreamDriverError
from .base import Driver, MachineInfo, ImageInfo, Startable, Stoppable, Rebootable

logger = logging.getLogger(__name__)

# Nova 서버 상태 -> 브로커 머신 상태
NOVA_STATUS_MAP = {
    "BUILD": MachineStatus.BOOTING,
    "ACTIVE": MachineStatus.RUNNING,
    "REBOOT": MachineStatus.STARTING,
    "HARD_REBOOT": MachineStatus.STARTING,
    "SHUTOFF": MachineStatus.STOPPED,
    "STOPPED": MachineStatus.STOPPED,
    "SUSPENDED": MachineStatus.STOPPED,
    "PAUSED": MachineStatus.STOPPED,
    "ERROR": MachineStatus.ERROR,
    "DELETED": MachineStatus.DELETING,
}


class OpenstackDriver(Driver, Startable, Stoppable, Rebootable):
    """
    Keystone v3 토큰으로 인증하고 Nova compute REST API로 서버를 관리하는 드라이버.
    """

    def __init__(self, settings, transport: Optional[httpx.BaseTransport] = None):
        super().__init__(settings)
        self._client = httpx.Client(timeout=settings.driver_call_timeout, transport=transport)
        self._token: Optional[str] = None
        self._token_lock = threading.Lock()

    def name(self) -> str:
        return "openstack"

    def initialize(self) -> None:
        self._authenticate()

    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        server: Dict[str, Any] = {
            "name": name,
            "imageRef": image.provider_id if image is not None and image.provider_id else self.settings.openstack_image_ref,
            "flavorRef": self.settings.openstack_flavor_ref,
        }
        if self.settings.openstack_network_id:
            server["networks"] = [{"uuid": self.settings.openstack_network_id}]

        body = self._request("POST", "/servers", json={"server": server}).json()
        return MachineInfo(provider_id=body["server"]["id"], status=MachineStatus.BOOTING, name=name, flavor=flavor)

    def destroy_machine(self, machine: models.Machine) -> None:
        self._request("DELETE", f"/servers/{machine.provider_id}", allow_not_found=True)

    def refresh(self, machine: models.Machine) -> MachineInfo:
        server = self._request("GET", f"/servers/{machine.provider_id}").json()["server"]
        return MachineInfo(
            provider_id=server["id"],
            status=NOVA_STATUS_MAP.get(server.get("status"), MachineStatus.ERROR),
            name=server.get("name"),
            ip=self._first_ipv4(server.get("addresses") or {}),
            flavor=machine.flavor,
        )

    def get_password(self, machine: models.Machine) -> str:
        # 실행 서버 이미지에는 관리자 비밀번호가 미리 설정되어 있습니다.
        return self.settings.machines_password

    def start_machine(self, machine: models.Machine) -> None:
        self._action(machine, {"os-start": None})

    def stop_machine(self, machine: models.Machine) -> None:
        self._action(machine, {"os-stop": None})

    def reboot_machine(self, machine: models.Machine) -> None:
        self._action(machine, {"reboot": {"type": "SOFT"}})

    def create_image(self, image_spec: dict, machine: Optional[models.Machine] = None) -> ImageInfo:
        if machine is None:
            raise UpstreamDriverError("Image creation requires the source machine.")
        image_name = image_spec.get("name") or f"{machine.name}-image"
        response = self._action(machine, {"createImage": {"name": image_name}})
        image_id = response.json().get("image_id") if response.content else None
        if not image_id:
            # 구버전 Nova는 Location 헤더로 이미지 URL을 돌려줍니다.
            image_id = response.headers.get("location", "").rstrip("/").rsplit("/", 1)[-1]
        return ImageInfo(provider_id=image_id, name=image_name, build_from=image_spec.get("build_from"))

    def _action(self, machine: models.Machine, payload: Dict[str, Any]) -> httpx.Response:
        return self._request("POST", f"/servers/{machine.provider_id}/action", json=payload)

    def _authenticate(self) -> str:
        payload = {
            "auth": {
                "identity": {
                    "methods": ["password"],
                    "password": {
                        "user": {
                            "name": self.settings.openstack_username,
                            "domain": {"name": self.settings.openstack_domain},
                            "password": self.settings.openstack_password,
                        }
                    },
                },
                "scope": {
                    "project": {
                        "name": self.settings.openstack_project,
                        "domain": {"name": self.settings.openstack_domain},
                    }
                },
            }
        }
        try:
            response = self._client.post(f"{self.settings.openstack_auth_url}/auth/tokens", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamDriverError(f"Keystone authentication failed: {e}") from e

        token = response.headers.get("X-Subject-Token")
        if not token:
            raise UpstreamDriverError("Keystone response did not include a token.")
        with self._token_lock:
            self._token = token
        return token

    def _request(self, method: str, path: str, allow_not_found: bool = False, **kwargs) -> httpx.Response:
        url = f"{self.settings.openstack_compute_url}{path}"
        token = self._token or self._authenticate()
        try:
            response = self._client.request(method, url, headers={"X-Auth-Token": token}, **kwargs)
            if response.status_code == 401:
                # 토큰 만료: 한 번만 재인증 후 재시도
                response = self._client.request(method, url, headers={"X-Auth-Token": self._authenticate()}, **kwargs)
            if allow_not_found and response.status_code == 404:
                return response
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise UpstreamDriverError(f"Nova {method} {path} failed: {e}") from e
        return response

    @staticmethod
    def _first_ipv4(addresses: Dict[str, Any]) -> Optional[str]:
        for network in addresses.values():
            for address in network:
                if address.get("version") == 4:
                    return address.get("addr")
        return None
