# broker/drivers/dummy.py
import threading
import uuid
from typing import Dict, Optional

from broker.database import models
from broker.database.models import MachineStatus
from broker.services.exceptions import UpstreamDriverError
from .base import Driver, MachineInfo, ImageInfo, Startable, Stoppable, Rebootable


class DummyDriver(Driver, Startable, Stoppable, Rebootable):
    """
    실제 인프라 없이 동작하는 테스트용 드라이버.
    모든 요청이 즉시 완료되어 생성·시작·재부팅 직후 running, 정지 직후 stopped 상태가 됩니다.
    """

    def __init__(self, settings):
        super().__init__(settings)
        self._servers: Dict[str, str] = {}
        self._lock = threading.Lock()

    def name(self) -> str:
        return "dummy"

    def register_existing(self, machines) -> None:
        with self._lock:
            for machine in machines:
                self._servers.setdefault(machine.provider_id, machine.status)

    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        provider_id = f"dummy-{uuid.uuid4()}"
        with self._lock:
            self._servers[provider_id] = MachineStatus.RUNNING
        return MachineInfo(provider_id=provider_id, status=MachineStatus.BOOTING, name=name, ip="127.0.0.1", flavor=flavor)

    def destroy_machine(self, machine: models.Machine) -> None:
        with self._lock:
            self._servers.pop(machine.provider_id, None)

    def refresh(self, machine: models.Machine) -> MachineInfo:
        with self._lock:
            status = self._servers.get(machine.provider_id)
        if status is None:
            raise UpstreamDriverError(f"Dummy server '{machine.provider_id}' does not exist.")
        return MachineInfo(provider_id=machine.provider_id, status=status, name=machine.name, ip="127.0.0.1", flavor=machine.flavor)

    def get_password(self, machine: models.Machine) -> str:
        return self.settings.machines_password or "dummy"

    def start_machine(self, machine: models.Machine) -> None:
        self._set_status(machine, MachineStatus.RUNNING)

    def stop_machine(self, machine: models.Machine) -> None:
        self._set_status(machine, MachineStatus.STOPPED)

    def reboot_machine(self, machine: models.Machine) -> None:
        self._set_status(machine, MachineStatus.RUNNING)

    def create_image(self, image_spec: dict, machine: Optional[models.Machine] = None) -> ImageInfo:
        return ImageInfo(
            provider_id=f"dummy-image-{uuid.uuid4()}",
            name=image_spec.get("name", "Default"),
            build_from=image_spec.get("build_from"),
        )

    def _set_status(self, machine: models.Machine, status: str) -> None:
        with self._lock:
            if machine.provider_id not in self._servers:
                raise UpstreamDriverError(f"Dummy server '{machine.provider_id}' does not exist.")
            self._servers[machine.provider_id] = status
