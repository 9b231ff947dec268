# broker/drivers/manual.py
import threading
from typing import Optional, Set

from broker.database import models
from broker.database.models import MachineStatus
from broker.services.exceptions import UpstreamDriverError
from .base import Driver, MachineInfo


class ManualDriver(Driver):
    """
    관리자가 미리 준비해 둔 호스트(manual_machines 설정)를 풀로 사용하는 드라이버.

    생성은 아직 사용하지 않은 호스트를 하나 꺼내는 것이고, 삭제는 호스트를 목록으로
    되돌리는 것입니다. 호스트 전원은 관리하지 않으므로 start/stop/reboot은 지원하지 않습니다.
    """

    def __init__(self, settings):
        super().__init__(settings)
        self._in_use: Set[str] = set()
        self._lock = threading.Lock()

    def name(self) -> str:
        return "manual"

    def initialize(self) -> None:
        if not self.settings.manual_machines:
            raise ValueError("The manual driver requires at least one host in 'manual_machines'.")

    def register_existing(self, machines) -> None:
        with self._lock:
            self._in_use.update(machine.provider_id for machine in machines)

    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        with self._lock:
            free_hosts = [host for host in self.settings.manual_machines if host not in self._in_use]
            if not free_hosts:
                raise UpstreamDriverError("No pre-provisioned host left for the manual driver.")
            host = free_hosts[0]
            self._in_use.add(host)
        return MachineInfo(provider_id=host, status=MachineStatus.RUNNING, name=name, ip=host, flavor=flavor)

    def destroy_machine(self, machine: models.Machine) -> None:
        with self._lock:
            self._in_use.discard(machine.provider_id)

    def refresh(self, machine: models.Machine) -> MachineInfo:
        return MachineInfo(provider_id=machine.provider_id, status=MachineStatus.RUNNING,
                           name=machine.name, ip=machine.provider_id, flavor=machine.flavor)

    def get_password(self, machine: models.Machine) -> str:
        return self.settings.machines_password
