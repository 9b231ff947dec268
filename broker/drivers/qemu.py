# broker/drivers/qemu.py
import logging
import os
import subprocess
import uuid
from typing import Optional

import libvirt

from broker.database import models
from broker.database.models import MachineStatus
from broker.services.exceptions import UpstreamDriverError
from broker.utils.vm_xml_generator import generate_vm_xml
from .base import Driver, MachineInfo, ImageInfo, Startable, Stoppable, Rebootable

logger = logging.getLogger(__name__)


class QemuDriver(Driver, Startable, Stoppable, Rebootable):
    """
    libvirt(QEMU/KVM) 하이퍼바이저 위에서 머신을 관리하는 드라이버.

    머신 디스크는 기본 이미지를 backing file로 하는 qcow2 CoW 디스크로 만들고,
    도메인은 XML 템플릿으로 정의합니다.
    """

    def __init__(self, settings):
        super().__init__(settings)
        self.conn = None
        self.image_base_dir = settings.qemu_image_dir

    def name(self) -> str:
        return "qemu"

    def initialize(self) -> None:
        try:
            self.conn = libvirt.open(self.settings.qemu_uri)
        except libvirt.libvirtError as e:
            raise UpstreamDriverError(f"Failed to open connection to the hypervisor: {e}") from e

    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        """
        CoW 디스크를 만들고 libvirt 도메인을 정의한 뒤 시작합니다.

        부팅 완료는 기다리지 않으며, 실패하면 만들어진 도메인과 디스크를 정리합니다.

        Args:
            name: 머신 이름 접두사. 실제 도메인 이름은 UUID 일부를 덧붙여 고유하게 만듭니다.
            flavor: 기록용 사양 태그.
            image: 기반 이미지. provider_id가 없으면 qemu_base_image를 사용합니다.

        Raises:
            UpstreamDriverError: 디스크 생성, 도메인 정의 또는 시작에 실패했을 때.
        """
        vm_uuid = str(uuid.uuid4())
        vm_name = f"{name}-{vm_uuid[:8]}"
        source_filepath = image.provider_id if image is not None and image.provider_id else self.settings.qemu_base_image

        vm_disk_filepath = None
        domain = None
        try:
            vm_disk_filepath = self._create_vm_disk(vm_name, source_filepath)
            xml_config = generate_vm_xml(vm_name, vm_uuid, self.settings.qemu_cpu_count,
                                         self.settings.qemu_ram_mb, vm_disk_filepath)
            domain = self.conn.defineXML(xml_config)
            if domain.create() < 0:
                raise UpstreamDriverError("Failed to start the domain after definition.")
        except (libvirt.libvirtError, UpstreamDriverError) as e:
            logger.warning("Domain '%s' creation failed: %s. Starting rollback", vm_name, e)
            self._rollback_creation(domain, vm_disk_filepath)
            raise UpstreamDriverError(f"Failed to create domain '{vm_name}': {e}") from e

        return MachineInfo(provider_id=vm_uuid, status=MachineStatus.BOOTING, name=vm_name, flavor=flavor)

    def destroy_machine(self, machine: models.Machine) -> None:
        # 도메인 정리에 실패해도 디스크 정리는 시도합니다.
        try:
            domain = self.conn.lookupByUUIDString(machine.provider_id)
            if domain.isActive():
                domain.destroy()
            domain.undefine()
        except libvirt.libvirtError as e:
            logger.warning("Failed to clean up domain for machine '%s': %s. Proceeding cleanup", machine.id, e)

        self._delete_vm_disk(os.path.join(self.image_base_dir, f"{machine.name}.qcow2"))

    def refresh(self, machine: models.Machine) -> MachineInfo:
        try:
            domain = self.conn.lookupByUUIDString(machine.provider_id)
            state_code = domain.info()[0]
        except libvirt.libvirtError as e:
            raise UpstreamDriverError(f"Failed to look up domain '{machine.provider_id}': {e}") from e

        return MachineInfo(
            provider_id=machine.provider_id,
            status=self._map_vm_state(state_code),
            name=machine.name,
            ip=self._lookup_ip(domain),
            flavor=machine.flavor,
        )

    def get_password(self, machine: models.Machine) -> str:
        return self.settings.machines_password

    def start_machine(self, machine: models.Machine) -> None:
        self._domain_call(machine, lambda domain: domain.create())

    def stop_machine(self, machine: models.Machine) -> None:
        self._domain_call(machine, lambda domain: domain.shutdown())

    def reboot_machine(self, machine: models.Machine) -> None:
        self._domain_call(machine, lambda domain: domain.reboot(0))

    def create_image(self, image_spec: dict, machine: Optional[models.Machine] = None) -> ImageInfo:
        """머신 디스크를 backing file 없는 독립 qcow2 이미지로 변환합니다."""
        if machine is None:
            raise UpstreamDriverError("Image creation requires the source machine.")
        source = os.path.join(self.image_base_dir, f"{machine.name}.qcow2")
        image_name = image_spec.get("name") or f"image-{uuid.uuid4()}"
        target = os.path.join(self.image_base_dir, f"{image_name}.qcow2")
        self._run(['sudo', 'qemu-img', 'convert', '-O', 'qcow2', source, target])
        return ImageInfo(provider_id=target, name=image_name, build_from=image_spec.get("build_from"))

    def _domain_call(self, machine: models.Machine, call) -> None:
        try:
            call(self.conn.lookupByUUIDString(machine.provider_id))
        except libvirt.libvirtError as e:
            raise UpstreamDriverError(f"libvirt call failed for machine '{machine.id}': {e}") from e

    def _create_vm_disk(self, vm_name: str, source_filepath: str) -> str:
        target_filepath = os.path.join(self.image_base_dir, f"{vm_name}.qcow2")
        self._run([
            'sudo', 'qemu-img', 'create',
            '-f', 'qcow2',
            '-F', 'qcow2',
            '-b', source_filepath,
            target_filepath
        ])
        return target_filepath

    def _delete_vm_disk(self, disk_filepath: str) -> None:
        if not os.path.exists(disk_filepath):
            logger.info("Disk file not found, skipping delete: %s", disk_filepath)
            return
        self._run(['sudo', 'rm', '-f', disk_filepath])

    def _rollback_creation(self, domain, disk_path):
        if domain:
            try:
                if domain.isActive():
                    domain.destroy()
                domain.undefine()
            except libvirt.libvirtError as e:
                logger.warning("Rollback: failed to clean up libvirt domain: %s", e)

        if disk_path and os.path.exists(disk_path):
            self._delete_vm_disk(disk_path)

    @staticmethod
    def _run(command):
        try:
            subprocess.run(command, check=True, capture_output=True, text=True)
        except subprocess.CalledProcessError as e:
            raise UpstreamDriverError(f"Command '{' '.join(command)}' failed: {e.stderr}") from e
        except FileNotFoundError as e:
            raise UpstreamDriverError(f"Command not found: {command[1]}. Install qemu-utils.") from e

    @staticmethod
    def _lookup_ip(domain) -> Optional[str]:
        try:
            interfaces = domain.interfaceAddresses(libvirt.VIR_DOMAIN_INTERFACE_ADDRESSES_SRC_LEASE)
        except libvirt.libvirtError:
            return None
        for interface in (interfaces or {}).values():
            for address in interface.get('addrs') or []:
                if address.get('type') == libvirt.VIR_IP_ADDR_TYPE_IPV4:
                    return address.get('addr')
        return None

    @staticmethod
    def _map_vm_state(state_code):
        state_map = {
            libvirt.VIR_DOMAIN_NOSTATE: MachineStatus.BOOTING,
            libvirt.VIR_DOMAIN_RUNNING: MachineStatus.RUNNING,
            libvirt.VIR_DOMAIN_BLOCKED: MachineStatus.RUNNING,
            libvirt.VIR_DOMAIN_PAUSED: MachineStatus.STOPPED,
            libvirt.VIR_DOMAIN_SHUTDOWN: MachineStatus.STOPPING,
            libvirt.VIR_DOMAIN_SHUTOFF: MachineStatus.STOPPED,
            libvirt.VIR_DOMAIN_CRASHED: MachineStatus.ERROR,
            libvirt.VIR_DOMAIN_PMSUSPENDED: MachineStatus.STOPPED,
        }
        return state_map.get(state_code, MachineStatus.ERROR)

    def __del__(self):
        if self.conn:
            try:
                self.conn.close()
            except libvirt.libvirtError:
                pass
