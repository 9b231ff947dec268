# broker/drivers/__init__.py
import importlib

from broker.config import BrokerSettings
from .base import Driver, MachineInfo, ImageInfo, Startable, Stoppable, Rebootable, CreditReporting

# 드라이버별 외부 클라이언트(libvirt, boto3 등)는 선택된 경우에만 import 합니다.
DRIVERS = {
    "dummy": "broker.drivers.dummy:DummyDriver",
    "manual": "broker.drivers.manual:ManualDriver",
    "qemu": "broker.drivers.qemu:QemuDriver",
    "openstack": "broker.drivers.openstack:OpenstackDriver",
    "aws": "broker.drivers.aws:AwsDriver",
}


def create_driver(name: str, settings: BrokerSettings) -> Driver:
    """
    설정된 이름으로 드라이버 인스턴스를 생성합니다.

    Raises:
        ValueError: 등록되지 않은 드라이버 이름일 때.
    """
    if name not in DRIVERS:
        raise ValueError(f"Unknown IaaS driver '{name}'. Available: {', '.join(sorted(DRIVERS))}")
    module_path, class_name = DRIVERS[name].split(":")
    driver_class = getattr(importlib.import_module(module_path), class_name)
    return driver_class(settings)


__all__ = [
    "DRIVERS", "create_driver", "Driver", "MachineInfo", "ImageInfo",
    "Startable", "Stoppable", "Rebootable", "CreditReporting",
]
