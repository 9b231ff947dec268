# broker/drivers/base.py
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from broker.config import BrokerSettings
from broker.database import models
from broker.services.exceptions import UnsupportedOperation


@dataclass
class MachineInfo:
    """제공자에서 관측한 머신의 현재 상태."""
    provider_id: str
    status: str
    name: Optional[str] = None
    ip: Optional[str] = None
    flavor: Optional[str] = None


@dataclass
class ImageInfo:
    """드라이버가 생성한 이미지 정보."""
    provider_id: str
    name: str
    build_from: Optional[str] = None


class Driver(ABC):
    """
    인프라 백엔드(하이퍼바이저, 퍼블릭 클라우드, 수동 관리 호스트 등)에 대한 공통 계약입니다.

    모든 드라이버는 생성/삭제/상태 조회/비밀번호 조회를 구현해야 하며,
    시작/정지/재부팅/크레딧 조회는 Startable, Stoppable, Rebootable, CreditReporting을
    함께 상속하여 지원 여부를 명시합니다.
    """

    def __init__(self, settings: BrokerSettings):
        self.settings = settings

    @abstractmethod
    def name(self) -> str:
        """머신 필터링과 감사 로그에 사용되는 고정 드라이버 이름."""
        pass

    def initialize(self) -> None:
        """제공자 연결 등 드라이버 준비 작업. 기본 구현은 아무것도 하지 않습니다."""
        pass

    def register_existing(self, machines) -> None:
        """재시작 시 이미 저장소에 있는 이 드라이버의 머신 목록을 전달받습니다."""
        pass

    @abstractmethod
    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        """
        제공자에 새 머신 생성을 요청합니다. 생성 완료는 기다리지 않습니다.

        Returns:
            provider_id가 채워진 머신 정보 (상태는 보통 booting).
        """
        pass

    @abstractmethod
    def destroy_machine(self, machine: models.Machine) -> None:
        """제공자에서 머신을 삭제합니다."""
        pass

    @abstractmethod
    def refresh(self, machine: models.Machine) -> MachineInfo:
        """제공자에서 머신의 현재 상태를 조회합니다."""
        pass

    @abstractmethod
    def get_password(self, machine: models.Machine) -> str:
        """머신 접속 비밀번호를 조회합니다."""
        pass

    def create_image(self, image_spec: dict, machine: Optional[models.Machine] = None) -> ImageInfo:
        """
        머신(image_spec["build_from"], 조회된 머신은 machine)으로부터 이미지를 생성합니다.

        Raises:
            UnsupportedOperation: 드라이버가 이미지 생성을 지원하지 않을 때.
        """
        raise UnsupportedOperation(f"Image creation is not available on the '{self.name()}' driver.")


class Startable(ABC):
    @abstractmethod
    def start_machine(self, machine: models.Machine) -> None:
        """정지된 머신의 시작을 요청합니다."""
        pass


class Stoppable(ABC):
    @abstractmethod
    def stop_machine(self, machine: models.Machine) -> None:
        """실행 중인 머신의 정지를 요청합니다."""
        pass


class Rebootable(ABC):
    @abstractmethod
    def reboot_machine(self, machine: models.Machine) -> None:
        """머신의 재부팅을 요청합니다."""
        pass


class CreditReporting(ABC):
    @abstractmethod
    def get_user_credit(self, user: models.User, machine: Optional[models.Machine] = None) -> float:
        """사용량 기반 과금 드라이버에서 사용자가 소비한 크레딧을 조회합니다."""
        pass
