# broker/config.py
import threading
from functools import lru_cache
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class BrokerSettings(BaseSettings):
    """
    브로커 전체 설정. 환경 변수(BROKER_ 접두사) 또는 .env 파일에서 값을 읽습니다.
    """
    model_config = SettingsConfigDict(env_prefix="BROKER_", env_file=".env", extra="ignore")

    # Database
    database_url: str = "sqlite:///broker_metadata.db"

    # 사용할 IaaS 드라이버 (dummy, manual, qemu, openstack, aws)
    iaas: str = "dummy"

    # Pool / Session
    machine_pool_size: int = Field(default=1, ge=0)
    session_duration: int = Field(default=60, ge=0, description="Seconds before an ended session is reclaimed")
    credit_limit: str = ""
    never_terminate_machine: bool = False

    # 새 머신 생성 시 기본값
    machines_name: str = "broker-exec-server"
    machines_flavor: str = "medium"
    machines_password: str = ""

    # Poll-retry / driver calls
    poll_interval: float = Field(default=5.0, ge=0)
    poll_retries: int = Field(default=100, ge=1)
    driver_call_timeout: float = Field(default=60.0, gt=0)
    background_workers: int = Field(default=8, ge=1)

    # 세션 활성 여부 확인 방식 (none, plaza)
    session_probe: str = "none"
    plaza_port: int = 9090
    plaza_username: str = "Administrator"

    # Manual driver: 미리 준비된 호스트 목록 (JSON 배열)
    manual_machines: List[str] = []

    # QEMU / libvirt
    qemu_uri: str = "qemu:///system"
    qemu_image_dir: str = "/var/lib/libvirt/images"
    qemu_base_image: str = "/var/lib/libvirt/images/exec-server-base.qcow2"
    qemu_cpu_count: int = 2
    qemu_ram_mb: int = 4096

    # OpenStack
    openstack_auth_url: str = "http://localhost:5000/v3"
    openstack_compute_url: str = "http://localhost:8774/v2.1"
    openstack_username: str = "admin"
    openstack_password: str = ""
    openstack_project: str = "admin"
    openstack_domain: str = "Default"
    openstack_flavor_ref: str = ""
    openstack_image_ref: str = ""
    openstack_network_id: str = ""

    # AWS
    aws_region: str = "eu-west-1"
    aws_access_key_id: str = ""
    aws_secret_access_key: str = ""
    aws_image_id: str = ""
    aws_instance_type: str = "t2.medium"
    aws_key_name: str = ""
    aws_security_group_id: str = ""
    aws_hourly_price: float = 0.0

    log_level: str = "INFO"

    @field_validator("credit_limit")
    @classmethod
    def validate_credit_limit(cls, v):
        # 빈 문자열은 크레딧 한도 없음
        v = v.strip()
        if v != "":
            try:
                float(v)
            except ValueError:
                raise ValueError("credit_limit must be empty or a number") from None
        return v


@lru_cache()
def get_settings() -> BrokerSettings:
    return BrokerSettings()


class ConfigService:
    """
    설정을 키-값 형태로 조회하는 서비스입니다.

    운영 중에 풀 크기 등을 바꿀 수 있도록 update()를 제공하며, 변경 값은
    BrokerSettings 모델을 통해 다시 검증됩니다.
    """

    def __init__(self, settings: BrokerSettings = None):
        self._settings = settings or get_settings()
        self._lock = threading.Lock()

    @property
    def settings(self) -> BrokerSettings:
        return self._settings

    def get(self, key: str) -> Any:
        """
        키에 해당하는 설정 값을 반환합니다.

        Raises:
            KeyError: 존재하지 않는 설정 키일 때.
        """
        if key not in BrokerSettings.model_fields:
            raise KeyError(f"Unknown configuration key '{key}'.")
        return getattr(self._settings, key)

    def update(self, **values: Any) -> BrokerSettings:
        """
        설정 값을 변경합니다. 검증에 실패하면 기존 설정이 그대로 유지됩니다.

        Raises:
            KeyError: 존재하지 않는 설정 키가 포함되었을 때.
            pydantic.ValidationError: 값이 설정 모델의 제약을 위반할 때.
        """
        unknown = set(values) - set(BrokerSettings.model_fields)
        if unknown:
            raise KeyError(f"Unknown configuration keys: {sorted(unknown)}")
        with self._lock:
            merged: Dict[str, Any] = self._settings.model_dump()
            merged.update(values)
            self._settings = BrokerSettings(**merged)
        return self._settings
