# broker/drivers/aws.py
import logging
from datetime import datetime, timezone
from typing import Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from broker.database import models
from broker.database.models import MachineStatus
from broker.services.exceptions import UpstreamDriverError
from .base import Driver, MachineInfo, ImageInfo, Startable, Stoppable, Rebootable, CreditReporting

logger = logging.getLogger(__name__)

# EC2 인스턴스 상태 -> 브로커 머신 상태
EC2_STATE_MAP = {
    "pending": MachineStatus.BOOTING,
    "running": MachineStatus.RUNNING,
    "stopping": MachineStatus.STOPPING,
    "stopped": MachineStatus.STOPPED,
    "shutting-down": MachineStatus.DELETING,
    "terminated": MachineStatus.DELETING,
}


class AwsDriver(Driver, Startable, Stoppable, Rebootable, CreditReporting):
    """
    EC2 인스턴스를 실행 서버로 사용하는 드라이버.
    사용량 기반 과금을 지원하는 유일한 드라이버로, 인스턴스 가동 시간 × 시간당 가격을
    사용자의 소비 크레딧으로 보고합니다.
    """

    def __init__(self, settings, client=None):
        super().__init__(settings)
        self.client = client

    def name(self) -> str:
        return "aws"

    def initialize(self) -> None:
        if self.client is not None:
            return
        credentials = {}
        if self.settings.aws_access_key_id:
            credentials = {
                "aws_access_key_id": self.settings.aws_access_key_id,
                "aws_secret_access_key": self.settings.aws_secret_access_key,
            }
        timeout = self.settings.driver_call_timeout
        self.client = boto3.client(
            "ec2",
            region_name=self.settings.aws_region,
            config=Config(connect_timeout=timeout, read_timeout=timeout, retries={"max_attempts": 3}),
            **credentials,
        )

    def create_machine(self, name: str, flavor: str, image: Optional[models.Image] = None) -> MachineInfo:
        params = {
            "ImageId": image.provider_id if image is not None and image.provider_id else self.settings.aws_image_id,
            "InstanceType": self.settings.aws_instance_type,
            "MinCount": 1,
            "MaxCount": 1,
            "TagSpecifications": [
                {"ResourceType": "instance", "Tags": [{"Key": "Name", "Value": name}]},
            ],
        }
        if self.settings.aws_key_name:
            params["KeyName"] = self.settings.aws_key_name
        if self.settings.aws_security_group_id:
            params["SecurityGroupIds"] = [self.settings.aws_security_group_id]

        instance = self._call("run_instances", **params)["Instances"][0]
        return MachineInfo(provider_id=instance["InstanceId"], status=MachineStatus.BOOTING, name=name, flavor=flavor)

    def destroy_machine(self, machine: models.Machine) -> None:
        self._call("terminate_instances", InstanceIds=[machine.provider_id])

    def refresh(self, machine: models.Machine) -> MachineInfo:
        instance = self._describe(machine.provider_id)
        return MachineInfo(
            provider_id=instance["InstanceId"],
            status=EC2_STATE_MAP.get(instance["State"]["Name"], MachineStatus.ERROR),
            name=machine.name,
            ip=instance.get("PublicIpAddress") or instance.get("PrivateIpAddress"),
            flavor=machine.flavor,
        )

    def get_password(self, machine: models.Machine) -> str:
        return self.settings.machines_password

    def start_machine(self, machine: models.Machine) -> None:
        self._call("start_instances", InstanceIds=[machine.provider_id])

    def stop_machine(self, machine: models.Machine) -> None:
        self._call("stop_instances", InstanceIds=[machine.provider_id])

    def reboot_machine(self, machine: models.Machine) -> None:
        self._call("reboot_instances", InstanceIds=[machine.provider_id])

    def create_image(self, image_spec: dict, machine: Optional[models.Machine] = None) -> ImageInfo:
        if machine is None:
            raise UpstreamDriverError("Image creation requires the source machine.")
        image_name = image_spec.get("name") or f"{machine.name}-image"
        response = self._call("create_image", InstanceId=machine.provider_id, Name=image_name)
        return ImageInfo(provider_id=response["ImageId"], name=image_name, build_from=image_spec.get("build_from"))

    def get_user_credit(self, user: models.User, machine: Optional[models.Machine] = None) -> float:
        """
        사용자 머신의 가동 시간(LaunchTime부터 현재까지)에 시간당 가격을 곱한 값을 반환합니다.
        머신이 없으면 기존 크레딧을 그대로 반환합니다.
        """
        if machine is None or not machine.provider_id:
            return user.credit or 0.0
        instance = self._describe(machine.provider_id)
        launched_at = instance["LaunchTime"]
        hours = (datetime.now(timezone.utc) - launched_at).total_seconds() / 3600
        return round(hours * self.settings.aws_hourly_price, 4)

    def _describe(self, instance_id: str) -> dict:
        reservations = self._call("describe_instances", InstanceIds=[instance_id])["Reservations"]
        if not reservations or not reservations[0]["Instances"]:
            raise UpstreamDriverError(f"EC2 instance '{instance_id}' not found.")
        return reservations[0]["Instances"][0]

    def _call(self, operation: str, **params):
        try:
            return getattr(self.client, operation)(**params)
        except (BotoCoreError, ClientError) as e:
            raise UpstreamDriverError(f"EC2 {operation} failed: {e}") from e
