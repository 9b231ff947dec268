# broker/services/audit_service.py
import logging
from typing import Optional

from broker.database import models
from broker.database.models import MachineStatus
from broker.repositories.interfaces import IBrokerLogRepository, IMachineRepository

logger = logging.getLogger(__name__)


class AuditService:
    """머신 생명주기 이벤트를 BrokerLog에 기록하는 감사 서비스."""

    def __init__(self, log_repo: IBrokerLogRepository, machine_repo: IMachineRepository):
        self.log_repo = log_repo
        self.machine_repo = machine_repo

    def record(self, machine: Optional[models.Machine], state: str, driver: str = None) -> Optional[models.BrokerLog]:
        """
        이벤트 하나를 기록합니다. 기록 시점의 running 머신 수를 pool_size로 함께 남깁니다.

        감사 로그는 최선 노력(best-effort)으로만 기록하며, 실패해도 예외를 전파하지 않습니다.

        Args:
            machine: 이벤트 대상 머신. 풀 단위 이벤트는 None.
            state: 이벤트 라벨 (Created, Assigned, Deleted, 풀 갱신 메시지 등).
            driver: machine이 None일 때 기록할 드라이버 이름.

        Returns:
            생성된 로그. 기록에 실패하면 None.
        """
        try:
            pool_size = self.machine_repo.count(status=MachineStatus.RUNNING)
            return self.log_repo.create(models.BrokerLog(
                user_id=machine.user_id if machine is not None else None,
                machine_id=machine.id if machine is not None else None,
                machine_driver=machine.type if machine is not None else driver,
                machine_flavor=machine.flavor if machine is not None else None,
                state=state,
                pool_size=pool_size,
            ))
        except Exception as e:
            logger.warning("Failed to write broker log '%s': %s", state, e)
            return None

    def list_logs(self):
        return self.log_repo.list_all()
