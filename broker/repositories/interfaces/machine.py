from abc import ABC, abstractmethod
from datetime import datetime
from typing import Any, List, Optional
from broker.database import models

class IMachineRepository(ABC):
    @abstractmethod
    def create(self, machine_model: models.Machine) -> models.Machine:
        """새로운 머신 정보를 데이터베이스에 생성합니다."""
        pass

    @abstractmethod
    def find_by_id(self, machine_id: str) -> Optional[models.Machine]:
        """고유 ID로 특정 머신을 조회합니다."""
        pass

    @abstractmethod
    def find_by_user_id(self, user_id: str) -> Optional[models.Machine]:
        """특정 사용자가 소유한 머신을 조회합니다. 사용자당 머신은 최대 하나입니다."""
        pass

    @abstractmethod
    def find(self, **filters: Any) -> List[models.Machine]:
        """
        컬럼 값 조건(예: status='running', user_id=None)에 맞는 머신 목록을 조회합니다.
        값이 None인 조건은 IS NULL로 해석됩니다.
        """
        pass

    @abstractmethod
    def count(self, **filters: Any) -> int:
        """조건에 맞는 머신의 개수를 조회합니다. 조건 규칙은 find와 같습니다."""
        pass

    @abstractmethod
    def update(self, machine_id: str, **fields: Any) -> Optional[models.Machine]:
        """머신의 필드를 갱신하고, 갱신된 머신을 반환합니다. 머신이 없으면 None을 반환합니다."""
        pass

    @abstractmethod
    def delete(self, machine_id: str) -> bool:
        """특정 머신 정보를 데이터베이스에서 삭제합니다."""
        pass

    @abstractmethod
    def claim_idle_machine(self, user_id: str) -> Optional[models.Machine]:
        """
        미할당(user_id IS NULL) 상태이면서 running인 머신 하나를 사용자에게 원자적으로 할당합니다.

        하나의 저장소 연산으로 수행되어야 하며, 동시에 호출된 두 요청이 같은 머신을
        할당받는 일은 없어야 합니다. (행 잠금 + 이미 잠긴 행 건너뛰기와 동등한 보장)

        Args:
            user_id: 머신을 할당받을 사용자의 ID.

        Returns:
            할당된 머신. 동시에 들어온 같은 사용자의 요청이 먼저 할당받았다면 그 머신.
            조건에 맞는 머신이 없으면 None.
        """
        pass

    @abstractmethod
    def retire_idle_machine(self, machine_id: str) -> bool:
        """
        미할당 running 머신을 deleting 상태로 원자적으로 전환합니다.
        그 사이에 사용자에게 할당되었다면 전환하지 않고 False를 반환합니다.
        """
        pass

    @abstractmethod
    def expire_machine(self, machine_id: str, user_id: str, end_date: datetime, now: datetime) -> bool:
        """
        세션이 만료된 머신의 소유를 해제하고 deleting 상태로 원자적으로 전환합니다.

        읽은 시점의 소유자(user_id)와 만료 시각(end_date)이 그대로이고 만료 시각이 now 이전일
        때만 전환합니다. 그 사이 세션이 다시 열렸거나 만료 시각이 연장되었다면 False를 반환합니다.
        """
        pass
