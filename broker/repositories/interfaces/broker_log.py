from abc import ABC, abstractmethod
from typing import List
from broker.database import models

class IBrokerLogRepository(ABC):
    @abstractmethod
    def create(self, log_model: models.BrokerLog) -> models.BrokerLog:
        """새로운 브로커 로그를 추가합니다. 로그는 수정되거나 삭제되지 않습니다."""
        pass

    @abstractmethod
    def list_all(self) -> List[models.BrokerLog]:
        """모든 브로커 로그를 최신순으로 조회합니다."""
        pass
