from abc import ABC, abstractmethod
from typing import Optional
from broker.database import models

class IUserRepository(ABC):
    @abstractmethod
    def find_by_id(self, user_id: str) -> Optional[models.User]:
        """고유 ID로 특정 사용자를 조회합니다."""
        pass

    @abstractmethod
    def update_credit(self, user_id: str, credit: float) -> bool:
        """사용자의 사용 크레딧을 갱신합니다."""
        pass
