from abc import ABC, abstractmethod
from typing import Optional
from broker.database import models

class IImageRepository(ABC):
    @abstractmethod
    def find_default(self) -> Optional[models.Image]:
        """기본(default) 이미지를 조회합니다."""
        pass

    @abstractmethod
    def find_or_create_default(self) -> models.Image:
        """기본 이미지를 조회하고, 없으면 placeholder 이미지를 생성하여 반환합니다."""
        pass

    @abstractmethod
    def create(self, image_model: models.Image) -> models.Image:
        """새로운 이미지 정보를 데이터베이스에 생성합니다."""
        pass
