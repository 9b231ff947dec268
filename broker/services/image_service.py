from typing import Optional

from broker.database import models
from broker.repositories.interfaces import IImageRepository
from broker.services.exceptions import ImageNotFoundError

class ImageService:
    def __init__(self, image_repo: IImageRepository):
        """
        ImageService를 초기화합니다.

        Args:
            image_repo: 이미지 데이터에 접근하기 위한 리포지토리 객체.
        """
        self.image_repo = image_repo

    def ensure_default_image(self) -> models.Image:
        """기본 이미지가 없으면 placeholder('Default')를 만들어 반환합니다."""
        return self.image_repo.find_or_create_default()

    def find_default_image(self) -> Optional[models.Image]:
        return self.image_repo.find_default()

    def get_default_image(self) -> models.Image:
        """
        기본 이미지를 반환합니다.

        Raises:
            ImageNotFoundError: 기본 이미지가 아직 등록되지 않았을 때.
        """
        image = self.image_repo.find_default()
        if not image:
            raise ImageNotFoundError("Default image not found in database.")
        return image

    def register_image(self, name: str, provider_id: str, build_from: str = None, make_default: bool = False) -> models.Image:
        """
        드라이버가 만든 이미지를 저장합니다. make_default이면 기존 기본 이미지를 대체합니다.
        """
        return self.image_repo.create(models.Image(
            name=name, provider_id=provider_id, build_from=build_from, is_default=make_default
        ))
