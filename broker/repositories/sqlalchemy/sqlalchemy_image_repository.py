from typing import Optional
from sqlalchemy.orm import sessionmaker
from broker.database import models
from broker.repositories.interfaces import IImageRepository

class SqlalchemyImageRepository(IImageRepository):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_default(self) -> Optional[models.Image]:
        with self.session_factory() as db:
            return db.query(models.Image).filter(models.Image.is_default.is_(True)).first()

    def find_or_create_default(self) -> models.Image:
        with self.session_factory() as db:
            image = db.query(models.Image).filter(models.Image.is_default.is_(True)).first()
            if image:
                return image
            image = models.Image(name="Default", provider_id=None, build_from=None, is_default=True)
            db.add(image)
            db.commit()
            db.refresh(image)
            return image

    def create(self, image_model: models.Image) -> models.Image:
        with self.session_factory() as db:
            if image_model.is_default:
                # 기본 이미지는 하나만 존재해야 함
                db.query(models.Image).filter(models.Image.is_default.is_(True)).update({"is_default": False})
            db.add(image_model)
            db.commit()
            db.refresh(image_model)
            return image_model
