from sqlalchemy import Boolean, Column, Integer, String, DateTime, func

from ..database import Base


class Image(Base):
    """
    새 머신을 생성할 때 사용하는 부팅 이미지를 정의합니다.
    is_default가 True인 이미지는 하나만 존재하며, 풀 보충 시 기본으로 사용됩니다.
    build_from은 이 이미지가 만들어진 원본 머신의 ID입니다.
    """
    __tablename__ = "images"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String, nullable=False)
    provider_id = Column(String, nullable=True)
    build_from = Column(String, nullable=True)
    is_default = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, server_default=func.now())
