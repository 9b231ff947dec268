from sqlalchemy import Column, Float, String

from ..database import Base


class User(Base):
    """
    머신을 할당받는 최종 사용자를 나타냅니다.
    계정 관리와 인증은 외부에서 처리하며, 브로커는 크레딧 잔액만 조회·갱신합니다.
    """
    __tablename__ = "users"
    id = Column(String, primary_key=True)
    username = Column(String, unique=True, nullable=False, index=True)
    credit = Column(Float, nullable=False, default=0.0)
