from sqlalchemy import Column, Integer, String, DateTime, func

from ..database import Base


class BrokerLog(Base):
    """
    머신 생명주기 이벤트(Created, Assigned, Started, Deleted 등)를 기록하는 추가 전용 로그입니다.
    pool_size는 기록 시점에 running 상태인 머신의 수입니다.
    """
    __tablename__ = "broker_logs"
    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String, nullable=True)
    machine_id = Column(String, nullable=True, index=True)
    machine_driver = Column(String, nullable=True)
    machine_flavor = Column(String, nullable=True)
    state = Column(String, nullable=False)
    pool_size = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime, server_default=func.now())
