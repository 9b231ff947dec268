import uuid

from sqlalchemy import Column, String, DateTime, func

from ..database import Base


class MachineStatus:
    BOOTING = "booting"
    RUNNING = "running"
    STARTING = "starting"
    STOPPING = "stopping"
    STOPPED = "stopped"
    ERROR = "error"
    DELETING = "deleting"

    ALL = (BOOTING, RUNNING, STARTING, STOPPING, STOPPED, ERROR, DELETING)


class Machine(Base):
    """
    풀에서 사용자에게 할당되는 원격 실행 머신(인스턴스)을 나타냅니다.
    user_id가 비어 있으면 풀에 남아 있는 미할당 머신이며,
    한 사용자는 동시에 최대 하나의 머신만 소유할 수 있습니다(user_id UNIQUE).
    """
    __tablename__ = "machines"
    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    name = Column(String, nullable=False)
    type = Column(String, nullable=False, index=True)
    provider_id = Column(String, nullable=True)
    status = Column(String, nullable=False, default=MachineStatus.BOOTING, index=True)
    user_id = Column(String, unique=True, nullable=True)
    end_date = Column(DateTime, nullable=True)
    flavor = Column(String, nullable=True)
    ip = Column(String, nullable=True)
    password = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now())

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "provider_id": self.provider_id,
            "status": self.status,
            "user_id": self.user_id,
            "end_date": self.end_date.isoformat() if self.end_date else None,
            "flavor": self.flavor,
            "ip": self.ip,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
