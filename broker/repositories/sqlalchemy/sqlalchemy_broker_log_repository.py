from typing import List
from sqlalchemy.orm import sessionmaker
from broker.database import models
from broker.repositories.interfaces import IBrokerLogRepository

class SqlalchemyBrokerLogRepository(IBrokerLogRepository):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def create(self, log_model: models.BrokerLog) -> models.BrokerLog:
        with self.session_factory() as db:
            db.add(log_model)
            db.commit()
            db.refresh(log_model)
            return log_model

    def list_all(self) -> List[models.BrokerLog]:
        with self.session_factory() as db:
            return db.query(models.BrokerLog).order_by(models.BrokerLog.id.desc()).all()
