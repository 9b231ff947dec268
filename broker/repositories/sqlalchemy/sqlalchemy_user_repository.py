from typing import Optional
from sqlalchemy.orm import sessionmaker
from broker.database import models
from broker.repositories.interfaces import IUserRepository

class SqlalchemyUserRepository(IUserRepository):
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    def find_by_id(self, user_id: str) -> Optional[models.User]:
        with self.session_factory() as db:
            return db.get(models.User, user_id)

    def update_credit(self, user_id: str, credit: float) -> bool:
        with self.session_factory() as db:
            user = db.get(models.User, user_id)
            if not user:
                return False
            user.credit = credit
            db.commit()
            return True
