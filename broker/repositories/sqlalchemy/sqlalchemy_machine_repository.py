import logging
from datetime import datetime
from typing import Any, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from broker.database import models
from broker.repositories.interfaces import IMachineRepository

logger = logging.getLogger(__name__)

class SqlalchemyMachineRepository(IMachineRepository):
    def __init__(self, session_factory: sessionmaker):
        # 여러 스레드(풀 재조정, 세션 타이머)에서 호출되므로 연산마다 세션을 새로 엽니다.
        self.session_factory = session_factory

    def create(self, machine_model: models.Machine) -> models.Machine:
        with self.session_factory() as db:
            db.add(machine_model)
            db.commit()
            db.refresh(machine_model)
            return machine_model

    def find_by_id(self, machine_id: str) -> Optional[models.Machine]:
        with self.session_factory() as db:
            return db.get(models.Machine, machine_id)

    def find_by_user_id(self, user_id: str) -> Optional[models.Machine]:
        with self.session_factory() as db:
            return db.query(models.Machine).filter(models.Machine.user_id == user_id).first()

    def find(self, **filters: Any) -> List[models.Machine]:
        with self.session_factory() as db:
            return db.query(models.Machine).filter_by(**filters).order_by(models.Machine.created_at.asc()).all()

    def count(self, **filters: Any) -> int:
        with self.session_factory() as db:
            return db.query(models.Machine).filter_by(**filters).count()

    def update(self, machine_id: str, **fields: Any) -> Optional[models.Machine]:
        with self.session_factory() as db:
            machine = db.get(models.Machine, machine_id)
            if not machine:
                return None
            for key, value in fields.items():
                setattr(machine, key, value)
            db.commit()
            db.refresh(machine)
            return machine

    def delete(self, machine_id: str) -> bool:
        with self.session_factory() as db:
            machine = db.get(models.Machine, machine_id)
            if machine:
                db.delete(machine)
                db.commit()
                return True
            return False

    def claim_idle_machine(self, user_id: str) -> Optional[models.Machine]:
        # PostgreSQL: UPDATE ... WHERE id = (SELECT ... FOR UPDATE SKIP LOCKED) RETURNING id
        # SQLite는 FOR UPDATE를 생략하지만 단일 UPDATE 문이 쓰기 잠금으로 직렬화됩니다.
        idle_machine = (
            select(models.Machine.id)
            .where(models.Machine.user_id.is_(None), models.Machine.status == models.MachineStatus.RUNNING)
            .limit(1)
            .with_for_update(skip_locked=True)
            .scalar_subquery()
        )
        stmt = (
            update(models.Machine)
            .where(models.Machine.id == idle_machine, models.Machine.user_id.is_(None))
            .values(user_id=user_id)
            .returning(models.Machine.id)
            .execution_options(synchronize_session=False)
        )

        with self.session_factory() as db:
            try:
                claimed_id = db.execute(stmt).scalar_one_or_none()
                db.commit()
            except IntegrityError:
                # 같은 사용자의 동시 요청이 이미 머신을 할당받은 경우 (user_id UNIQUE)
                db.rollback()
                logger.info("User %s already owns a machine, returning it", user_id)
                return db.query(models.Machine).filter(models.Machine.user_id == user_id).first()

            if claimed_id is None:
                return None
            return db.get(models.Machine, claimed_id)

    def retire_idle_machine(self, machine_id: str) -> bool:
        stmt = (
            update(models.Machine)
            .where(
                models.Machine.id == machine_id,
                models.Machine.user_id.is_(None),
                models.Machine.status == models.MachineStatus.RUNNING,
            )
            .values(status=models.MachineStatus.DELETING)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1

    def expire_machine(self, machine_id: str, user_id: str, end_date: datetime, now: datetime) -> bool:
        stmt = (
            update(models.Machine)
            .where(
                models.Machine.id == machine_id,
                models.Machine.user_id == user_id,
                models.Machine.end_date == end_date,
                models.Machine.end_date <= now,
            )
            .values(user_id=None, status=models.MachineStatus.DELETING)
            .execution_options(synchronize_session=False)
        )
        with self.session_factory() as db:
            result = db.execute(stmt)
            db.commit()
            return result.rowcount == 1
