# tests/conftest.py
from concurrent.futures import Future
from datetime import datetime, timedelta

import pytest

from broker.config import BrokerSettings, ConfigService
from broker.database import models
from broker.database.database import Base, create_db_engine, create_session_factory
from broker.repositories.sqlalchemy import (
    SqlalchemyMachineRepository,
    SqlalchemyImageRepository,
    SqlalchemyBrokerLogRepository,
    SqlalchemyUserRepository,
)
from broker.services.audit_service import AuditService
from broker.services.image_service import ImageService
from broker.services.machine_service import MachineService

# ===================================================================
#  백그라운드 작업, 타이머, 시계를 대신하는 가짜 객체
# ===================================================================

class RecordingExecutor:
    """submit된 작업을 바로 실행하지 않고 쌓아 두었다가 run_pending()에서 실행합니다."""

    def __init__(self):
        self.pending = []

    def submit(self, fn, *args, **kwargs):
        future = Future()
        self.pending.append((future, fn, args, kwargs))
        return future

    def run_pending(self):
        results = []
        while self.pending:
            future, fn, args, kwargs = self.pending.pop(0)
            try:
                result = fn(*args, **kwargs)
            except Exception as e:
                future.set_exception(e)
                results.append(e)
            else:
                future.set_result(result)
                results.append(result)
        return results

    def shutdown(self, wait=True):
        self.pending.clear()


class FakeScheduler:
    """(delay, fn, *args) 예약 요청을 기록합니다. fire()로 직접 실행합니다."""

    def __init__(self):
        self.scheduled = []

    def __call__(self, delay, fn, *args):
        self.scheduled.append((delay, fn, args))

    def fire(self, index=-1):
        delay, fn, args = self.scheduled[index]
        return fn(*args)


class FakeClock:
    def __init__(self, now=None):
        self.now = now or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += timedelta(seconds=seconds)

# ===================================================================
#  데이터베이스 / 리포지토리 Fixture
# ===================================================================

@pytest.fixture
def engine(tmp_path):
    """테스트마다 임시 디렉터리에 파일 기반 SQLite DB를 만듭니다."""
    engine = create_db_engine(f"sqlite:///{tmp_path / 'broker_test.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()

@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)

@pytest.fixture
def machine_repo(session_factory):
    return SqlalchemyMachineRepository(session_factory)

@pytest.fixture
def image_repo(session_factory):
    return SqlalchemyImageRepository(session_factory)

@pytest.fixture
def log_repo(session_factory):
    return SqlalchemyBrokerLogRepository(session_factory)

@pytest.fixture
def user_repo(session_factory):
    return SqlalchemyUserRepository(session_factory)

@pytest.fixture
def make_user(session_factory):
    """지정한 크레딧을 가진 사용자를 DB에 만들어 반환합니다."""
    def _make_user(user_id="user-1", credit=0.0):
        with session_factory() as db:
            user = models.User(id=user_id, username=f"{user_id}-name", credit=credit)
            db.add(user)
            db.commit()
            db.refresh(user)
            return user
    return _make_user

# ===================================================================
#  설정 / 서비스 Fixture
# ===================================================================

@pytest.fixture
def settings():
    return BrokerSettings(
        _env_file=None,
        iaas="dummy",
        machine_pool_size=3,
        session_duration=60,
        poll_interval=0,
        poll_retries=3,
        driver_call_timeout=5,
        machines_password="secret",
    )

@pytest.fixture
def config(settings):
    return ConfigService(settings)

@pytest.fixture
def executor():
    return RecordingExecutor()

@pytest.fixture
def scheduler():
    return FakeScheduler()

@pytest.fixture
def clock():
    return FakeClock()

@pytest.fixture
def machine_service(machine_repo, user_repo, image_repo, log_repo, config, executor, scheduler, clock):
    """실제 SQLite 리포지토리와 가짜 executor/scheduler/clock으로 구성한 MachineService."""
    service = MachineService(
        machine_repo,
        user_repo,
        ImageService(image_repo),
        AuditService(log_repo, machine_repo),
        config,
        executor=executor,
        scheduler=scheduler,
        clock=clock,
        sleep=lambda seconds: None,
    )
    yield service
    service.shutdown(wait=True)
