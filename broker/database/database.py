from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base, sessionmaker

from broker.config import get_settings

# 모든 모델 클래스가 상속받을 Base 클래스
Base = declarative_base()


def create_db_engine(database_url: str) -> Engine:
    """
    데이터베이스 URL로 SQLAlchemy 엔진을 생성합니다.

    SQLite는 풀 재조정, 세션 만료 타이머 등 여러 스레드에서 접근하므로
    check_same_thread를 끄고, 쓰기 잠금 대기 시간을 넉넉하게 줍니다.
    """
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(database_url, connect_args=connect_args)


def create_session_factory(engine: Engine) -> sessionmaker:
    # 리포지토리가 반환한 객체를 세션 종료 후에도 읽을 수 있도록 expire_on_commit=False
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


engine = create_db_engine(get_settings().database_url)
SessionLocal = create_session_factory(engine)
