import logging

from sqlalchemy.engine import Engine

from .database import engine as default_engine, Base, create_session_factory
from .models import Image

logger = logging.getLogger(__name__)


def initialize_db(engine: Engine = None):
    """
    테이블을 생성하고, 기본 이미지(placeholder)가 없으면 삽입합니다.
    이미 기본 이미지가 있으면 아무것도 하지 않습니다.
    """
    engine = engine or default_engine
    logger.info("Initializing database schema")

    # 모든 테이블을 생성합니다. (이미 존재하면 생성하지 않음)
    Base.metadata.create_all(bind=engine)

    db = create_session_factory(engine)()
    try:
        if db.query(Image).filter(Image.is_default.is_(True)).first():
            logger.info("Default image already present, skipping seed")
            return

        db.add(Image(name="Default", provider_id=None, build_from=None, is_default=True))
        db.commit()
        logger.info("Default image seeded")
    except Exception:
        db.rollback()
        raise
    finally:
        db.close()


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    initialize_db()
