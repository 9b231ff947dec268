from .sqlalchemy_machine_repository import SqlalchemyMachineRepository
from .sqlalchemy_image_repository import SqlalchemyImageRepository
from .sqlalchemy_broker_log_repository import SqlalchemyBrokerLogRepository
from .sqlalchemy_user_repository import SqlalchemyUserRepository

__all__ = [
    "SqlalchemyMachineRepository",
    "SqlalchemyImageRepository",
    "SqlalchemyBrokerLogRepository",
    "SqlalchemyUserRepository",
]
