from .machine import IMachineRepository
from .image import IImageRepository
from .broker_log import IBrokerLogRepository
from .user import IUserRepository

__all__ = ["IMachineRepository", "IImageRepository", "IBrokerLogRepository", "IUserRepository"]
