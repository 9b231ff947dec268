from .machine import Machine, MachineStatus
from .image import Image
from .broker_log import BrokerLog
from .user import User

__all__ = ["Machine", "MachineStatus", "Image", "BrokerLog", "User"]
