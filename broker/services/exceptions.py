# broker/services/exceptions.py

class BrokerError(Exception):
    """브로커에서 발생하는 모든 예외의 기반 클래스"""
    pass

# --- Initialization Exceptions ---
class NotInitialized(BrokerError):
    """드라이버가 초기화되기 전에 작업을 요청했을 때"""
    pass

class AlreadyInitialized(BrokerError):
    """이미 초기화된 브로커를 다시 초기화하려고 할 때"""
    pass

# --- Allocation Exceptions ---
class CreditExceeded(BrokerError):
    """사용자의 크레딧이 설정된 한도에 도달했을 때"""
    pass

class NoMachineAvailable(BrokerError):
    """풀에 할당 가능한 머신이 없을 때 (잠시 후 재시도)"""
    pass

class MachineStarting(BrokerError):
    """정지된 머신을 시작하는 중일 때 (잠시 후 재시도)"""
    pass

class MachineTransitioning(BrokerError):
    """머신이 상태 전환 중(stopping, starting 등)일 때 (잠시 후 재시도)"""

    def __init__(self, status: str):
        self.status = status
        super().__init__(f"Your machine is {status}. Please retry in one minute.")

# --- Driver Exceptions ---
class UnsupportedOperation(BrokerError):
    """현재 드라이버가 요청한 기능(start, stop, reboot, credit 등)을 지원하지 않을 때"""
    pass

class PollTimeout(BrokerError):
    """폴링 예산 안에 머신이 목표 상태에 도달하지 못했을 때"""

    def __init__(self, last_state, message: str = None):
        self.last_state = last_state
        super().__init__(message or f"Timed out waiting for machine, last observed state: {last_state!r}")

class UpstreamDriverError(BrokerError):
    """인프라 제공자(provider) 호출이 실패하거나 시간 초과되었을 때"""
    pass

# --- Lookup Exceptions ---
class MachineNotFoundError(BrokerError):
    """머신을 찾을 수 없을 때"""
    pass

class UserNotFoundError(BrokerError):
    """사용자를 찾을 수 없을 때"""
    pass

class ImageNotFoundError(BrokerError):
    """이미지를 찾을 수 없을 때"""
    pass
