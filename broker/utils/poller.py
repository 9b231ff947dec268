# broker/utils/poller.py
import logging
import time
from typing import Callable, TypeVar

from broker.services.exceptions import PollTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_INTERVAL = 5.0
DEFAULT_RETRIES = 100


def poll_until(
    task_fn: Callable[[], T],
    condition: Callable[[T], bool],
    interval: float = DEFAULT_INTERVAL,
    retries: int = DEFAULT_RETRIES,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """
    task_fn으로 현재 상태를 조회하여 condition을 만족할 때까지 일정 간격으로 반복합니다.

    제공자 측의 생성/시작/정지/재부팅은 모두 비동기로 처리되므로, 완료 여부는
    호출 반환값이 아니라 반복적인 상태 조회로 확인해야 합니다.
    기본값(5초 간격, 100회)이면 최대 약 8.3분을 기다립니다.

    Args:
        task_fn: 현재 상태를 조회하는 함수. 예외가 발생하면 그대로 전파됩니다.
        condition: 조회 결과가 목표 상태인지 판단하는 함수.
        interval: 조회 사이의 대기 시간(초).
        retries: 최대 조회 횟수.
        sleep: 대기 함수 (테스트에서 교체 가능).

    Returns:
        condition을 처음으로 만족한 조회 결과.

    Raises:
        PollTimeout: retries번 조회하는 동안 condition을 만족하지 못했을 때.
            last_state에는 실패한 관측 중 하나(마지막 관측)가 담깁니다.
    """
    rejected = []
    for attempt in range(1, retries + 1):
        observed = task_fn()
        if condition(observed):
            return observed
        rejected.append(observed)
        logger.debug("Poll attempt %d/%d did not reach target: %r", attempt, retries, observed)
        if attempt < retries:
            sleep(interval)

    raise PollTimeout(rejected.pop())
