import logging
import threading
import time
from concurrent.futures import Executor, ThreadPoolExecutor, TimeoutError as FutureTimeoutError
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional

from broker.config import ConfigService
from broker.database import models
from broker.database.models import MachineStatus
from broker.drivers import create_driver, Driver, MachineInfo, Startable, Stoppable, Rebootable, CreditReporting
from broker.repositories.interfaces import IMachineRepository, IUserRepository
from broker.services.audit_service import AuditService
from broker.services.image_service import ImageService
from broker.services.session_probe import SessionProbe, NullSessionProbe
from broker.utils.poller import poll_until
from broker.services.exceptions import (
    BrokerError,
    NotInitialized,
    AlreadyInitialized,
    CreditExceeded,
    NoMachineAvailable,
    MachineStarting,
    MachineTransitioning,
    UnsupportedOperation,
    PollTimeout,
    UpstreamDriverError,
    MachineNotFoundError,
)

logger = logging.getLogger(__name__)

DRIVER_CALL_WORKERS = 64


def _start_timer(delay: float, fn: Callable, *args) -> None:
    timer = threading.Timer(delay, fn, args=args)
    timer.daemon = True
    timer.start()


class MachineService:
    """
    머신 풀을 관리하는 브로커 서비스.

    프로세스마다 하나의 인스턴스를 만들어 모든 요청에 전달합니다. initialize()에서 선택된
    드라이버 하나를 프로세스 수명 동안 사용하며, 사용자별 머신 할당, 풀 크기 재조정,
    세션 만료에 따른 회수를 담당합니다.
    """

    def __init__(
        self,
        machine_repo: IMachineRepository,
        user_repo: IUserRepository,
        image_service: ImageService,
        audit_service: AuditService,
        config: ConfigService,
        session_probe: SessionProbe = None,
        executor: Executor = None,
        scheduler: Callable[..., None] = None,
        clock: Callable[[], datetime] = datetime.now,
        sleep: Callable[[float], None] = time.sleep,
        driver_workers: int = DRIVER_CALL_WORKERS,
    ):
        """
        MachineService를 초기화합니다. 드라이버는 initialize()에서 생성됩니다.

        Args:
            machine_repo: 머신 데이터에 접근하기 위한 리포지토리.
            user_repo: 사용자 크레딧을 조회·갱신하기 위한 리포지토리.
            image_service: 기본 이미지를 관리하는 서비스.
            audit_service: 생명주기 이벤트를 기록하는 감사 서비스.
            config: 키-값 설정 조회 서비스.
            session_probe: 세션 활성 여부 확인기. 없으면 항상 비활성으로 간주합니다.
            executor: 백그라운드 작업(풀 재조정, 비동기 시작)을 실행할 Executor.
            scheduler: (delay, fn, *args)를 받아 delay초 뒤 fn을 한 번 실행하는 함수.
            clock: 현재 시각을 반환하는 함수.
            sleep: 폴링 대기 함수.
            driver_workers: 드라이버 호출을 동시에 실행할 최대 스레드 수.
        """
        self.machine_repo = machine_repo
        self.user_repo = user_repo
        self.image_service = image_service
        self.audit = audit_service
        self.config = config
        self.session_probe = session_probe or NullSessionProbe()
        self._executor = executor or ThreadPoolExecutor(
            max_workers=config.get("background_workers"), thread_name_prefix="broker-bg"
        )
        self._driver_calls = ThreadPoolExecutor(max_workers=driver_workers, thread_name_prefix="broker-driver")
        self._schedule = scheduler or _start_timer
        self._clock = clock
        self._sleep = sleep
        self._driver: Optional[Driver] = None
        self._init_lock = threading.Lock()

    # ------------------------------------------------------------------
    # 초기화 / 드라이버
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """
        설정(iaas)에 따라 드라이버를 한 번만 초기화하고, 기본 이미지를 준비한 뒤
        백그라운드에서 첫 풀 재조정을 시작합니다.

        Raises:
            AlreadyInitialized: 이미 초기화되었을 때.
            ValueError: 알 수 없는 드라이버 이름일 때.
        """
        with self._init_lock:
            if self._driver is not None:
                raise AlreadyInitialized("Driver already initialized")

            self.image_service.ensure_default_image()
            driver = create_driver(self.config.get("iaas"), self.config.settings)
            driver.initialize()
            driver.register_existing(self.machine_repo.find(type=driver.name()))
            self._driver = driver

        logger.info("Broker initialized with the '%s' driver", driver.name())
        self._spawn(self.update_machines_pool)

    @property
    def driver(self) -> Driver:
        if self._driver is None:
            raise NotInitialized("Driver not initialized")
        return self._driver

    def driver_name(self) -> str:
        return self.driver.name()

    def shutdown(self, wait: bool = False) -> None:
        self._executor.shutdown(wait=wait)
        self._driver_calls.shutdown(wait=wait)

    # ------------------------------------------------------------------
    # 할당 (Allocator)
    # ------------------------------------------------------------------

    def get_machine_for_user(self, user: models.User) -> models.Machine:
        """
        사용자의 머신을 반환합니다. 머신이 없으면 풀에서 running 상태인 미할당 머신을
        원자적으로 할당하고, 빈자리를 채우기 위해 풀 재조정을 시작합니다.

        Args:
            user: 머신을 요청한 사용자 (id, credit 필요).

        Returns:
            사용자에게 할당된 머신.

        Raises:
            NotInitialized: 드라이버가 초기화되지 않았을 때.
            CreditExceeded: 크레딧 한도가 설정되어 있고 사용자의 크레딧이 한도 이상일 때.
            NoMachineAvailable: 할당 가능한 머신이 없을 때.
            MachineStarting: 정지된 머신의 시작을 요청했을 때 (never_terminate_machine).
            MachineTransitioning: 머신이 상태 전환 중일 때 (never_terminate_machine).
        """
        self._assert_initialized()

        credit_limit = str(self.config.get("credit_limit")).strip()
        if credit_limit != "" and float(user.credit or 0) >= float(credit_limit):
            raise CreditExceeded("Exceeded credit")

        machine = self.machine_repo.find_by_user_id(user.id)
        if machine is None:
            claimed = self.machine_repo.claim_idle_machine(user.id)
            if claimed is None:
                raise NoMachineAvailable("A machine is booting for you. Please retry in one minute.")

            logger.info("Machine %s assigned to user %s", claimed.id, user.id)
            self.audit.record(claimed, "Assigned")
            self._spawn(self.update_machines_pool)
            return claimed

        if not self.config.get("never_terminate_machine"):
            return machine

        if machine.status == MachineStatus.STOPPED:
            self._spawn(self.start_machine, machine)
            raise MachineStarting("Your machine is starting. Please retry in one minute.")
        if machine.status == MachineStatus.RUNNING:
            return machine
        raise MachineTransitioning(machine.status)

    # ------------------------------------------------------------------
    # 풀 재조정 (Reconciler)
    # ------------------------------------------------------------------

    def update_machines_pool(self) -> Optional[int]:
        """
        설정된 풀 크기(machine_pool_size)와 running 상태인 미할당 머신 수의 차이만큼
        머신을 동시에 생성하거나 삭제합니다.

        이전 삭제에 실패해 error 상태로 남은 미할당 머신은 매 재조정마다 다시 삭제를 시도합니다.
        개별 생성/삭제 실패는 다른 작업을 중단시키지 않으며, 재조정 중 발생한 오류는
        로그로만 남기고 호출자에게 전파하지 않습니다.

        Returns:
            적용한 변화량 (양수: 생성, 음수: 삭제, 0: 변화 없음). 재조정이 실패하면 None.

        Raises:
            NotInitialized: 드라이버가 초기화되지 않았을 때.
        """
        driver_name = self.driver.name()

        try:
            stale = self.machine_repo.find(user_id=None, status=MachineStatus.ERROR)
            failures = self._run_concurrently(self._terminate_machine, stale)

            desired = self.config.get("machine_pool_size")
            current = self.machine_repo.count(status=MachineStatus.RUNNING, user_id=None)
            delta = desired - current

            if delta < 0:
                unassigned = self.machine_repo.find(user_id=None, status=MachineStatus.RUNNING)
                surplus = unassigned[:-delta]
                self.audit.record(None, f"Update machine pool from {current} to {current + delta} ({delta})", driver=driver_name)
                failures += self._run_concurrently(self._retire_machine, surplus)
            elif delta > 0:
                self.audit.record(None, f"Update machine pool from {current} to {desired} (+{delta})", driver=driver_name)
                failures += self._run_concurrently(lambda _: self._create_machine(), range(delta))

            if failures:
                raise BrokerError(f"{failures} pool operation(s) failed")
            if delta != 0:
                logger.info("Machine pool updated from %d to %d", current, current + delta)
            return delta
        except Exception:
            logger.exception("Error while updating the pool")
            self.audit.record(None, "Error while updating the pool", driver=driver_name)
            return None

    def _run_concurrently(self, fn: Callable[[Any], Any], items: Iterable[Any]) -> int:
        items = list(items)
        if not items:
            return 0
        with ThreadPoolExecutor(max_workers=len(items), thread_name_prefix="broker-pool") as pool:
            futures = [pool.submit(fn, item) for item in items]

        failures = 0
        for future in futures:
            error = future.exception()
            if error is not None:
                failures += 1
                logger.error("Pool operation failed: %s", error)
        return failures

    def _retire_machine(self, machine: models.Machine) -> None:
        # 목록 조회 뒤 할당된 머신은 건드리지 않음
        if not self.machine_repo.retire_idle_machine(machine.id):
            logger.info("Machine %s was claimed before retirement, skipped", machine.id)
            return
        self._terminate_or_mark_error(machine)

    # ------------------------------------------------------------------
    # 머신 생명주기
    # ------------------------------------------------------------------

    def _create_machine(self) -> models.Machine:
        """
        드라이버에 머신 생성을 요청하고 running이 될 때까지 기다린 뒤 비밀번호를 저장합니다.
        비밀번호가 저장된 뒤에야 status가 running이 되어 할당 대상이 됩니다.
        """
        name = self.config.get("machines_name")
        flavor = self.config.get("machines_flavor")
        image = self.image_service.find_default_image()

        info: MachineInfo = self._call_driver("create_machine", name, flavor, image)
        machine = self.machine_repo.create(models.Machine(
            name=info.name or name,
            type=self.driver.name(),
            provider_id=info.provider_id,
            status=MachineStatus.BOOTING,
            flavor=info.flavor or flavor,
            ip=info.ip,
        ))
        self.audit.record(machine, "Created")

        ready = self._wait_for_status(machine, MachineStatus.RUNNING)
        password = self._call_driver("get_password", machine)
        return self._update(machine.id, status=MachineStatus.RUNNING, password=password, ip=ready.ip or machine.ip)

    def start_machine(self, machine: models.Machine) -> models.Machine:
        """
        정지된 머신을 시작하고 running이 될 때까지 기다립니다.
        사용자에게 할당된 머신이면 세션 만료 시각을 다시 설정합니다.

        Raises:
            UnsupportedOperation: 드라이버가 시작 기능을 지원하지 않을 때.
            PollTimeout: 제한 시간 안에 running이 되지 않았을 때 (머신은 삭제됨).
        """
        self._require(Startable, "Start machine")
        self._call_driver("start_machine", machine)
        machine = self._update(machine.id, status=MachineStatus.STARTING)

        ready = self._wait_for_status(machine, MachineStatus.RUNNING)
        machine = self._update(machine.id, status=MachineStatus.RUNNING, ip=ready.ip or machine.ip)
        self.audit.record(machine, "Started")

        if machine.user_id:
            machine = self._extend_end_date(machine)
        return machine

    def stop_machine(self, machine: models.Machine) -> models.Machine:
        """
        머신을 정지하고 stopped가 될 때까지 기다립니다.
        미할당 머신이었다면 풀 재조정을 시작합니다.

        Raises:
            UnsupportedOperation: 드라이버가 정지 기능을 지원하지 않을 때.
            PollTimeout: 제한 시간 안에 stopped가 되지 않았을 때 (머신은 삭제됨).
        """
        self._require(Stoppable, "Stop machine")
        self._call_driver("stop_machine", machine)
        machine = self._update(machine.id, status=MachineStatus.STOPPING)

        self._wait_for_status(machine, MachineStatus.STOPPED)
        machine = self._update(machine.id, status=MachineStatus.STOPPED)
        self.audit.record(machine, "Stopped")

        if not machine.user_id:
            self._spawn(self.update_machines_pool)
        return machine

    def reboot_machine(self, machine: models.Machine) -> models.Machine:
        """
        머신을 재부팅하고 다시 running이 될 때까지 기다립니다.

        Raises:
            UnsupportedOperation: 드라이버가 재부팅 기능을 지원하지 않을 때.
            PollTimeout: 제한 시간 안에 running이 되지 않았을 때 (머신은 삭제됨).
        """
        self._require(Rebootable, "Reboot machine")
        self._call_driver("reboot_machine", machine)

        ready = self._wait_for_status(machine, MachineStatus.RUNNING)
        machine = self._update(machine.id, status=MachineStatus.RUNNING, ip=ready.ip or machine.ip)
        self.audit.record(machine, "Rebooted")
        return machine

    def _terminate_machine(self, machine: models.Machine) -> None:
        self._call_driver("destroy_machine", machine)
        self.machine_repo.delete(machine.id)
        self.audit.record(machine, "Deleted")

    def _terminate_or_mark_error(self, machine: models.Machine) -> None:
        # 실패한 머신은 error로 남겨 다음 재조정에서 다시 삭제
        try:
            self._terminate_machine(machine)
        except Exception:
            logger.error("Teardown of machine %s failed, marking it as error", machine.id)
            self.machine_repo.update(machine.id, status=MachineStatus.ERROR)
            raise

    def _wait_for_status(self, machine: models.Machine, target: str) -> MachineInfo:
        """
        머신이 target 상태가 될 때까지 폴링합니다. 제한 시간을 넘기면 머신을
        복구 불가능한 것으로 보고 삭제한 뒤 PollTimeout을 다시 발생시킵니다.
        """
        def observe() -> Optional[MachineInfo]:
            try:
                return self._call_driver("refresh", machine)
            except UpstreamDriverError as e:
                logger.warning("Refreshing machine %s failed: %s", machine.id, e)
                return None

        try:
            return poll_until(
                observe,
                lambda info: info is not None and info.status == target,
                interval=self.config.get("poll_interval"),
                retries=self.config.get("poll_retries"),
                sleep=self._sleep,
            )
        except PollTimeout:
            logger.error("Machine %s did not become %s in time, tearing it down", machine.id, target)
            self.audit.record(machine, "Error")
            self._force_terminate(machine)
            raise

    def _force_terminate(self, machine: models.Machine) -> None:
        try:
            self._terminate_machine(machine)
        except Exception:
            logger.exception("Forced teardown of machine %s failed", machine.id)
            self.machine_repo.update(machine.id, status=MachineStatus.ERROR)

    # ------------------------------------------------------------------
    # 세션 (Session Lifecycle)
    # ------------------------------------------------------------------

    def session_open(self, user: models.User) -> models.Machine:
        """사용자의 머신을 확보하고, 세션이 열려 있는 동안 만료 시각을 제거합니다."""
        machine = self.get_machine_for_user(user)
        machine = self._update(machine.id, end_date=None)
        self.audit.record(machine, "Opened")
        return machine

    def session_ended(self, user: models.User) -> models.Machine:
        """
        세션 종료를 알립니다. 만료 시각을 now + session_duration으로 설정하고,
        그 시점에 한 번 실행될 회수 검사를 예약한 뒤 즉시 반환합니다.
        사용량 기반 과금 드라이버라면 사용자의 소비 크레딧을 갱신합니다.

        Raises:
            MachineNotFoundError: 사용자에게 할당된 머신이 없을 때.
        """
        self._assert_initialized()
        machine = self.machine_repo.find_by_user_id(user.id)
        if machine is None:
            raise MachineNotFoundError(f"User '{user.id}' has no machine.")

        machine = self._extend_end_date(machine)

        if isinstance(self.driver, CreditReporting):
            credit = self._call_driver("get_user_credit", user, machine)
            self.user_repo.update_credit(user.id, credit)

        self.audit.record(machine, "Closed")
        return machine

    def _extend_end_date(self, machine: models.Machine) -> models.Machine:
        duration = self.config.get("session_duration")
        machine = self._update(machine.id, end_date=self._clock() + timedelta(seconds=duration))
        self._schedule(duration, self._should_terminate_machine, machine.id)
        return machine

    def _should_terminate_machine(self, machine_id: str) -> bool:
        """
        예약된 만료 검사. 실행 시점에 세션 활성 여부와 최신 end_date를 다시 확인하므로,
        세션이 다시 열렸거나 만료 시각이 연장되었다면 아무것도 하지 않습니다.

        Returns:
            머신을 정지하거나 삭제했으면 True.
        """
        try:
            machine = self.machine_repo.find_by_id(machine_id)
            if machine is None or machine.end_date is None:
                return False
            if self.session_probe.is_session_active(machine):
                return False
            if self._clock() < machine.end_date:
                return False

            if self.config.get("never_terminate_machine"):
                if machine.status != MachineStatus.RUNNING:
                    return False
                logger.info("Session expired on machine %s, stopping it", machine.id)
                self.stop_machine(machine)
            else:
                logger.info("Session expired on machine %s, terminating it", machine.id)
                if not self.machine_repo.expire_machine(machine.id, machine.user_id, machine.end_date, self._clock()):
                    logger.info("Session on machine %s was reopened or extended, expiry skipped", machine.id)
                    return False
                machine = self.machine_repo.find_by_id(machine.id)
                try:
                    self._terminate_or_mark_error(machine)
                finally:
                    self._spawn(self.update_machines_pool)
            return True
        except Exception:
            logger.exception("Expiry check failed for machine %s", machine_id)
            return False

    # ------------------------------------------------------------------
    # 조회 / 이미지 / 드라이버 전달
    # ------------------------------------------------------------------

    def list_machines(self) -> List[Dict[str, Any]]:
        """
        현재 드라이버의 머신 목록을 조회하고, 드라이버에서 실시간 상태를 가져옵니다.
        제공자에서 머신을 찾을 수 없으면 상태는 'unknown'으로 표시됩니다.
        """
        machines = []
        for machine in self.machine_repo.find(type=self.driver.name()):
            machine_data = machine.to_dict()
            try:
                machine_data["status"] = self._call_driver("refresh", machine).status
            except UpstreamDriverError:
                machine_data["status"] = "unknown"
            machines.append(machine_data)
        return machines

    def create_image(self, image_spec: Dict[str, Any]):
        """드라이버에 이미지 생성을 요청하고 결과를 그대로 반환합니다."""
        machine = None
        if image_spec.get("build_from"):
            machine = self.machine_repo.find_by_id(image_spec["build_from"])
            if machine is None:
                raise MachineNotFoundError(f"Machine '{image_spec['build_from']}' not found.")
        return self._call_driver("create_image", image_spec, machine)

    def get_default_image(self) -> models.Image:
        return self.image_service.get_default_image()

    def refresh(self, machine: models.Machine) -> MachineInfo:
        return self._call_driver("refresh", machine)

    def get_password(self, machine: models.Machine) -> str:
        return self._call_driver("get_password", machine)

    # ------------------------------------------------------------------
    # 내부 도우미
    # ------------------------------------------------------------------

    def _call_driver(self, operation: str, *args):
        """
        드라이버 메서드를 driver_call_timeout 안에서 실행합니다.
        실행 대기열에서 기다린 시간과 실제 실행 시간에 각각 driver_call_timeout을 적용하므로,
        동시 호출이 많아도 대기 시간이 실행 제한 시간을 잠식하지 않습니다.
        브로커 예외가 아닌 모든 실패는 UpstreamDriverError로 감쌉니다.
        """
        method = getattr(self.driver, operation)
        started = threading.Event()

        def run():
            started.set()
            return method(*args)

        future = self._driver_calls.submit(run)
        timeout = self.config.get("driver_call_timeout")
        if not started.wait(timeout) and future.cancel():
            raise UpstreamDriverError(f"Driver call '{operation}' was not started within {timeout}s")
        try:
            return future.result(timeout=timeout)
        except FutureTimeoutError as e:
            future.cancel()
            raise UpstreamDriverError(f"Driver call '{operation}' timed out after {timeout}s") from e
        except BrokerError:
            raise
        except Exception as e:
            raise UpstreamDriverError(f"Driver call '{operation}' failed: {e}") from e

    def _assert_initialized(self) -> None:
        if self._driver is None:
            raise NotInitialized("Driver not initialized")

    def _require(self, capability: type, feature: str) -> None:
        if not isinstance(self.driver, capability):
            raise UnsupportedOperation(f"{feature} feature is not available on this driver")

    def _update(self, machine_id: str, **fields) -> models.Machine:
        machine = self.machine_repo.update(machine_id, **fields)
        if machine is None:
            raise MachineNotFoundError(f"Machine '{machine_id}' not found.")
        return machine

    def _spawn(self, fn: Callable, *args):
        future = self._executor.submit(fn, *args)
        future.add_done_callback(self._log_background_failure)
        return future

    @staticmethod
    def _log_background_failure(future) -> None:
        if future.cancelled():
            return
        error = future.exception()
        if error is not None:
            logger.error("Background task failed: %s", error, exc_info=error)
