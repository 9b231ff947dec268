# tests/services/test_machine_service.py
import threading
import time
from datetime import timedelta
from unittest.mock import MagicMock, patch

import pytest

from broker.database import models
from broker.database.models import MachineStatus
from broker.drivers import CreditReporting
from broker.drivers.dummy import DummyDriver
from broker.repositories.interfaces import IMachineRepository, IUserRepository
from broker.services.audit_service import AuditService
from broker.services.image_service import ImageService
from broker.services.machine_service import MachineService
from broker.services.session_probe import SessionProbe
from broker.services.exceptions import (
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

# ===================================================================
#  테스트를 위한 가짜 드라이버 및 도우미
# ===================================================================

class StuckDriver(DummyDriver):
    """상태 전환 요청을 무시하여 목표 상태에 도달하지 않는 드라이버."""

    def create_machine(self, name, flavor, image=None):
        info = super().create_machine(name, flavor, image)
        with self._lock:
            self._servers[info.provider_id] = MachineStatus.BOOTING
        return info

    def start_machine(self, machine):
        pass

    def stop_machine(self, machine):
        pass

    def reboot_machine(self, machine):
        self._set_status(machine, MachineStatus.STARTING)


class FlakyDriver(DummyDriver):
    """첫 번째 생성 요청만 실패하는 드라이버."""

    def __init__(self, settings):
        super().__init__(settings)
        self._calls = 0
        self._calls_lock = threading.Lock()

    def create_machine(self, name, flavor, image=None):
        with self._calls_lock:
            self._calls += 1
            first_call = self._calls == 1
        if first_call:
            raise UpstreamDriverError("quota exceeded")
        return super().create_machine(name, flavor, image)


class CreditDriver(DummyDriver, CreditReporting):
    def get_user_credit(self, user, machine=None):
        return 12.5



class FailingDestroyDriver(DummyDriver):
    """fail_destroy가 켜져 있는 동안 삭제 요청이 실패하는 드라이버."""

    fail_destroy = False

    def destroy_machine(self, machine):
        if self.fail_destroy:
            raise UpstreamDriverError("destroy rejected by provider")
        super().destroy_machine(machine)


class SlowDriver(DummyDriver):
    def refresh(self, machine):
        time.sleep(0.6)
        return super().refresh(machine)


def log_states(machine_service):
    return [log.state for log in machine_service.audit.list_logs()]


def warm_pool(machine_service, executor):
    """드라이버를 초기화하고 첫 풀 재조정을 실행합니다."""
    machine_service.initialize()
    return executor.run_pending()


@pytest.fixture
def user(make_user):
    return make_user("user-1", credit=0.0)


@pytest.fixture
def assigned_machine(machine_service, executor, user):
    """풀을 채운 뒤 user에게 머신 하나를 할당하고, 할당 후 예약된 재조정은 비웁니다."""
    warm_pool(machine_service, executor)
    machine = machine_service.get_machine_for_user(user)
    executor.pending.clear()
    return machine

# ===================================================================
#  initialize 테스트 스위트
# ===================================================================

class TestInitialize:
    def test_initialize_twice_raises(self, machine_service):
        """드라이버 초기화는 한 번만 가능한지 테스트합니다."""
        machine_service.initialize()

        with pytest.raises(AlreadyInitialized):
            machine_service.initialize()

    def test_operations_require_initialization(self, machine_service, user):
        """초기화 전에 요청한 작업은 NotInitialized로 실패하는지 테스트합니다."""
        with pytest.raises(NotInitialized):
            machine_service.get_machine_for_user(user)
        with pytest.raises(NotInitialized):
            machine_service.update_machines_pool()
        with pytest.raises(NotInitialized):
            machine_service.session_ended(user)

    def test_unknown_driver_leaves_service_uninitialized(self, machine_service, config):
        # === Arrange ===
        config.update(iaas="no-such-cloud")

        # === Act & Assert ===
        with pytest.raises(ValueError):
            machine_service.initialize()
        with pytest.raises(NotInitialized):
            machine_service.driver_name()

    def test_initialize_seeds_default_image_and_schedules_reconcile(self, machine_service, executor):
        machine_service.initialize()

        assert machine_service.get_default_image().name == "Default"
        assert machine_service.driver_name() == "dummy"
        assert len(executor.pending) == 1

# ===================================================================
#  update_machines_pool 테스트 스위트
# ===================================================================

class TestUpdateMachinesPool:
    def test_fills_empty_pool(self, machine_service, executor, machine_repo):
        """풀 크기 3, 머신 0대에서 시작하면 running 미할당 머신 3대와 감사 로그 4건이 남는지 테스트합니다."""
        # === Act ===
        results = warm_pool(machine_service, executor)

        # === Assert ===
        assert results == [3]
        machines = machine_repo.find(status=MachineStatus.RUNNING, user_id=None)
        assert len(machines) == 3
        assert all(m.password == "secret" and m.ip == "127.0.0.1" for m in machines)

        states = log_states(machine_service)
        assert len(states) == 4
        assert states.count("Created") == 3
        assert "Update machine pool from 0 to 3 (+3)" in states

    def test_second_pass_without_change_does_nothing(self, machine_service, executor):
        warm_pool(machine_service, executor)

        assert machine_service.update_machines_pool() == 0
        assert len(log_states(machine_service)) == 4

    def test_shrinks_pool(self, machine_service, executor, machine_repo, config):
        """풀 크기를 줄이면 남는 미할당 머신을 삭제하는지 테스트합니다."""
        # === Arrange ===
        warm_pool(machine_service, executor)
        config.update(machine_pool_size=1)

        # === Act ===
        delta = machine_service.update_machines_pool()

        # === Assert ===
        assert delta == -2
        assert machine_repo.count(type="dummy") == 1
        states = log_states(machine_service)
        assert "Update machine pool from 3 to 1 (-2)" in states
        assert states.count("Deleted") == 2

    def test_assigned_machines_do_not_count_toward_pool(self, machine_service, executor, machine_repo, assigned_machine):
        assert machine_service.update_machines_pool() == 1
        assert machine_repo.count(status=MachineStatus.RUNNING, user_id=None) == 3
        assert machine_repo.find_by_id(assigned_machine.id).user_id == "user-1"

    def test_single_creation_failure_does_not_stop_others(self, machine_service, executor, machine_repo, settings):
        """생성 하나가 실패해도 나머지 생성은 완료되고, 재조정 오류는 기록만 되는지 테스트합니다."""
        # === Arrange ===
        with patch("broker.services.machine_service.create_driver", return_value=FlakyDriver(settings)):
            machine_service.initialize()

        # === Act ===
        results = executor.run_pending()

        # === Assert ===
        assert results == [None]
        assert machine_repo.count(status=MachineStatus.RUNNING, user_id=None) == 2
        assert "Error while updating the pool" in log_states(machine_service)

    def test_pass_level_error_is_swallowed(self, machine_service, executor, machine_repo):
        # === Arrange ===
        warm_pool(machine_service, executor)

        # === Act ===
        with patch.object(machine_repo, "count", side_effect=RuntimeError("database is locked")):
            result = machine_service.update_machines_pool()

        # === Assert ===
        assert result is None

    def test_failed_retirement_is_marked_error_and_retried(self, machine_service, executor, machine_repo, config, settings):
        """삭제에 실패한 머신은 error로 남고, 다음 재조정에서 다시 삭제되는지 테스트합니다."""
        # === Arrange ===
        driver = FailingDestroyDriver(settings)
        with patch("broker.services.machine_service.create_driver", return_value=driver):
            machine_service.initialize()
        executor.run_pending()
        config.update(machine_pool_size=1)
        driver.fail_destroy = True

        # === Act ===
        failed_pass = machine_service.update_machines_pool()

        # === Assert ===
        assert failed_pass is None
        machines = machine_repo.find(type="dummy")
        assert sorted(m.status for m in machines) == [MachineStatus.ERROR, MachineStatus.ERROR, MachineStatus.RUNNING]
        assert all(m.user_id is None for m in machines)

        # === Act ===
        driver.fail_destroy = False
        retry_pass = machine_service.update_machines_pool()

        # === Assert ===
        assert retry_pass == 0
        machines = machine_repo.find(type="dummy")
        assert [m.status for m in machines] == [MachineStatus.RUNNING]
        assert len(driver._servers) == 1
        assert log_states(machine_service).count("Deleted") == 2

# ===================================================================
#  get_machine_for_user 테스트 스위트
# ===================================================================

class TestGetMachineForUser:
    def test_assigns_idle_machine_and_replenishes_pool(self, machine_service, executor, machine_repo, user):
        """미할당 머신을 할당하고, 빈자리를 채우는 재조정을 예약하는지 테스트합니다."""
        # === Arrange ===
        warm_pool(machine_service, executor)

        # === Act ===
        machine = machine_service.get_machine_for_user(user)

        # === Assert ===
        assert machine.user_id == user.id
        assert machine.status == MachineStatus.RUNNING
        assert machine.password == "secret"
        assert "Assigned" in log_states(machine_service)

        # 예약된 재조정이 풀을 다시 3대로 채움
        assert executor.run_pending() == [1]
        assert machine_repo.count(status=MachineStatus.RUNNING, user_id=None) == 3

    def test_repeated_request_returns_same_machine(self, machine_service, machine_repo, user, assigned_machine):
        machine = machine_service.get_machine_for_user(user)

        assert machine.id == assigned_machine.id
        assert len(machine_repo.find(user_id=user.id)) == 1

    def test_empty_pool_raises_no_machine_available(self, machine_service, user):
        machine_service.initialize()

        with pytest.raises(NoMachineAvailable):
            machine_service.get_machine_for_user(user)

    def test_never_terminate_off_returns_machine_in_any_state(self, machine_service, machine_repo, executor, user, assigned_machine):
        machine_repo.update(assigned_machine.id, status=MachineStatus.STOPPED)

        machine = machine_service.get_machine_for_user(user)

        assert machine.status == MachineStatus.STOPPED
        assert executor.pending == []

    def test_never_terminate_starts_stopped_machine(self, machine_service, machine_repo, executor, config, user, assigned_machine):
        """정지된 머신을 요청하면 백그라운드에서 시작하고 MachineStarting을 알리는지 테스트합니다."""
        # === Arrange ===
        config.update(never_terminate_machine=True)
        machine_service.stop_machine(assigned_machine)

        # === Act & Assert ===
        with pytest.raises(MachineStarting):
            machine_service.get_machine_for_user(user)

        executor.run_pending()
        assert machine_repo.find_by_id(assigned_machine.id).status == MachineStatus.RUNNING
        assert "Started" in log_states(machine_service)

    def test_never_terminate_returns_running_machine(self, machine_service, config, user, assigned_machine):
        config.update(never_terminate_machine=True)

        assert machine_service.get_machine_for_user(user).id == assigned_machine.id

    @pytest.mark.parametrize("status", [MachineStatus.STOPPING, MachineStatus.STARTING, MachineStatus.BOOTING])
    def test_never_terminate_reports_transitioning_machine(self, machine_service, machine_repo, config, user, assigned_machine, status):
        # === Arrange ===
        config.update(never_terminate_machine=True)
        machine_repo.update(assigned_machine.id, status=status)

        # === Act & Assert ===
        with pytest.raises(MachineTransitioning) as exc_info:
            machine_service.get_machine_for_user(user)
        assert exc_info.value.status == status


class TestCreditGate:
    @pytest.fixture
    def mock_machine_repo(self) -> MagicMock:
        """IMachineRepository에 대한 모의(Mock) 객체를 생성하여 반환합니다."""
        repo = MagicMock(spec=IMachineRepository)
        repo.find.return_value = []
        return repo

    @pytest.fixture
    def service(self, mock_machine_repo, config, executor, scheduler, clock):
        service = MachineService(
            mock_machine_repo,
            MagicMock(spec=IUserRepository),
            MagicMock(spec=ImageService),
            MagicMock(spec=AuditService),
            config,
            executor=executor,
            scheduler=scheduler,
            clock=clock,
        )
        service.initialize()
        executor.pending.clear()
        yield service
        service.shutdown()

    @pytest.mark.parametrize("status", [None, *MachineStatus.ALL])
    def test_credit_limit_checked_before_anything_else(self, service, mock_machine_repo, config, status):
        """크레딧 한도를 넘은 사용자는 머신 보유 여부나 상태와 관계없이 거절되는지 테스트합니다."""
        # === Arrange ===
        config.update(credit_limit="10", never_terminate_machine=True)
        user = models.User(id="user-1", username="user-1", credit=10.0)
        mock_machine_repo.find_by_user_id.return_value = (
            None if status is None else models.Machine(id="m-1", status=status, user_id="user-1")
        )

        # === Act & Assert ===
        with pytest.raises(CreditExceeded):
            service.get_machine_for_user(user)

        mock_machine_repo.claim_idle_machine.assert_not_called()

    def test_credit_below_limit_is_allowed(self, service, mock_machine_repo, config):
        # === Arrange ===
        config.update(credit_limit="10")
        user = models.User(id="user-1", username="user-1", credit=9.99)
        mock_machine_repo.find_by_user_id.return_value = None
        mock_machine_repo.claim_idle_machine.return_value = models.Machine(id="m-1", user_id="user-1")

        # === Act ===
        machine = service.get_machine_for_user(user)

        # === Assert ===
        assert machine.id == "m-1"
        mock_machine_repo.claim_idle_machine.assert_called_once_with("user-1")

    def test_empty_credit_limit_disables_gate(self, service, mock_machine_repo, config):
        config.update(credit_limit="")
        user = models.User(id="user-1", username="user-1", credit=1_000_000.0)
        mock_machine_repo.find_by_user_id.return_value = None
        mock_machine_repo.claim_idle_machine.return_value = models.Machine(id="m-1", user_id="user-1")

        assert service.get_machine_for_user(user).id == "m-1"

# ===================================================================
#  start / stop / reboot 테스트 스위트
# ===================================================================

class TestMachineLifecycle:
    def test_stop_then_start_owned_machine(self, machine_service, executor, scheduler, clock, assigned_machine):
        """할당된 머신을 정지했다가 시작하면 만료 시각이 다시 설정되는지 테스트합니다."""
        # === Act ===
        stopped = machine_service.stop_machine(assigned_machine)
        started = machine_service.start_machine(stopped)

        # === Assert ===
        assert stopped.status == MachineStatus.STOPPED
        assert started.status == MachineStatus.RUNNING
        assert started.end_date == clock.now + timedelta(seconds=60)
        assert scheduler.scheduled[-1][0] == 60
        # 할당된 머신의 정지는 풀 재조정을 예약하지 않음
        assert executor.pending == []

        states = log_states(machine_service)
        assert "Stopped" in states and "Started" in states

    def test_stop_unassigned_machine_schedules_reconcile(self, machine_service, executor, machine_repo):
        warm_pool(machine_service, executor)
        idle = machine_repo.find(user_id=None)[0]

        machine_service.stop_machine(idle)

        assert len(executor.pending) == 1

    def test_reboot(self, machine_service, assigned_machine):
        machine = machine_service.reboot_machine(assigned_machine)

        assert machine.status == MachineStatus.RUNNING
        assert "Rebooted" in log_states(machine_service)

    def test_manual_driver_does_not_support_power_operations(self, machine_service, executor, machine_repo, config):
        """전원 관리 기능이 없는 드라이버에서는 UnsupportedOperation이 발생하는지 테스트합니다."""
        # === Arrange ===
        config.update(iaas="manual", manual_machines=["10.0.0.1", "10.0.0.2"], machine_pool_size=1)
        warm_pool(machine_service, executor)
        machine = machine_repo.find(type="manual")[0]

        # === Act & Assert ===
        with pytest.raises(UnsupportedOperation, match="Start machine feature is not available"):
            machine_service.start_machine(machine)
        with pytest.raises(UnsupportedOperation):
            machine_service.stop_machine(machine)
        with pytest.raises(UnsupportedOperation):
            machine_service.reboot_machine(machine)


class TestPollTimeoutTeardown:
    @pytest.fixture
    def driver(self, settings):
        return StuckDriver(settings)

    @pytest.fixture
    def initialized(self, machine_service, executor, driver):
        with patch("broker.services.machine_service.create_driver", return_value=driver):
            machine_service.initialize()
        executor.pending.clear()
        return machine_service

    def _add_machine(self, driver, machine_repo, status):
        info = driver.create_machine("exec-server", "medium")
        driver._servers[info.provider_id] = status
        return machine_repo.create(models.Machine(
            name=info.name, type="dummy", provider_id=info.provider_id, status=status, ip=info.ip,
        ))

    def test_machine_that_never_boots_is_torn_down(self, initialized, machine_repo, driver, config):
        """생성 후 running이 되지 않은 머신은 삭제되고 재조정은 실패로 기록되는지 테스트합니다."""
        # === Arrange ===
        config.update(machine_pool_size=1)

        # === Act ===
        result = initialized.update_machines_pool()

        # === Assert ===
        assert result is None
        assert machine_repo.count(type="dummy") == 0
        assert driver._servers == {}
        states = log_states(initialized)
        assert states.count("Created") == 1
        assert "Error" in states and "Deleted" in states
        assert "Error while updating the pool" in states

    @pytest.mark.parametrize("operation, initial_status", [
        ("start_machine", MachineStatus.STOPPED),
        ("stop_machine", MachineStatus.RUNNING),
        ("reboot_machine", MachineStatus.RUNNING),
    ])
    def test_lifecycle_timeout_tears_machine_down(self, initialized, machine_repo, driver, operation, initial_status):
        # === Arrange ===
        machine = self._add_machine(driver, machine_repo, initial_status)

        # === Act & Assert ===
        with pytest.raises(PollTimeout):
            getattr(initialized, operation)(machine)

        assert machine_repo.find_by_id(machine.id) is None
        assert machine.provider_id not in driver._servers
        states = log_states(initialized)
        assert states[:2] == ["Deleted", "Error"]

# ===================================================================
#  세션 수명주기 테스트 스위트
# ===================================================================

class TestSessions:
    def test_session_open_clears_end_date(self, machine_service, executor, user):
        warm_pool(machine_service, executor)

        machine = machine_service.session_open(user)

        assert machine.user_id == user.id
        assert machine.end_date is None
        assert "Opened" in log_states(machine_service)

    def test_session_ended_sets_end_date_and_schedules_check(self, machine_service, scheduler, clock, user, assigned_machine):
        """세션 종료 시 만료 시각을 설정하고 만료 검사를 예약한 뒤 바로 반환하는지 테스트합니다."""
        # === Act ===
        machine = machine_service.session_ended(user)

        # === Assert ===
        assert machine.id == assigned_machine.id
        assert machine.end_date == clock.now + timedelta(seconds=60)
        assert len(scheduler.scheduled) == 1
        delay, fn, args = scheduler.scheduled[0]
        assert delay == 60
        assert args == (assigned_machine.id,)
        assert "Closed" in log_states(machine_service)

    def test_session_ended_without_machine_raises(self, machine_service, make_user):
        machine_service.initialize()
        stranger = make_user("user-2")

        with pytest.raises(MachineNotFoundError):
            machine_service.session_ended(stranger)

    def test_expired_machine_is_reclaimed(self, machine_service, machine_repo, executor, scheduler, clock, user, assigned_machine):
        """만료 시각이 지나고 세션이 없으면 머신을 삭제하고 풀을 다시 채우는지 테스트합니다."""
        # === Arrange ===
        machine_service.session_ended(user)
        clock.advance(61)

        # === Act ===
        reclaimed = scheduler.fire()

        # === Assert ===
        assert reclaimed is True
        assert machine_repo.find_by_id(assigned_machine.id) is None
        assert machine_repo.find_by_user_id(user.id) is None
        assert "Deleted" in log_states(machine_service)

        executor.run_pending()
        assert machine_repo.count(status=MachineStatus.RUNNING, user_id=None) == 3

    def test_reopened_session_cancels_pending_expiry(self, machine_service, machine_repo, scheduler, clock, user, assigned_machine):
        # === Arrange ===
        machine_service.session_ended(user)
        machine_service.session_open(user)
        clock.advance(61)

        # === Act ===
        reclaimed = scheduler.fire(0)

        # === Assert ===
        assert reclaimed is False
        assert machine_repo.find_by_id(assigned_machine.id).user_id == user.id

    def test_stale_check_respects_extended_end_date(self, machine_service, machine_repo, scheduler, clock, user, assigned_machine):
        """먼저 예약된 검사가 나중에 연장된 만료 시각보다 일찍 실행되면 아무것도 하지 않는지 테스트합니다."""
        # === Arrange ===
        machine_service.session_ended(user)
        clock.advance(30)
        machine_service.session_open(user)
        machine_service.session_ended(user)

        # === Act & Assert ===
        clock.advance(31)
        assert scheduler.fire(0) is False
        assert machine_repo.find_by_id(assigned_machine.id) is not None

        clock.advance(30)
        assert scheduler.fire(1) is True
        assert machine_repo.find_by_id(assigned_machine.id) is None

    def test_active_session_keeps_machine(self, machine_service, machine_repo, scheduler, clock, user, assigned_machine):
        # === Arrange ===
        probe = MagicMock(spec=SessionProbe)
        probe.is_session_active.return_value = True
        machine_service.session_probe = probe
        machine_service.session_ended(user)
        clock.advance(61)

        # === Act & Assert ===
        assert scheduler.fire() is False
        assert machine_repo.find_by_id(assigned_machine.id) is not None

    def test_never_terminate_stops_expired_machine(self, machine_service, machine_repo, scheduler, clock, config, user, assigned_machine):
        """never_terminate_machine이면 만료된 머신을 삭제하지 않고 정지만 하는지 테스트합니다."""
        # === Arrange ===
        config.update(never_terminate_machine=True)
        machine_service.session_ended(user)
        clock.advance(61)

        # === Act ===
        assert scheduler.fire() is True

        # === Assert ===
        machine = machine_repo.find_by_id(assigned_machine.id)
        assert machine.status == MachineStatus.STOPPED
        assert machine.user_id == user.id

    def test_session_ended_updates_credit_for_reporting_driver(self, machine_service, executor, user_repo, settings, user):
        # === Arrange ===
        with patch("broker.services.machine_service.create_driver", return_value=CreditDriver(settings)):
            machine_service.initialize()
        executor.run_pending()
        machine_service.get_machine_for_user(user)

        # === Act ===
        machine_service.session_ended(user)

        # === Assert ===
        assert user_repo.find_by_id(user.id).credit == 12.5

    def test_session_reopened_during_expiry_check_keeps_machine(self, machine_service, machine_repo, scheduler, clock, user, assigned_machine):
        """만료 검사가 머신을 읽은 뒤 세션이 다시 열리면 머신을 회수하지 않는지 테스트합니다."""
        # === Arrange ===
        machine_service.session_ended(user)
        clock.advance(61)

        def reopen_then_report_idle(machine):
            machine_service.session_open(user)
            return False

        probe = MagicMock(spec=SessionProbe)
        probe.is_session_active.side_effect = reopen_then_report_idle
        machine_service.session_probe = probe

        # === Act ===
        reclaimed = scheduler.fire()

        # === Assert ===
        assert reclaimed is False
        machine = machine_repo.find_by_user_id(user.id)
        assert machine.id == assigned_machine.id
        assert machine.status == MachineStatus.RUNNING
        assert machine.end_date is None
        assert "Deleted" not in log_states(machine_service)

    def test_failed_expiry_teardown_is_cleaned_up_by_reconcile(self, machine_service, machine_repo, executor, scheduler, clock, settings, user):
        """만료된 머신의 삭제가 실패하면 error로 남고, 뒤이은 재조정에서 삭제되는지 테스트합니다."""
        # === Arrange ===
        driver = FailingDestroyDriver(settings)
        with patch("broker.services.machine_service.create_driver", return_value=driver):
            machine_service.initialize()
        executor.run_pending()
        machine = machine_service.get_machine_for_user(user)
        executor.pending.clear()
        machine_service.session_ended(user)
        clock.advance(61)
        driver.fail_destroy = True

        # === Act ===
        reclaimed = scheduler.fire()

        # === Assert ===
        assert reclaimed is False
        stored = machine_repo.find_by_id(machine.id)
        assert stored.status == MachineStatus.ERROR
        assert stored.user_id is None

        # === Act ===
        driver.fail_destroy = False
        executor.run_pending()

        # === Assert ===
        assert machine_repo.find_by_id(machine.id) is None
        assert machine.provider_id not in driver._servers
        assert machine_repo.count(status=MachineStatus.RUNNING, user_id=None) == 3

# ===================================================================
#  조회 / 이미지 테스트 스위트
# ===================================================================

class TestQueries:
    def test_list_machines_reports_unknown_for_missing_provider_machine(self, machine_service, executor, machine_repo):
        # === Arrange ===
        warm_pool(machine_service, executor)
        lost = machine_repo.find(type="dummy")[0]
        machine_service.driver.destroy_machine(lost)

        # === Act ===
        machines = machine_service.list_machines()

        # === Assert ===
        statuses = {m["id"]: m["status"] for m in machines}
        assert statuses.pop(lost.id) == "unknown"
        assert set(statuses.values()) == {MachineStatus.RUNNING}
        assert all("password" not in m for m in machines)

    def test_create_image_from_machine(self, machine_service, assigned_machine):
        image = machine_service.create_image({"name": "golden", "build_from": assigned_machine.id})

        assert image.name == "golden"
        assert image.build_from == assigned_machine.id

    def test_create_image_from_unknown_machine(self, machine_service):
        machine_service.initialize()

        with pytest.raises(MachineNotFoundError):
            machine_service.create_image({"name": "golden", "build_from": "missing"})

# ===================================================================
#  드라이버 호출 제한 시간 테스트 스위트
# ===================================================================

class TestDriverCalls:
    def test_queued_call_is_timed_from_its_start(self, machine_repo, user_repo, image_repo, log_repo, config, executor, settings):
        """
        드라이버 호출 스레드가 모두 사용 중일 때, 대기열에서 기다린 시간은
        실행 제한 시간에 포함되지 않는지 테스트합니다.
        (호출 0.6초, 제한 1초: 두 번째 호출은 대기 0.6초 + 실행 0.6초)
        """
        # === Arrange ===
        config.update(driver_call_timeout=1.0)
        driver = SlowDriver(settings)
        service = MachineService(
            machine_repo, user_repo, ImageService(image_repo), AuditService(log_repo, machine_repo), config,
            executor=executor, driver_workers=1,
        )
        with patch("broker.services.machine_service.create_driver", return_value=driver):
            service.initialize()
        info = driver.create_machine("exec-server", "medium")
        machine = models.Machine(id="m-1", name=info.name, type="dummy", provider_id=info.provider_id)

        barrier = threading.Barrier(2)
        results = []

        def refresh():
            barrier.wait()
            try:
                results.append(service.refresh(machine).status)
            except UpstreamDriverError as e:
                results.append(e)

        # === Act ===
        threads = [threading.Thread(target=refresh) for _ in range(2)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        service.shutdown(wait=True)

        # === Assert ===
        assert results == [MachineStatus.RUNNING, MachineStatus.RUNNING]
