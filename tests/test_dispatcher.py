from __future__ import annotations

import time
from concurrent.futures import Future

import allure
import pytest

from remote_dispatch.dispatch.cancellation import CancelToken
from remote_dispatch.dispatch.classifier import classify
from remote_dispatch.dispatch.dispatcher import Dispatcher, DispatchStrategy, _RunState, dispatch
from remote_dispatch.dispatch.metrics import DispatchReport
from remote_dispatch.dispatch.models import (
    DispatchConfigurationError,
    DispatchError,
    ErrorKind,
    Failure,
    RawOutcome,
    Success,
    TargetDescriptor,
    TargetKind,
    Task,
    TaskState,
)
from remote_dispatch.dispatch.units import ThreadExecutionUnit

pytestmark = [
    allure.epic("Remote Dispatch"),
    allure.feature("Dispatcher"),
]


def _tasks(count: int, command: str | None = "wp plugin list --format=json") -> list[Task]:
    return [
        Task.for_target(TargetDescriptor(f"site-{index}", TargetKind.WPCOM), command)
        for index in range(count)
    ]


def _thread_dispatcher(connector, strategy: DispatchStrategy | None = None) -> Dispatcher:
    return Dispatcher(ThreadExecutionUnit(connector, poll_interval_seconds=0.005), strategy)


class ManualUnit:
    """Execution unit that resolves every future at launch time."""

    name = "manual"

    def __init__(
        self,
        outcomes: dict[str, RawOutcome] | None = None,
        fail_start: set[str] | None = None,
        errors: dict[str, Exception] | None = None,
    ) -> None:
        self.outcomes = outcomes or {}
        self.fail_start = fail_start or set()
        self.errors = errors or {}
        self.classifier = classify
        self.started: list[str] = []
        self.commands: dict[str, str] = {}

    def start(self, task, command, timeout_seconds, cancel_token) -> Future[RawOutcome]:
        if task.task_id in self.fail_start:
            raise RuntimeError("can't start new thread")
        self.started.append(task.task_id)
        self.commands[task.task_id] = command
        future: Future[RawOutcome] = Future()
        if task.task_id in self.errors:
            future.set_exception(self.errors[task.task_id])
        else:
            future.set_result(self.outcomes.get(task.task_id, RawOutcome.raw(b'{"ok": true}')))
        return future


def test_happy_path_all_tasks_succeed(fake_connector) -> None:
    report = _thread_dispatcher(fake_connector).run(_tasks(5), 2, 10)

    assert len(report.successes) == 5
    assert report.failures == {}
    assert report.successes["site-0"] == {"code": "success", "data": {"x": 1}}
    assert report.total == 5
    assert not report.cancelled


def test_mixed_outcomes_partition_into_successes_and_failures(fake_connector) -> None:
    fake_connector.set("site-1", delay_seconds=30)
    fake_connector.set("site-2", output=b"")

    report = _thread_dispatcher(fake_connector).run(_tasks(4), 4, 1)

    assert set(report.successes) == {"site-0", "site-3"}
    assert report.failures["site-1"].error_kind == ErrorKind.TIMEOUT
    assert report.failures["site-2"].error_kind == ErrorKind.EMPTY_OUTPUT
    assert report.error_kind_counts() == {"empty_output": 1, "timeout": 1}


def test_concurrency_limit_of_one_serializes_workers(fake_connector) -> None:
    fake_connector.default.delay_seconds = 0.1

    started = time.monotonic()
    report = _thread_dispatcher(fake_connector).run(_tasks(3), 1, 10)
    elapsed = time.monotonic() - started

    assert elapsed >= 0.3
    assert fake_connector.peak == 1
    assert report.max_in_flight == 1
    assert len(report.successes) == 3


def test_zero_tasks_returns_immediately(fake_connector) -> None:
    calls: list[tuple[int, int, int]] = []

    started = time.monotonic()
    report = _thread_dispatcher(fake_connector).run(
        [],
        3,
        10,
        progress_callback=lambda *args: calls.append(args),
    )

    assert time.monotonic() - started < 1
    assert report.successes == {}
    assert report.failures == {}
    assert calls == []
    assert fake_connector.sessions == []


@pytest.mark.parametrize(("limit", "count"), [(1, 4), (2, 7), (3, 3), (5, 12), (8, 2)])
def test_running_workers_never_exceed_limit(fake_connector, limit: int, count: int) -> None:
    for index in range(count):
        fake_connector.set(f"site-{index}", delay_seconds=0.01 * (index % 4 + 1))
    in_flight_at_launch: list[int] = []

    report = _thread_dispatcher(
        fake_connector,
        DispatchStrategy(on_launch=lambda _task, in_flight: in_flight_at_launch.append(in_flight)),
    ).run(_tasks(count), limit, 10)

    assert fake_connector.peak <= limit
    assert report.max_in_flight <= limit
    assert max(in_flight_at_launch) <= limit
    assert len(report.successes) + len(report.failures) == count


def test_every_task_gets_exactly_one_result(fake_connector) -> None:
    fake_connector.set("site-0", connect_error="refused")
    fake_connector.set("site-3", output=b"PHP Fatal error: nope")
    fake_connector.set("site-5", crash=RuntimeError("boom"))
    fake_connector.set("site-6", output=b"not json")

    report = _thread_dispatcher(fake_connector).run(_tasks(8), 3, 10)

    ids = {f"site-{index}" for index in range(8)}
    assert set(report.successes) | set(report.failures) == ids
    assert not set(report.successes) & set(report.failures)
    assert report.failures["site-0"].error_kind == ErrorKind.CONNECTOR_UNAVAILABLE
    assert report.failures["site-3"].error_kind == ErrorKind.COMMAND_FAILED
    assert report.failures["site-5"].error_kind == ErrorKind.UNKNOWN
    assert report.failures["site-6"].error_kind == ErrorKind.MALFORMED_OUTPUT
    assert sorted(report.failed_task_ids()) == ["site-0", "site-3", "site-5", "site-6"]


def test_progress_callback_counts_every_reap() -> None:
    unit = ManualUnit(outcomes={"site-1": RawOutcome.raw(b"")})
    calls: list[tuple[int, int, int]] = []

    Dispatcher(unit).run(_tasks(3), 2, 10, progress_callback=lambda *args: calls.append(args))

    assert calls == [(1, 3, 0), (2, 3, 1), (3, 3, 1)]


def test_launches_follow_submission_order(fake_connector) -> None:
    unit = ManualUnit()
    Dispatcher(unit).run(_tasks(6), 2, 10)
    assert unit.started == [f"site-{index}" for index in range(6)]

    _thread_dispatcher(fake_connector).run(_tasks(4), 1, 10)
    assert fake_connector.connect_order == ["site-0", "site-1", "site-2", "site-3"]


def test_progress_callback_overrides_strategy_progress() -> None:
    strategy_calls: list[tuple[int, int, int]] = []
    run_calls: list[tuple[int, int, int]] = []
    dispatcher = Dispatcher(
        ManualUnit(),
        DispatchStrategy(on_progress=lambda *args: strategy_calls.append(args)),
    )

    dispatcher.run(_tasks(2), 1, 10)
    dispatcher.run(_tasks(2), 1, 10, progress_callback=lambda *args: run_calls.append(args))

    assert strategy_calls == [(1, 2, 0), (2, 2, 0)]
    assert run_calls == [(1, 2, 0), (2, 2, 0)]


def test_on_result_sees_each_task_once() -> None:
    seen: list[str] = []
    Dispatcher(
        ManualUnit(),
        DispatchStrategy(on_result=lambda task, _result: seen.append(task.task_id)),
    ).run(_tasks(4), 3, 10)

    assert sorted(seen) == ["site-0", "site-1", "site-2", "site-3"]


def test_build_command_derives_command_per_task() -> None:
    unit = ManualUnit()
    strategy = DispatchStrategy(build_command=lambda task: f"wp --url={task.target.target_id} cli info")

    Dispatcher(unit, strategy).run(_tasks(2, command=None), 2, 10)

    assert unit.commands == {
        "site-0": "wp --url=site-0 cli info",
        "site-1": "wp --url=site-1 cli info",
    }


@pytest.mark.parametrize(
    ("limit", "timeout", "message"),
    [
        (0, 10, "concurrency_limit must be >= 1"),
        (-3, 10, "concurrency_limit must be >= 1"),
        (2, -1, "per_task_timeout must be >= 0"),
    ],
)
def test_invalid_limits_are_configuration_errors(limit: int, timeout: int, message: str) -> None:
    unit = ManualUnit()

    with pytest.raises(DispatchConfigurationError, match=message):
        Dispatcher(unit).run(_tasks(2), limit, timeout)
    assert unit.started == []


def test_missing_command_aborts_before_any_launch() -> None:
    unit = ManualUnit()
    tasks = _tasks(3)
    tasks[2] = Task.for_target(tasks[2].target, None)

    with pytest.raises(DispatchConfigurationError, match="No command for task 'site-2'"):
        Dispatcher(unit).run(tasks, 2, 10)
    assert unit.started == []


def test_empty_built_command_is_a_configuration_error() -> None:
    unit = ManualUnit()

    with pytest.raises(DispatchConfigurationError):
        Dispatcher(unit, DispatchStrategy(build_command=lambda _task: "  ")).run(_tasks(1), 1, 10)
    assert unit.started == []


def test_duplicate_task_ids_are_rejected() -> None:
    tasks = _tasks(2) + _tasks(1)

    with pytest.raises(DispatchConfigurationError, match="Duplicate task id 'site-0'"):
        Dispatcher(ManualUnit()).run(tasks, 2, 10)


def test_raising_classifier_becomes_unknown_failure() -> None:
    def _broken(task_id: str, outcome: RawOutcome):
        if task_id == "site-1":
            raise KeyError("schema")
        return classify(task_id, outcome)

    report = Dispatcher(ManualUnit(), DispatchStrategy(classify=_broken)).run(_tasks(3), 2, 10)

    assert set(report.successes) == {"site-0", "site-2"}
    failure = report.failures["site-1"]
    assert failure.error_kind == ErrorKind.UNKNOWN
    assert "Result classification failed" in failure.detail


def test_launch_failure_is_recorded_and_run_continues() -> None:
    unit = ManualUnit(fail_start={"site-1"})

    report = Dispatcher(unit).run(_tasks(3), 1, 10)

    assert set(report.successes) == {"site-0", "site-2"}
    assert report.failures["site-1"] == Failure(
        task_id="site-1",
        error_kind=ErrorKind.UNKNOWN,
        detail="Worker launch failed: can't start new thread",
    )


def test_worker_future_exception_is_recorded_and_run_continues() -> None:
    unit = ManualUnit(errors={"site-1": RuntimeError("worker blew up")})

    report = Dispatcher(unit).run(_tasks(3), 3, 10)

    assert set(report.successes) == {"site-0", "site-2"}
    assert report.failures["site-1"] == Failure(
        task_id="site-1",
        error_kind=ErrorKind.UNKNOWN,
        detail="Worker failed: worker blew up",
    )
    assert report.completed == 3
    assert not report.cancelled


def test_recorded_result_is_never_overwritten() -> None:
    task = _tasks(1)[0]
    state = _RunState(report=DispatchReport(total=1), states={"site-0": TaskState.QUEUED})
    state.record(task, Success(task_id="site-0", payload={"ok": True}), 0.5)

    late = Failure(task_id="site-0", error_kind=ErrorKind.TIMEOUT, detail="late")
    with pytest.raises(DispatchError, match="cannot be recorded"):
        state.record(task, late, 1.0)

    assert state.states["site-0"] is TaskState.SUCCEEDED
    assert state.report.successes == {"site-0": {"ok": True}}
    assert state.report.failures == {}
    assert state.report.durations == {"site-0": 0.5}


def test_result_for_unknown_task_is_rejected() -> None:
    state = _RunState(report=DispatchReport(total=0))

    with pytest.raises(DispatchError, match="cannot be recorded"):
        state.record(_tasks(1)[0], Success(task_id="site-0", payload=[]), None)


def test_pre_cancelled_token_launches_nothing(fake_connector) -> None:
    token = CancelToken()
    token.cancel("Cancelled by SIGTERM.")

    report = _thread_dispatcher(fake_connector).run(_tasks(3), 2, 10, cancel_token=token)

    assert report.cancelled
    assert report.successes == {}
    assert set(report.failures) == {"site-0", "site-1", "site-2"}
    for failure in report.failures.values():
        assert failure.error_kind == ErrorKind.UNKNOWN
        assert failure.detail == "Cancelled before launch: Cancelled by SIGTERM."
    assert fake_connector.sessions == []


def test_cancel_mid_run_aborts_in_flight_and_skips_queue(fake_connector) -> None:
    fake_connector.default.delay_seconds = 30
    token = CancelToken()

    def _cancel_after_first_launch(_task: Task, _in_flight: int) -> None:
        token.cancel("Cancelled by SIGINT.")

    started = time.monotonic()
    report = _thread_dispatcher(
        fake_connector,
        DispatchStrategy(on_launch=_cancel_after_first_launch),
    ).run(_tasks(4), 1, 60, cancel_token=token)

    assert time.monotonic() - started < 10
    assert report.cancelled
    assert report.successes == {}
    assert len(report.failures) == 4
    assert report.failures["site-0"].detail == "Cancelled by SIGINT."
    assert report.failures["site-3"].detail.startswith("Cancelled before launch")
    assert fake_connector.connect_order in ([], ["site-0"])
    assert fake_connector.active == 0


def test_dispatch_convenience_uses_thread_workers(fake_connector) -> None:
    report = dispatch(
        _tasks(3),
        connector=fake_connector,
        concurrency_limit=2,
        per_task_timeout=10,
    )

    assert len(report.successes) == 3
    assert len(fake_connector.sessions) == 3
