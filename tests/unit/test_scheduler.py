# tests/unit/test_scheduler.py
import pytest

from merchant import scheduler as sched


@pytest.fixture(autouse=True)
async def reset_scheduler():
    yield
    await sched.stop_scheduler()


async def test_scheduler_registers_sweep_jobs(mocker):
    dispatcher = mocker.AsyncMock()

    await sched.start_scheduler(dispatcher)
    status = await sched.get_scheduler_status()

    assert status["status"] == "running"
    assert {job["id"] for job in status["jobs"]} == {
        "reap_expired_carts",
        "retry_failed_deliveries",
        "requeue_stale_deliveries",
    }
    assert all(job["next_run"] for job in status["jobs"])


async def test_status_before_start():
    assert await sched.get_scheduler_status() == {"status": "not_initialized", "jobs": []}


async def test_reaper_task_runs_reaper(mocker):
    reaper_cls = mocker.patch("merchant.scheduler.ExpirationReaper")
    reaper_cls.return_value.run = mocker.AsyncMock(return_value={"expired_open": 0, "released_abandoned": 0})

    await sched.reap_expired_carts_task()

    reaper_cls.return_value.run.assert_awaited_once()


async def test_tasks_log_and_swallow_errors(mocker):
    dispatcher = mocker.AsyncMock()
    dispatcher.retry_failed.side_effect = RuntimeError("database unavailable")
    dispatcher.requeue_stale_pending.side_effect = RuntimeError("database unavailable")
    log = mocker.patch.object(sched.logger, "exception")

    await sched.retry_failed_deliveries_task(dispatcher)
    await sched.requeue_stale_deliveries_task(dispatcher)

    assert log.call_count == 2
