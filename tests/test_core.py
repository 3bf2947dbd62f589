import asyncio

import aiohttp

import pytest
import pytest_asyncio

from async_message_service.core import AsyncMessageCore, normalise_number
from async_message_service.errors import ConfigurationError, ValidationError
from async_message_service.gateway import GatewaySession

from conftest import settle


def make_core(tmp_path, driver_factory, metrics, **kwargs):
    options = dict(
        db_path=str(tmp_path / "core.db"),
        session_factory=driver_factory,
        metrics=metrics,
        process_interval_ms=2000,
        stall_check_interval=3600,
        keepalive_interval=3600,
        cleanup_interval=0,
        auto_connect=False,
        auth_failure_delay=0.01,
        disconnect_delay=0.01,
        retry_delay=0.01,
    )
    options.update(kwargs)
    return AsyncMessageCore(**options)


@pytest_asyncio.fixture
async def core(tmp_path, driver_factory, metrics):
    svc = make_core(tmp_path, driver_factory, metrics)
    await svc.init()
    yield svc
    await svc.stop()


async def wait_for_status(svc, job_id, status, timeout=2.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        job = await svc.persistence.get_job(job_id)
        if job is not None and job["status"] == status:
            return job
        if loop.time() > deadline:
            raise AssertionError(f"job {job_id} never reached {status}: {job}")
        await asyncio.sleep(0.01)


def test_normalise_number():
    assert normalise_number("081234567890") == ("6281234567890", "6281234567890@c.us")
    assert normalise_number("+62 812-3456-7890") == ("6281234567890", "6281234567890@c.us")
    assert normalise_number("8123456789012")[0] == "628123456789012"
    assert normalise_number("0412345678", country_code="61")[0] == "61412345678"
    with pytest.raises(ValidationError):
        normalise_number("12345")
    with pytest.raises(ValidationError):
        normalise_number("1234567890123456")
    with pytest.raises(ValidationError):
        normalise_number(None)


def test_gateway_url_is_required_without_a_session_factory(tmp_path):
    with pytest.raises(ConfigurationError):
        AsyncMessageCore(db_path=str(tmp_path / "x.db"))


def test_gateway_session_is_the_default_driver(tmp_path):
    svc = AsyncMessageCore(
        db_path=str(tmp_path / "x.db"),
        gateway_url="http://gateway.test/",
        session_name="shop",
        credentials_path=str(tmp_path / "creds.json"),
    )
    driver = svc.channel._session_factory()
    assert isinstance(driver, GatewaySession)
    assert driver.base_url == "http://gateway.test"
    assert driver.session_name == "shop"
    assert driver.credentials_path == str(tmp_path / "creds.json")


@pytest.mark.asyncio
async def test_send_message_validation(core):
    result = await core.handle_command("sendMessage", {"number": "081234567890"})
    assert result["ok"] is False
    assert result["field"] == "message"

    result = await core.handle_command("sendMessage", {"number": "123", "message": "hi"})
    assert result == {
        "ok": False,
        "error": "Invalid phone number length. Must be 10-15 digits.",
        "code": "validation_error",
        "field": "number",
    }

    result = await core.handle_command(
        "sendMessage", {"number": "081234567890", "message": "hi", "priority": "urgent"}
    )
    assert result["field"] == "priority"


@pytest.mark.asyncio
async def test_send_message_queues_job(core):
    result = await core.handle_command(
        "sendMessage", {"number": "081234567890", "message": "hi", "priority": "high", "message_id": "order-1"}
    )
    assert result["ok"] is True
    assert result["message_id"] == "order-1"
    assert result["status"] == "waiting"
    assert result["priority"] == "HIGH"
    assert result["to"] == "6281234567890"
    assert result["chat_id"] == "6281234567890@c.us"

    delayed = await core.handle_command("sendMessage", {"number": "081234567891", "message": "later", "delay": 60000})
    assert delayed["status"] == "delayed"

    duplicate = await core.handle_command("sendMessage", {"number": "081234567890", "message": "hi", "message_id": "order-1"})
    assert duplicate["ok"] is False
    assert duplicate["code"] == "duplicate_message"

    job = await core.handle_command("getJob", {"message_id": "order-1"})
    assert job["job"]["id"] == result["job_id"]
    assert job["job"]["original_number"] == "081234567890"
    assert (await core.handle_command("getJob", {"job_id": "nope"})) == {"ok": False, "error": "job not found"}

    stats = await core.handle_command("getStats")
    assert stats["stats"]["waiting"] == 1
    assert stats["stats"]["delayed"] == 1
    assert core.metrics.pending_value == 2


@pytest.mark.asyncio
async def test_send_messages_reports_rejections(tmp_path, driver_factory, metrics):
    svc = make_core(tmp_path, driver_factory, metrics, max_enqueue_batch=3)
    await svc.init()
    result = await svc.handle_command(
        "sendMessages",
        {
            "messages": [
                {"number": "081234567890", "message": "one"},
                {"number": "42", "message": "two", "message_id": "bad-1"},
                "garbage",
            ]
        },
    )
    assert result["ok"] is True
    assert len(result["queued"]) == 1
    assert result["rejected"] == [
        {"index": 1, "message_id": "bad-1", "reason": "Invalid phone number length. Must be 10-15 digits."},
        {"index": 2, "message_id": None, "reason": "invalid payload"},
    ]

    all_bad = await svc.handle_command("sendMessages", {"messages": [{"number": "1", "message": "x"}]})
    assert all_bad["ok"] is False
    assert all_bad["rejected"][0]["index"] == 0

    too_many = await svc.handle_command("sendMessages", {"messages": [{}] * 4})
    assert too_many == {"ok": False, "error": "Cannot enqueue more than 3 messages at once"}
    await svc.stop()


@pytest.mark.asyncio
async def test_get_jobs_rejects_unknown_status(core):
    await core.handle_command("sendMessage", {"number": "081234567890", "message": "hi"})
    jobs = await core.handle_command("getJobs", {"status": "waiting"})
    assert len(jobs["jobs"]) == 1
    bad = await core.handle_command("getJobs", {"status": "lost"})
    assert bad["ok"] is False
    assert bad["code"] == "validation_error"


@pytest.mark.asyncio
async def test_get_jobs_rejects_non_numeric_range(core):
    bad = await core.handle_command("getJobs", {"status": "waiting", "start": "abc"})
    assert bad["ok"] is False
    assert bad["code"] == "validation_error"
    assert bad["field"] == "start"

    bad = await core.handle_command("getJobs", {"end": None})
    assert bad["ok"] is False
    assert bad["field"] == "end"

    page = await core.handle_command("getJobs", {"start": "0", "end": "5"})
    assert page == {"ok": True, "jobs": []}


@pytest.mark.asyncio
async def test_pause_retry_resume_and_remove(core):
    first = await core.handle_command("sendMessage", {"number": "081234567890", "message": "a"})
    second = await core.handle_command("sendMessage", {"number": "081234567891", "message": "b"})

    paused = await core.handle_command("pauseQueue")
    assert paused == {"ok": True, "paused": 2}
    assert core.processor.is_processing is False

    retried = await core.handle_command("retryJob", {"job_id": first["job_id"]})
    assert retried == {"ok": True, "job_id": first["job_id"]}
    assert (await core.persistence.get_job(first["job_id"]))["status"] == "waiting"
    again = await core.handle_command("retryJob", {"job_id": first["job_id"]})
    assert again["ok"] is False

    resumed = await core.handle_command("resumeQueue")
    assert resumed == {"ok": True, "resumed": 1}
    assert core.processor.is_processing is True

    removed = await core.handle_command("removeJob", {"job_id": second["job_id"]})
    assert removed == {"ok": True, "job_id": second["job_id"]}
    missing = await core.handle_command("removeJob", {"job_id": second["job_id"]})
    assert missing == {"ok": False, "error": "job not found"}
    no_id = await core.handle_command("removeJob", {})
    assert no_id["field"] == "job_id"

    cleared = await core.handle_command("clearQueue")
    assert cleared == {"ok": True, "removed": 1}
    assert (await core.handle_command("cleanQueue", {"retention_hours": 1})) == {"ok": True, "removed": 0}


@pytest.mark.asyncio
async def test_update_config(core):
    result = await core.handle_command("updateConfig", {"max_concurrent": 5})
    assert result["applied"] == {"max_concurrent": 5}
    assert result["config"] == {"max_concurrent": 5, "process_interval_ms": 2000, "stalled_timeout_ms": 300000}

    bad = await core.handle_command("updateConfig", {"max_concurrent": 5, "process_interval_ms": 10})
    assert bad["ok"] is False
    assert bad["code"] == "configuration_error"
    assert core.processor.config.process_interval_ms == 2000

    unknown = await core.handle_command("updateConfig", {"concurrency": 2})
    assert unknown["ok"] is False
    assert (await core.handle_command("bogus")) == {"ok": False, "error": "unknown command"}


@pytest.mark.asyncio
async def test_queue_status_snapshot(core):
    status = await core.handle_command("getQueueStatus")
    assert status["ok"] is True
    assert status["processor"]["is_processing"] is False
    assert status["channel"]["state"] == "idle"
    assert status["recovery"] == {"recovering": False, "attempts": 0, "last_delay": None}


@pytest.mark.asyncio
async def test_connect_and_reset_session(core, driver_factory):
    connected = await core.handle_command("connect")
    assert connected["channel"]["state"] == "ready"
    assert connected["channel"]["has_session"] is True
    first = driver_factory.current

    reset = await core.handle_command("resetSession")
    assert reset["ok"] is True
    assert first.destroyed
    assert first.credentials_cleared
    await settle(lambda: len(driver_factory.created) == 2 and core.channel.is_ready())


@pytest.mark.asyncio
async def test_end_to_end_delivery_and_results(tmp_path, driver_factory, metrics):
    svc = make_core(tmp_path, driver_factory, metrics, auto_connect=True)
    await svc.start()
    try:
        await settle(lambda: svc.channel.is_ready())
        queued = await svc.handle_command("sendMessage", {"number": "081234567890", "message": "hello"})
        job = await wait_for_status(svc, queued["job_id"], "completed")
        assert job["result"]["to"] == "6281234567890"
        assert driver_factory.current.sent == [{"chat_id": "6281234567890@c.us", "text": "hello"}]
        assert metrics.sent == 1

        results = svc.results()
        event = await asyncio.wait_for(results.__anext__(), timeout=1)
        assert event["event"] == "message_success"
        assert event["message_id"] == queued["message_id"]
    finally:
        await svc.stop()
    assert svc.channel.status()["state"] == "idle"


@pytest.mark.asyncio
async def test_auth_failure_recovers_and_resumes_processing(tmp_path, driver_factory, metrics):
    svc = make_core(tmp_path, driver_factory, metrics, auto_connect=True)
    await svc.start()
    try:
        await settle(lambda: svc.channel.is_ready())
        first = driver_factory.current

        await first.sink.on_auth_failure("session invalidated")
        await settle(lambda: not svc.recovery.recovering and svc.channel.is_ready())

        assert first.destroyed
        assert first.credentials_cleared
        assert len(driver_factory.created) == 2
        assert metrics.recoveries == ["auth_failure"]
        assert svc.processor.is_processing is True

        queued = await svc.handle_command("sendMessage", {"number": "081234567890", "message": "after"})
        await wait_for_status(svc, queued["job_id"], "completed")
        assert driver_factory.current.sent[-1]["text"] == "after"
        assert first.sent == []
    finally:
        await svc.stop()


@pytest.mark.asyncio
async def test_slow_report_webhook_does_not_hold_a_dispatch_slot(tmp_path, driver_factory, metrics):
    release = asyncio.Event()
    started = []
    received = []

    async def slow_report(payload):
        started.append(payload["event"])
        await release.wait()
        received.append(payload)

    svc = make_core(
        tmp_path,
        driver_factory,
        metrics,
        auto_connect=True,
        max_concurrent=1,
        report_delivery_callable=slow_report,
    )
    await svc.start()
    try:
        await settle(lambda: svc.channel.is_ready())
        queued = await svc.handle_command("sendMessage", {"number": "081234567890", "message": "hello"})
        await wait_for_status(svc, queued["job_id"], "completed")
        await settle(lambda: started == ["message_success"])

        assert svc.processor.in_flight_count == 0
        assert received == []

        release.set()
        await settle(lambda: len(received) == 1)
        assert received[0]["message_id"] == queued["message_id"]
    finally:
        release.set()
        await svc.stop()


@pytest.mark.asyncio
async def test_failed_report_is_retried(tmp_path, driver_factory, metrics):
    calls = []
    received = []

    async def flaky_report(payload):
        calls.append(payload["event"])
        if len(calls) == 1:
            raise aiohttp.ClientConnectionError("upstream down")
        received.append(payload)

    svc = make_core(
        tmp_path,
        driver_factory,
        metrics,
        auto_connect=True,
        report_delivery_callable=flaky_report,
        report_interval=0.02,
    )
    await svc.start()
    try:
        await settle(lambda: svc.channel.is_ready())
        queued = await svc.handle_command("sendMessage", {"number": "081234567890", "message": "hello"})
        await settle(lambda: len(received) == 1)
        assert calls == ["message_success", "message_success"]
        assert received[0]["message_id"] == queued["message_id"]
        assert not svc._pending_reports
    finally:
        await svc.stop()


@pytest.mark.asyncio
async def test_report_backlog_drops_oldest_and_stop_flushes(tmp_path, driver_factory, metrics):
    received = []

    async def collect(payload):
        received.append(payload["message_id"])

    svc = make_core(tmp_path, driver_factory, metrics, report_delivery_callable=collect, max_report_backlog=2)
    await svc.init()
    for message_id in ("m1", "m2", "m3"):
        await svc._on_event("message_failed", {"message_id": message_id, "error": "boom"})
    await svc._on_event("config_updated", {"max_concurrent": 2})

    assert [report["message_id"] for report in svc._pending_reports] == ["m2", "m3"]
    assert received == []

    await svc.stop()
    assert received == ["m2", "m3"]
