import pytest

from application.services.retry import RetryOptions, is_retryable, log_retry_failure, with_retry
from domain.common.exceptions import AuthorizationException, DomainValidationException
from infrastructure.adapters.retry_failure_sink import JsonlRetryFailureSink
from infrastructure.external.payments.exceptions import PaymentRecoverableError

from fakes import MemoryFailureSink


class _Recorder:
    def __init__(self):
        self.waits = []

    async def __call__(self, seconds):
        self.waits.append(seconds)


@pytest.mark.asyncio
async def test_fails_twice_then_succeeds():
    calls = {"n": 0}
    retries = []

    async def flaky():
        calls["n"] += 1
        if calls["n"] < 3:
            raise ConnectionError("db down")
        return "ok"

    sleep = _Recorder()
    result = await with_retry(
        flaky,
        RetryOptions(max_retries=3, on_retry=lambda attempt, err: retries.append((attempt, str(err)))),
        sleep=sleep,
    )
    assert result.success
    assert result.data == "ok"
    assert result.attempts == 3
    assert [a for a, _ in retries] == [1, 2]
    assert len(sleep.waits) == 2


@pytest.mark.asyncio
async def test_backoff_is_exponential_and_capped():
    async def always_fails():
        raise TimeoutError("slow")

    sleep = _Recorder()
    result = await with_retry(
        always_fails,
        RetryOptions(max_retries=4, initial_delay_ms=1000, max_delay_ms=3000, backoff_multiplier=2.0),
        sleep=sleep,
    )
    assert not result.success
    assert result.attempts == 5
    assert isinstance(result.error, TimeoutError)
    assert sleep.waits == [1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_business_rejections_are_not_retried():
    calls = {"n": 0}

    async def rejected():
        calls["n"] += 1
        raise DomainValidationException("bad amount", field="amount")

    result = await with_retry(rejected, RetryOptions(max_retries=3), sleep=_Recorder())
    assert not result.success
    assert result.attempts == 1
    assert calls["n"] == 1
    assert isinstance(result.error, DomainValidationException)


def test_retry_classification():
    assert is_retryable(ConnectionError())
    assert is_retryable(PaymentRecoverableError("busy", provider="stripe"))
    assert not is_retryable(AuthorizationException())
    assert not is_retryable(DomainValidationException("x"))


@pytest.mark.asyncio
async def test_log_retry_failure_writes_structured_record():
    sink = MemoryFailureSink()
    try:
        raise ConnectionError("db down")
    except ConnectionError as exc:
        record = await log_retry_failure(sink, "process_item_return", {"transaction_id": 7}, exc)
    assert sink.records == [record]
    assert record.operation == "process_item_return"
    assert record.error_name == "ConnectionError"
    assert record.error_message == "db down"
    assert "ConnectionError" in record.error_stack
    assert record.retryable is True
    assert record.timestamp.endswith("+00:00")


@pytest.mark.asyncio
async def test_jsonl_sink_appends_lines(tmp_path):
    sink = JsonlRetryFailureSink(tmp_path / "logs" / "failures.jsonl")
    await log_retry_failure(sink, "op_a", {"id": 1}, RuntimeError("first"))
    await log_retry_failure(sink, "op_b", {"id": 2}, RuntimeError("second"))
    records = await sink.read_all()
    assert [r.operation for r in records] == ["op_a", "op_b"]
    assert records[1].context == {"id": 2}
    lines = (tmp_path / "logs" / "failures.jsonl").read_text(encoding="utf-8").splitlines()
    assert len(lines) == 2
