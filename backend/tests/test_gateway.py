import pytest

from design_review.exceptions import (
    CircuitOpenError,
    DesignReviewError,
    FatalConfigError,
    TransientProviderError,
)
from design_review.inference.base import ProviderError, ProviderErrorKind, ProviderRequest
from design_review.pipeline.gateway import CircuitBreakerRegistry, CircuitState, ProviderGateway

from fakes import FakeProvider, fatal_config, transient


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


def _gateway(providers, *, threshold=5, cooldown=300.0, clock=None, max_attempts=3, sleeps=None, backoff_max=8.0):
    clock = clock or FakeClock()
    recorded = sleeps if sleeps is not None else []

    async def fake_sleep(delay):
        recorded.append(delay)

    breakers = CircuitBreakerRegistry(failure_threshold=threshold, cooldown_seconds=cooldown, clock=clock)
    gateway = ProviderGateway(
        {p.name: p for p in providers},
        breakers,
        max_attempts=max_attempts,
        backoff_base_seconds=0.5,
        backoff_max_seconds=backoff_max,
        timeout_seconds=5.0,
        sleep=fake_sleep,
        clock=clock,
    )
    return gateway, breakers


def _request(provider="openai", model="gpt-4o"):
    return ProviderRequest(provider=provider, model=model, prompt="describe", image_urls=["https://x/a.png"])


@pytest.mark.asyncio
async def test_transient_errors_are_retried_with_exponential_backoff():
    provider = FakeProvider("openai", transient(), transient(), '{"ok": true}')
    sleeps = []
    gateway, _ = _gateway([provider], sleeps=sleeps)

    result = await gateway.invoke(_request())

    assert result.ok
    assert result.response == '{"ok": true}'
    assert result.attempts == 3
    assert sleeps == [0.5, 1.0]
    assert len(provider.calls) == 3


@pytest.mark.asyncio
async def test_retries_stop_at_max_attempts():
    provider = FakeProvider("openai", transient("503 from upstream"))
    gateway, _ = _gateway([provider], max_attempts=3)

    result = await gateway.invoke(_request())

    assert not result.ok
    assert result.attempts == 3
    assert result.error_kind == ProviderErrorKind.TRANSIENT.value
    assert "503" in result.error


@pytest.mark.asyncio
async def test_fatal_config_is_never_retried():
    provider = FakeProvider("openai", fatal_config())
    sleeps = []
    gateway, _ = _gateway([provider], sleeps=sleeps)

    result = await gateway.invoke(_request())

    assert not result.ok
    assert result.error_kind == "fatal_config"
    assert result.attempts == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_invalid_request_is_not_retried():
    provider = FakeProvider("openai", ProviderError(ProviderErrorKind.INVALID_REQUEST, "HTTP 400", status_code=400))
    gateway, _ = _gateway([provider])

    result = await gateway.invoke(_request())

    assert result.attempts == 1
    assert result.error_kind == "invalid_request"


@pytest.mark.asyncio
async def test_backoff_delay_is_capped():
    provider = FakeProvider("openai", transient())
    sleeps = []
    gateway, _ = _gateway([provider], max_attempts=6, sleeps=sleeps, backoff_max=3.0)

    result = await gateway.invoke(_request())

    assert result.attempts == 6
    assert sleeps == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_unknown_provider_is_a_config_error():
    gateway, _ = _gateway([])

    result = await gateway.invoke(_request(provider="nope"))

    assert not result.ok
    assert result.error_kind == "fatal_config"
    assert result.attempts == 0


@pytest.mark.asyncio
async def test_circuit_opens_after_consecutive_failures_and_fails_fast():
    provider = FakeProvider("openai", transient())
    gateway, breakers = _gateway([provider], threshold=2, max_attempts=1)

    await gateway.invoke(_request())
    await gateway.invoke(_request())
    blocked = await gateway.invoke(_request())

    assert breakers.get("openai:gpt-4o").state == CircuitState.OPEN
    assert blocked.circuit_open
    assert not blocked.ok
    assert blocked.attempts == 0
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_breakers_are_keyed_by_provider_and_model():
    provider = FakeProvider("openai", transient())
    gateway, breakers = _gateway([provider], threshold=1, max_attempts=1)

    await gateway.invoke(_request(model="gpt-4o"))

    assert breakers.get("openai:gpt-4o").state == CircuitState.OPEN
    assert breakers.get("openai:gpt-4o-mini").state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_half_open_trial_success_closes_circuit():
    clock = FakeClock()
    provider = FakeProvider("openai", transient(), '{"ok": true}')
    gateway, breakers = _gateway([provider], threshold=1, cooldown=300.0, clock=clock, max_attempts=1)

    await gateway.invoke(_request())
    assert (await gateway.invoke(_request())).circuit_open

    clock.now += 301
    trial = await gateway.invoke(_request())

    assert trial.ok
    assert breakers.get("openai:gpt-4o").state == CircuitState.CLOSED
    assert breakers.get("openai:gpt-4o").failures == 0


@pytest.mark.asyncio
async def test_half_open_trial_failure_reopens_circuit():
    clock = FakeClock()
    provider = FakeProvider("openai", transient())
    gateway, breakers = _gateway([provider], threshold=1, cooldown=300.0, clock=clock, max_attempts=1)

    await gateway.invoke(_request())
    clock.now += 301
    await gateway.invoke(_request())

    breaker = breakers.get("openai:gpt-4o")
    assert breaker.state == CircuitState.OPEN
    assert breaker.opened_at == clock.now
    assert (await gateway.invoke(_request())).circuit_open
    assert len(provider.calls) == 2


def test_half_open_admits_a_single_trial_call():
    clock = FakeClock()
    breakers = CircuitBreakerRegistry(failure_threshold=1, cooldown_seconds=10, clock=clock)
    breaker = breakers.get("google:images:annotate")
    breaker.record_failure()
    clock.now += 11

    breaker.before_call()
    assert breaker.state == CircuitState.HALF_OPEN
    with pytest.raises(CircuitOpenError):
        breaker.before_call()


@pytest.mark.asyncio
async def test_invoke_many_settles_every_branch_in_order():
    good = FakeProvider("google", '{"annotations": []}')
    bad = FakeProvider("anthropic", fatal_config("ANTHROPIC_API_KEY is not configured for anthropic"))
    gateway, _ = _gateway([good, bad])

    results = await gateway.invoke_many([_request("anthropic", "claude"), _request("google", "images:annotate")])

    assert [r.provider for r in results] == ["anthropic", "google"]
    assert [r.ok for r in results] == [False, True]
    meta = results[0].to_metadata()
    assert meta["error_kind"] == "fatal_config"
    assert "response" not in meta
    assert "latency_ms" in meta


@pytest.mark.asyncio
async def test_breaker_opening_mid_retry_keeps_the_provider_error():
    provider = FakeProvider("openai", transient("502 bad gateway"))
    gateway, breakers = _gateway([provider], threshold=2, max_attempts=3)

    result = await gateway.invoke(_request())

    assert breakers.get("openai:gpt-4o").state == CircuitState.OPEN
    assert result.attempts == 2
    assert not result.circuit_open
    assert result.error_kind == "transient"
    assert "502 bad gateway" in result.error
    assert len(provider.calls) == 2


@pytest.mark.asyncio
async def test_adapter_bug_is_reported_as_invalid_response_without_retry():
    provider = FakeProvider("openai", KeyError("choices"))
    sleeps = []
    gateway, breakers = _gateway([provider], sleeps=sleeps)

    result = await gateway.invoke(_request())

    assert result.error_kind == "invalid_response"
    assert result.error.startswith("KeyError")
    assert result.attempts == 1
    assert sleeps == []
    assert breakers.get("openai:gpt-4o").failures == 0


@pytest.mark.asyncio
async def test_raise_for_error_maps_failures_to_pipeline_exceptions():
    gateway, _ = _gateway([
        FakeProvider("openai", fatal_config("OPENAI_API_KEY is not configured")),
        FakeProvider("google", transient()),
        FakeProvider("anthropic", ProviderError(ProviderErrorKind.INVALID_REQUEST, "HTTP 400", status_code=400)),
    ], max_attempts=1, threshold=1)

    with pytest.raises(FatalConfigError) as fatal:
        (await gateway.invoke(_request("openai"))).raise_for_error()
    assert fatal.value.code == "FATAL_CONFIG_ERROR"

    with pytest.raises(TransientProviderError) as flaky:
        (await gateway.invoke(_request("google", "images:annotate"))).raise_for_error()
    assert not isinstance(flaky.value, CircuitOpenError)
    assert flaky.value.operation_key == "google:images:annotate"

    with pytest.raises(CircuitOpenError):
        (await gateway.invoke(_request("google", "images:annotate"))).raise_for_error()

    with pytest.raises(DesignReviewError) as rejected:
        (await gateway.invoke(_request("anthropic", "claude"))).raise_for_error()
    assert rejected.value.code == "PROVIDER_REJECTED"

    ok = await _gateway([FakeProvider("openai", "{}")])[0].invoke(_request())
    ok.raise_for_error()
