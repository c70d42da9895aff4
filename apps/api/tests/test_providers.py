import httpx
import pytest

from services.providers.generation import HttpGenerationProvider
from services.providers.payments import HttpPaymentProvider, normalize_subscription_status
from services.providers.storage import LocalObjectStorage
from services.providers.types import GenerationJobSpec, ProviderTerminalFailure, ProviderTransientError


def _generation_provider(handler) -> HttpGenerationProvider:
    provider = HttpGenerationProvider(base_url="https://gen.test/api/v1", api_key="key", timeout_seconds=5)
    provider._client = httpx.AsyncClient(base_url="https://gen.test/api/v1", transport=httpx.MockTransport(handler))
    return provider


def _payment_provider(handler) -> HttpPaymentProvider:
    provider = HttpPaymentProvider(base_url="https://pay.test", api_key="key", timeout_seconds=5)
    provider._client = httpx.AsyncClient(base_url="https://pay.test", transport=httpx.MockTransport(handler))
    return provider


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("active", "active"),
        ("trialing", "trialing"),
        ("cancelled", "canceled"),
        ("canceled", "canceled"),
        ("past_due", "past_due"),
        ("unpaid", "past_due"),
        ("ended", "expired"),
        (None, "active"),
    ],
)
def test_subscription_status_spellings(raw, expected):
    assert normalize_subscription_status(raw) == expected


@pytest.mark.asyncio
async def test_generation_submit_and_poll_parse_provider_payloads():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.endswith("/jobs/createTask"):
            return httpx.Response(200, json={"code": 200, "data": {"taskId": "task-123"}})
        return httpx.Response(
            200,
            json={"code": 200, "data": {"state": "success", "resultUrls": ["https://files.test/a.png"]}},
        )

    provider = _generation_provider(handler)
    submitted = await provider.submit(GenerationJobSpec(kind="image", model="nano-banana", prompt="a fox"))
    status = await provider.poll_status(submitted.external_task_id)
    await provider.aclose()

    assert submitted.external_task_id == "task-123"
    assert status.state == "success"
    assert status.result_url == "https://files.test/a.png"
    assert status.is_terminal is True


@pytest.mark.asyncio
async def test_generation_errors_are_classified():
    responses = iter([httpx.Response(503, text="busy"), httpx.Response(400, json={"msg": "bad prompt"})])

    provider = _generation_provider(lambda request: next(responses))
    with pytest.raises(ProviderTransientError):
        await provider.poll_status("task-1")
    with pytest.raises(ProviderTerminalFailure, match="bad prompt"):
        await provider.submit(GenerationJobSpec(kind="image", model="nano-banana", prompt="x"))
    await provider.aclose()


@pytest.mark.asyncio
async def test_payment_cancel_treats_already_canceled_as_success():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, text="Subscription already canceled")

    provider = _payment_provider(handler)
    result = await provider.cancel_subscription("sub_1")
    await provider.aclose()

    assert result.already_canceled is True
    assert result.canceled is False


@pytest.mark.asyncio
async def test_local_storage_writes_under_dated_key(tmp_path):
    storage = LocalObjectStorage(root_dir=str(tmp_path), public_base_url="https://assets.test/")

    stored = await storage.store(b"png-bytes", "image/png")

    assert stored.key.endswith(".png")
    assert stored.url == f"https://assets.test/{stored.key}"
    assert (tmp_path / stored.key).read_bytes() == b"png-bytes"
