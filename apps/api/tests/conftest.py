from datetime import datetime
from typing import Dict, List, Tuple, Union

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
import models  # noqa: F401
from routers import rate_limit
from services.providers import ProviderBundle
from services.providers.generation import BaseGenerationProvider
from services.providers.payments import BasePaymentProvider
from services.providers.storage import BaseObjectStorage
from services.providers.types import (
    CancelResult,
    GenerationJobSpec,
    ProviderSubscription,
    ProviderTaskStatus,
    ProviderTerminalFailure,
    StoredObject,
    SubmittedJob,
)


class FakeGenerationProvider(BaseGenerationProvider):
    """In-memory provider; tests set ``statuses[external_id]`` to drive outcomes."""

    def __init__(self):
        self.submitted: List[GenerationJobSpec] = []
        self.statuses: Dict[str, Union[ProviderTaskStatus, Exception]] = {}
        self.submit_error: Exception | None = None
        self.poll_calls: List[str] = []

    async def submit(self, job_spec: GenerationJobSpec) -> SubmittedJob:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(job_spec)
        external_id = f"ext-{len(self.submitted)}"
        self.statuses[external_id] = ProviderTaskStatus(state="processing")
        return SubmittedJob(external_task_id=external_id)

    async def poll_status(self, external_task_id: str) -> ProviderTaskStatus:
        self.poll_calls.append(external_task_id)
        status = self.statuses[external_task_id]
        if isinstance(status, Exception):
            raise status
        return status

    async def download(self, url: str) -> Tuple[bytes, str]:
        return b"generated-asset", "image/png"


class FakeObjectStorage(BaseObjectStorage):
    def __init__(self):
        self.objects: Dict[str, bytes] = {}

    async def store(self, data: bytes, content_type: str) -> StoredObject:
        key = f"assets/{len(self.objects) + 1}.png"
        self.objects[key] = data
        return StoredObject(key=key, url=f"https://cdn.test/{key}")


class FakePaymentProvider(BasePaymentProvider):
    def __init__(self):
        self.subscriptions: Dict[str, ProviderSubscription] = {}
        self.cancel_calls: List[str] = []

    def add(self, subscription_id: str, status: str = "active", created_at: datetime | None = None):
        self.subscriptions[subscription_id] = ProviderSubscription(
            subscription_id=subscription_id,
            status=status,
            created_at=created_at,
        )

    async def get_subscription(self, subscription_id: str) -> ProviderSubscription:
        if subscription_id not in self.subscriptions:
            raise ProviderTerminalFailure(f"subscription {subscription_id} not found")
        return self.subscriptions[subscription_id]

    async def cancel_subscription(self, subscription_id: str) -> CancelResult:
        self.cancel_calls.append(subscription_id)
        current = self.subscriptions.get(subscription_id)
        already = current is not None and current.status == "canceled"
        if current is not None:
            self.subscriptions[subscription_id] = ProviderSubscription(
                subscription_id=subscription_id,
                status="canceled",
                created_at=current.created_at,
            )
        return CancelResult(subscription_id=subscription_id, canceled=True, already_canceled=already)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'credits.db'}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def providers():
    return ProviderBundle(
        generation=FakeGenerationProvider(),
        payments=FakePaymentProvider(),
        storage=FakeObjectStorage(),
    )
