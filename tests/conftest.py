from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from sqlalchemy import create_engine, event, update
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.base import Base
from db.models import UserCredits, VideoTaskStatus
from pipeline.store import TaskStore
from providers import ProviderConfig
from tests.fakes import FrozenClock


@pytest.fixture
def credit_calls() -> list[tuple[int, int]]:
    return []


@pytest.fixture
def engine(credit_calls):
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )

    def use_credits(task_id: int, amount: int) -> None:
        if amount < 0:
            raise ValueError("negative amount")
        credit_calls.append((task_id, amount))

    @event.listens_for(engine, "connect")
    def _register_functions(dbapi_connection, _record) -> None:
        dbapi_connection.create_function("use_credits", 2, use_credits)

    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session(engine):
    factory = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    with factory() as session:
        yield session


@pytest.fixture
def clock() -> FrozenClock:
    return FrozenClock(datetime(2026, 10, 18, 12, 0, tzinfo=UTC))


@pytest.fixture
def store(session, clock) -> TaskStore:
    return TaskStore(session, clock=clock, timeout_recheck_delay_s=0)


@pytest.fixture
def provider_config() -> ProviderConfig:
    return ProviderConfig(
        official_base_url="https://kling.test",
        official_access_key_id="ak",
        official_access_key_secret="sk",
        aggregator_base_url="https://302.test",
        aggregator_api_key="key-302",
        official_page_size=2,
        official_max_pages=3,
    )


@pytest.fixture
def grant_credits(session):
    def _grant(user_id: str, amount: int) -> None:
        session.add(UserCredits(user_id=user_id, credits_balance=amount))
        session.commit()

    return _grant


@pytest.fixture
def make_task(store, session, clock):
    """Create a definition plus status row in a given state and age."""

    def _make(
        *,
        status: str = "pending",
        age: timedelta = timedelta(0),
        provider: str | None = "official",
        external_task_id: str | None = "ext-1",
        task_type: str = "t2v",
        user_id: str = "user-1",
        model: str = "kling",
        result_url: str | None = None,
        thumbnail_url: str | None = None,
        r2_status: str | None = "pending",
        additional_params: dict | None = None,
    ):
        params = additional_params if additional_params is not None else {"duration": "5s"}
        if provider is not None and additional_params is None:
            params["provider"] = provider
        definition = store.create_definition(
            user_id=user_id,
            task_type=task_type,
            model=model,
            high_quality=False,
            credits=1,
            prompt="a cat",
            aspect_ratio="1:1",
            cfg=0.5,
            additional_params=params,
        )
        row = store.create_status(task_id=definition.id, external_task_id=external_task_id or "")
        session.execute(
            update(VideoTaskStatus)
            .where(VideoTaskStatus.id == row.id)
            .values(
                external_task_id=external_task_id,
                status=status,
                result_url=result_url,
                thumbnail_url=thumbnail_url,
                r2_status=r2_status,
                updated_at=clock() - age,
            )
        )
        session.commit()
        session.refresh(row)
        return definition, row

    return _make
