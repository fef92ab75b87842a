import os

os.environ.setdefault("DATABASE_URL", "sqlite://")

from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, Mock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

import app.models  # noqa: F401
from app.database import Base
from app.services.completion_service import CompletionInvoker
from app.services.context_assembler import ContextAssembler
from app.services.dispatch_service import DispatchScheduler, RecheckTimers
from app.services.llm.base import LLMResponse
from app.services.payload import InboundEvent, Text, build_inbound_event
from app.services.window_policy import WindowPolicy

T0 = datetime(2024, 5, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> datetime:
        self.now = self.now + timedelta(seconds=seconds)
        return self.now


@pytest.fixture
def db_session():
    """Mock database session."""
    return Mock()


@pytest.fixture
def mock_env(monkeypatch):
    """Set test environment variables."""
    monkeypatch.setenv("OPENAI_API_KEY", "test-key")
    monkeypatch.setenv("DATABASE_URL", "sqlite://")


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite so separate sessions (and threads) share one database."""
    engine = create_engine(f"sqlite:///{tmp_path / 'relay.db'}", connect_args={"check_same_thread": False})
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def oracle():
    provider = Mock()
    provider.complete = AsyncMock(return_value=LLMResponse(content="Respuesta del asistente", model="gpt-4o"))
    return provider


@pytest.fixture
def delivery():
    router = Mock()
    router.send = AsyncMock(return_value=None)
    router.send_best_effort = AsyncMock(return_value=True)
    return router


@pytest.fixture
def media():
    resolver = Mock()
    resolver.transcribe = AsyncMock(return_value="hola desde un audio")
    resolver.describe = AsyncMock(return_value=("Analiza la imagen.", "data:image/jpeg;base64,AAAA"))
    return resolver


@pytest.fixture
def timers():
    return Mock(spec=RecheckTimers)


@pytest.fixture
def make_scheduler(session_factory, oracle, delivery, media, timers, clock):
    def _make(quiet_seconds: float = 3, min_delay_seconds: float = 0, **kwargs) -> DispatchScheduler:
        return DispatchScheduler(
            session_factory,
            ContextAssembler(media),
            CompletionInvoker(oracle, delivery),
            delivery,
            WindowPolicy.from_seconds(quiet_seconds, min_delay_seconds),
            timers=timers,
            clock=clock,
            **kwargs,
        )

    return _make


def text_event(
    conversation_id: str = "telegram:100",
    sequence_id: int = 1,
    text: str = "hola",
    at: datetime = T0,
) -> InboundEvent:
    return build_inbound_event(conversation_id, sequence_id, Text(text=text), at)
