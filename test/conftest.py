import os
from typing import AsyncGenerator, List, Optional
from unittest.mock import MagicMock

import pytest
import pytest_asyncio

# --- SETUP: point the app at a throwaway database before importing app components ---
os.environ["DATABASE_URL"] = "sqlite+aiosqlite:///:memory:"
os.environ["API_SECRET_TOKEN"] = "test-secret-token"

from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import StaticPool

# --- App Imports ---
from main import app
from app.config import EmailConfig, Settings, get_settings
from app.database.connection import get_db
from app.database.models import (
    AccountCategory,
    Base,
    NotificationTemplate,
    Transaction,
    TransactionCategory,
    User,
    utcnow,
)
from app.services.email_service import EmailMessage, EmailResult, EmailTemplate, MockEmailService
from app.services.notification_service import NotificationDispatcher
from app.services.providers import get_dispatcher, get_email_service, get_scheduler_service
from app.services.scheduler_service import SchedulerService

API_TOKEN = "test-secret-token"

# --- Test DB Setup ---
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
engine = create_async_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False}, poolclass=StaticPool)
TestingSessionLocal = async_sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


# --- Fakes ---

class FakeEmailSender:
    def __init__(self):
        self.sent: List[EmailMessage] = []
        self.succeed = True

    async def send_email(self, message: EmailMessage) -> EmailResult:
        self.sent.append(message)
        if self.succeed:
            return EmailResult(success=True, message_id=f"email_{len(self.sent)}.html")
        return EmailResult(success=False, error="disk full")


class FakePushSender:
    def __init__(self):
        self.sent = []
        self.succeed = True

    async def send(self, device_token: str, alert: str, payload: Optional[dict] = None) -> bool:
        self.sent.append((device_token, alert, payload))
        return self.succeed


# --- CORE FIXTURES ---

@pytest_asyncio.fixture(scope="function")
async def db_session() -> AsyncGenerator[AsyncSession, None]:
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with TestingSessionLocal() as session:
        yield session
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest.fixture
def test_settings(tmp_path) -> Settings:
    return Settings(
        database_url=TEST_DATABASE_URL,
        api_secret_token=API_TOKEN,
        sent_emails_dir=str(tmp_path / "sent_emails"),
    )


@pytest.fixture
def email_sender() -> FakeEmailSender:
    return FakeEmailSender()


@pytest.fixture
def push_sender() -> FakePushSender:
    return FakePushSender()


@pytest.fixture
def dispatcher(email_sender, push_sender) -> NotificationDispatcher:
    return NotificationDispatcher(email_sender, push_sender, EmailTemplate(EmailConfig()))


@pytest.fixture
def mock_scheduler():
    return MagicMock(spec=SchedulerService)


@pytest.fixture
def mock_email_service(test_settings) -> MockEmailService:
    return MockEmailService(test_settings.sent_emails_dir)


@pytest_asyncio.fixture(scope="function")
async def client(
        db_session: AsyncSession,
        test_settings,
        dispatcher,
        mock_scheduler,
        mock_email_service,
) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db() -> AsyncGenerator[AsyncSession, None]:
        yield db_session

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_settings] = lambda: test_settings
    app.dependency_overrides[get_dispatcher] = lambda: dispatcher
    app.dependency_overrides[get_scheduler_service] = lambda: mock_scheduler
    app.dependency_overrides[get_email_service] = lambda: mock_email_service

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test", headers={"x-api-token": API_TOKEN}) as ac:
        yield ac
    app.dependency_overrides.clear()


# --- Data helpers ---

async def create_user(db: AsyncSession, email: str, first_name: Optional[str] = None,
                      device_token: Optional[str] = None) -> User:
    user = User(email=email, first_name=first_name, last_name="Tester", device_token=device_token)
    db.add(user)
    await db.commit()
    return user


async def add_transaction(db: AsyncSession, user: User, amount: float, category: TransactionCategory,
                          merchant_name: Optional[str] = None, description: Optional[str] = None,
                          receipt_url: Optional[str] = None,
                          account_category: AccountCategory = AccountCategory.BUSINESS,
                          date=None) -> Transaction:
    transaction = Transaction(
        user_id=user.id,
        amount=amount,
        category=category,
        merchant_name=merchant_name,
        description=description,
        receipt_url=receipt_url,
        account_category=account_category,
        date=date or utcnow(),
    )
    db.add(transaction)
    await db.commit()
    return transaction


async def add_template(db: AsyncSession, template_id: str, template: str, channels: List[str],
                       name: Optional[str] = None) -> NotificationTemplate:
    record = NotificationTemplate(id=template_id, name=name or template_id, template=template, channels=channels)
    db.add(record)
    await db.commit()
    return record
