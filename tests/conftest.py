"""Pytest fixtures for testing"""

import json
from datetime import date, datetime, time, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Generator, List, Optional, Tuple

import httpx
import pytest
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session

from settlement_gateway.api.main import create_app
from settlement_gateway.config import settings
from settlement_gateway.domain.exceptions import TerminalDataError
from settlement_gateway.domain.models import Layer
from settlement_gateway.infrastructure.cache import ResponseCache
from settlement_gateway.infrastructure.clients.platform import PlatformTransport
from settlement_gateway.infrastructure.clients.terminals import TerminalClient
from settlement_gateway.infrastructure.credentials import CredentialStore
from settlement_gateway.infrastructure.database import models
from settlement_gateway.infrastructure.database.models import Base
from settlement_gateway.infrastructure.database.session import get_db
from settlement_gateway.infrastructure.gateway import Gateway
from settlement_gateway.infrastructure.signing import RequestSigner
from settlement_gateway.services.scheduler import PayoutScheduler, RunGuard
from mocks.platform_server import main as mock_platform


# Test database
TEST_DATABASE_URL = "sqlite:///./test.db"
engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

PLATFORM_ENDPOINTS = {
    Layer.SANDBOX: "http://platform.test/sandbox/jsonrpc",
    Layer.LIVE: "http://platform.test/live/jsonrpc",
}


class FakeClock:
    """Controllable clock for cache expiry and admission windows"""

    def __init__(self, start: datetime = datetime(2026, 1, 15, 12, 0, tzinfo=timezone.utc)):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float) -> None:
        self.current += timedelta(seconds=seconds)


class PlatformStub:
    """httpx.MockTransport handler speaking the platform's JSON-RPC dialect"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.results: Dict[str, Any] = {}
        self.errors: Dict[str, Tuple[int, str]] = {}
        self.http_errors: Dict[str, Tuple[int, str]] = {}
        self.timeouts = set()
        self.rejected_accounts = set()
        self.transfers: Dict[str, Dict[str, Any]] = {}

    @property
    def bodies(self) -> List[Dict[str, Any]]:
        return [json.loads(r.content) for r in self.requests]

    def count(self, method: Optional[str] = None) -> int:
        return sum(1 for body in self.bodies if method is None or body["method"] == method)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        body = json.loads(request.content)
        method, params = body["method"], body["params"]

        if method in self.timeouts:
            raise httpx.ReadTimeout("timed out", request=request)
        if method in self.http_errors:
            status, text = self.http_errors[method]
            return httpx.Response(status, text=text)
        if method in self.errors:
            return self._error(body, *self.errors[method])

        if method == "transfer_between_virtual_accounts_v2":
            if params["to_virtual_account"] in self.rejected_accounts:
                return self._error(body, 4422, "Recipient virtual account is blocked")
            transfer = {
                "transfer_id": f"tr-{len(self.transfers) + 1}",
                "ext_key": params["ext_key"],
                "amount": params["amount"],
                "status": "SUCCESS",
            }
            self.transfers[params["ext_key"]] = transfer
            return self._result(body, transfer)

        if method == "get_virtual_accounts_transfer":
            transfer = self.transfers.get(params["ext_key"])
            if transfer is None:
                return self._error(body, 4404, "Transfer not found")
            return self._result(body, transfer)

        return self._result(body, self.results.get(method, {"method": method, "params": params}))

    @staticmethod
    def _result(body: Dict[str, Any], result: Any) -> httpx.Response:
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"], "result": result})

    @staticmethod
    def _error(body: Dict[str, Any], code: int, message: str) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": body["id"], "error": {"code": code, "message": message}},
        )


class StubRevenue:
    """Revenue source with fixed per-machine sales"""

    def __init__(self):
        self.sales: Dict[str, Decimal] = {}
        self.failing = set()
        self.calls: List[Tuple[str, date, date]] = []

    async def get_machine_revenue(self, machine_id: str, date_from: date, date_to: date) -> Decimal:
        self.calls.append((machine_id, date_from, date_to))
        if machine_id in self.failing:
            raise TerminalDataError(f"Terminal API error: 500 for {machine_id}")
        return self.sales.get(machine_id, Decimal("0.00"))


class Seeder:
    """Inserts beneficiaries and assignments with controlled dates"""

    def __init__(self, db: Session):
        self.db = db

    def beneficiary(
        self,
        beneficiary_id: str,
        virtual_account: Optional[str] = None,
        onboarded_at: Optional[date] = None,
    ) -> models.Beneficiary:
        row = models.Beneficiary(
            beneficiary_id=beneficiary_id,
            name=beneficiary_id.title(),
            virtual_account=virtual_account or f"va-{beneficiary_id}",
            onboarded_at=onboarded_at,
        )
        self.db.add(row)
        self.db.commit()
        return row

    def assignment(
        self,
        machine_id: str,
        beneficiary_id: str,
        commission_percent: str,
        assigned_on: date,
        unassigned_on: Optional[date] = None,
    ) -> models.MachineAssignment:
        row = models.MachineAssignment(
            machine_id=machine_id,
            beneficiary_id=beneficiary_id,
            commission_percent=Decimal(commission_percent),
            assigned_at=datetime.combine(assigned_on, time(9, 0), tzinfo=timezone.utc),
            unassigned_at=(
                datetime.combine(unassigned_on, time(9, 0), tzinfo=timezone.utc) if unassigned_on else None
            ),
        )
        self.db.add(row)
        self.db.commit()
        return row

    def payout(
        self,
        beneficiary_id: str,
        period_start: date,
        period_end: date,
        status: str,
        amount: str = "100.00",
    ) -> models.Payout:
        row = models.Payout(
            beneficiary_id=beneficiary_id,
            period_start=period_start,
            period_end=period_end,
            total_sales=Decimal(amount),
            commission_amount=Decimal("0.00"),
            payout_amount=Decimal(amount),
            status=status,
            idempotency_key=f"seed-{beneficiary_id}-{period_end.isoformat()}",
            external_reference="tr-seed" if status == "completed" else None,
            error_message="seeded failure" if status == "failed" else None,
            created_at=datetime.now(timezone.utc),
        )
        self.db.add(row)
        self.db.commit()
        return row


@pytest.fixture
def db() -> Generator[Session, None, None]:
    """Create test database and session"""
    Base.metadata.create_all(bind=engine)
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()
        Base.metadata.drop_all(bind=engine)


@pytest.fixture
def seed(db: Session) -> Seeder:
    return Seeder(db)


@pytest.fixture(scope="session")
def rsa_private_pem() -> str:
    """2048-bit RSA key generated once per test session"""
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    ).decode("utf-8")


@pytest.fixture
def credentials(rsa_private_pem: str) -> CredentialStore:
    """In-memory credential store with a sandbox key"""
    store = CredentialStore()
    store.save(Layer.SANDBOX, rsa_private_pem, "test-signer", key_fingerprint="thumb-sandbox")
    return store


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(clock: FakeClock) -> ResponseCache:
    return ResponseCache(clock=clock)


@pytest.fixture
def platform() -> PlatformStub:
    return PlatformStub()


@pytest.fixture
def gateway(credentials: CredentialStore, platform: PlatformStub, cache: ResponseCache) -> Gateway:
    transport = PlatformTransport(endpoints=PLATFORM_ENDPOINTS, transport=httpx.MockTransport(platform))
    return Gateway(RequestSigner(credentials), transport, cache)


@pytest.fixture
def revenue() -> StubRevenue:
    return StubRevenue()


@pytest.fixture
def scheduler(db: Session, gateway: Gateway, revenue: StubRevenue) -> PayoutScheduler:
    return PayoutScheduler(
        db,
        gateway,
        revenue,
        RunGuard(),
        layer=Layer.SANDBOX,
        source_virtual_account="va-source",
        max_concurrency=1,
    )


@pytest.fixture
def client(db: Session, credentials: CredentialStore, monkeypatch: pytest.MonkeyPatch) -> TestClient:
    """FastAPI test client wired to the in-repo mock platform server"""
    mock_platform.reset()
    monkeypatch.setattr(settings, "payout_source_virtual_account", "va-source")
    monkeypatch.setattr(settings, "payout_layer", "sandbox")

    mock_transport = httpx.ASGITransport(app=mock_platform.app)
    app = create_app(
        credentials=credentials,
        platform_transport=PlatformTransport(
            endpoints={Layer.SANDBOX: "http://mock-platform/jsonrpc", Layer.LIVE: "http://mock-platform/jsonrpc"},
            transport=mock_transport,
        ),
        revenue_source=TerminalClient(
            base_url="http://mock-platform",
            token=mock_platform.TERMINAL_TOKEN,
            transport=mock_transport,
        ),
    )

    def override_get_db():
        try:
            yield db
        finally:
            pass

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)
