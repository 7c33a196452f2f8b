import json
import os
import tempfile
from typing import Dict, List, Optional, Sequence, Tuple

_TMP_DIR = tempfile.mkdtemp(prefix="sequencehub-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP_DIR}/test.db"
os.environ["STORAGE_BACKEND"] = "local"
os.environ["LOCAL_STORAGE_DIR"] = os.path.join(_TMP_DIR, "storage")
os.environ["UPLOAD_STAGING_DIR"] = os.path.join(_TMP_DIR, "staging")
os.environ["STRIPE_SECRET_KEY"] = "sk_test_dummy"
os.environ["STRIPE_WEBHOOK_SECRET"] = "whsec_dummy"

import hashlib  # noqa: E402

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402

from app.core.exceptions import ValidationFailed  # noqa: E402
from app.db.session import Base, SessionLocal, engine  # noqa: E402
from app.main import app  # noqa: E402
from app.models.audit import AuditLog  # noqa: E402
from app.models.order import Entitlement, Order  # noqa: E402
from app.models.product import Price, Product, ProductFile, ProductVersion  # noqa: E402
from app.models.user import CreatorAccount, User  # noqa: E402
from app.security.passwords import hash_password  # noqa: E402
from app.services.payments import AccountStatus, CheckoutResult, RefundResult, get_payment_gateway  # noqa: E402
from app.services.storage import get_storage  # noqa: E402

PASSWORD = "Secretpass1"
VALID_SIGNATURE = "t=1,v1=valid"


def reset_db():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)


class FakeGateway:
    """In-memory stand-in for the Stripe adapter."""

    def __init__(self):
        self.checkout_calls: List[dict] = []
        self.refunds: List[str] = []
        self.refund_amount_cents = 0
        self.account_status = AccountStatus(details_submitted=True, charges_enabled=True, payouts_enabled=True)

    def create_connected_account(self, user_id: int, email: str) -> str:
        return f"acct_test_{user_id}"

    def create_onboarding_link(self, account_id: str) -> str:
        return f"https://connect.example.test/onboarding/{account_id}"

    def create_dashboard_link(self, account_id: str) -> str:
        return f"https://connect.example.test/dashboard/{account_id}"

    def get_account_status(self, account_id: str) -> AccountStatus:
        return self.account_status

    def create_checkout_session(self, **kwargs) -> CheckoutResult:
        self.checkout_calls.append(kwargs)
        session_id = f"cs_test_{len(self.checkout_calls)}"
        return CheckoutResult(session_id=session_id, url=f"https://checkout.example.test/{session_id}")

    def create_refund(self, payment_intent_id: str) -> RefundResult:
        self.refunds.append(payment_intent_id)
        return RefundResult(refund_id=f"re_test_{len(self.refunds)}", amount_cents=self.refund_amount_cents)

    def construct_event(self, payload: bytes, signature: Optional[str]) -> dict:
        if not signature:
            raise ValidationFailed("No signature provided")
        if signature != VALID_SIGNATURE:
            raise ValidationFailed("Invalid signature")
        return json.loads(payload)


class Marketplace:
    """Direct database seeding for scenarios that need purchases in place."""

    def create_user(self, email: str, role: str = "buyer") -> int:
        with SessionLocal() as db:
            user = User(email=email, hashed_password=hash_password(PASSWORD), role=role, name=email.split("@")[0])
            db.add(user)
            db.commit()
            return user.id

    def complete_creator(self, user_id: int, account_id: Optional[str] = None) -> None:
        with SessionLocal() as db:
            db.add(
                CreatorAccount(
                    user_id=user_id,
                    stripe_account_id=account_id or f"acct_seed_{user_id}",
                    stripe_account_status="active",
                    onboarding_status="COMPLETED",
                    platform_fee_percent=10.0,
                )
            )
            db.commit()

    def create_product(
        self,
        creator_id: int,
        title: str = "Winter Wonderland",
        files: Sequence[Tuple[str, bytes, str]] = (("wonderland.fseq", b"PSEQ-rendered-data", "RENDERED"),),
        price_cents: int = 1999,
        status: str = "PUBLISHED",
        category: str = "CHRISTMAS",
    ) -> Dict[str, object]:
        storage = get_storage()
        with SessionLocal() as db:
            product = Product(
                slug=title.lower().replace(" ", "-"),
                creator_id=creator_id,
                title=title,
                description=f"{title} sequence for a mega tree and arches.",
                category=category,
                status=status,
            )
            product.prices.append(Price(amount_cents=price_cents, currency="USD", is_active=True))
            version = ProductVersion(version_number=1, version_name="1.0.0", is_latest=True)
            product.versions.append(version)
            db.add(product)
            db.flush()

            storage_keys = []
            for name, data, file_type in files:
                file_hash = hashlib.sha256(data + title.encode()).hexdigest()
                key = f"{file_type.lower()}/2024/01/{file_hash[:12]}_{name}"
                storage.upload(key, data)
                db.add(
                    ProductFile(
                        version_id=version.id,
                        uploaded_by=creator_id,
                        file_name=name,
                        original_name=name,
                        file_type=file_type,
                        file_size=len(data),
                        file_hash=file_hash,
                        storage_key=key,
                        mime_type="application/octet-stream",
                    )
                )
                storage_keys.append(key)
            db.commit()
            return {"product_id": product.id, "version_id": version.id, "slug": product.slug, "storage_keys": storage_keys}

    def add_empty_version(self, product_id: int) -> int:
        with SessionLocal() as db:
            version = ProductVersion(product_id=product_id, version_number=2, version_name="2.0.0", is_latest=False)
            db.add(version)
            db.commit()
            return version.id

    def grant_entitlement(
        self,
        user_id: int,
        product_id: int,
        version_id: int,
        order_status: str = "COMPLETED",
        amount_cents: int = 1999,
        payment_intent_id: Optional[str] = None,
    ) -> Dict[str, int]:
        with SessionLocal() as db:
            order = Order(
                order_number=f"ORD-TEST-{user_id}-{product_id}-{version_id}",
                user_id=user_id,
                total_amount_cents=amount_cents,
                currency="USD",
                status=order_status,
                payment_intent_id=payment_intent_id,
            )
            db.add(order)
            db.flush()
            entitlement = Entitlement(
                user_id=user_id,
                order_id=order.id,
                product_id=product_id,
                version_id=version_id,
                license_type="PERSONAL",
                is_active=True,
            )
            db.add(entitlement)
            db.commit()
            return {"order_id": order.id, "entitlement_id": entitlement.id}

    def update_entitlement(self, entitlement_id: int, **values) -> None:
        with SessionLocal() as db:
            db.query(Entitlement).filter(Entitlement.id == entitlement_id).update(values)
            db.commit()

    def entitlement(self, entitlement_id: int) -> Entitlement:
        with SessionLocal() as db:
            row = db.get(Entitlement, entitlement_id)
            db.expunge(row)
            return row

    def product(self, product_id: int) -> Product:
        with SessionLocal() as db:
            row = db.get(Product, product_id)
            db.expunge(row)
            return row

    def audit_actions(self, action: Optional[str] = None) -> List[AuditLog]:
        with SessionLocal() as db:
            query = db.query(AuditLog)
            if action:
                query = query.filter(AuditLog.action == action)
            rows = query.order_by(AuditLog.id).all()
            for row in rows:
                db.expunge(row)
            return rows


def bearer(token: str) -> dict:
    return {"Authorization": f"Bearer {token}"}


def login(client: TestClient, email: str, password: str = PASSWORD) -> str:
    r = client.post("/api/auth/login", json={"email": email, "password": password})
    assert r.status_code == 200, r.text
    return r.json()["access_token"]


@pytest.fixture
def gateway():
    fake = FakeGateway()
    app.dependency_overrides[get_payment_gateway] = lambda: fake
    yield fake
    app.dependency_overrides.pop(get_payment_gateway, None)


@pytest.fixture
def client(gateway):
    reset_db()
    return TestClient(app)


@pytest.fixture
def market(client):
    return Marketplace()


@pytest.fixture
def auth():
    """Log a seeded user in and return request headers."""

    def _headers(client: TestClient, email: str) -> dict:
        return bearer(login(client, email))

    return _headers