"""
Pytest fixtures for Shopfront backend tests.

Provides the test app and database, shoppers and products, bearer-token
helpers, and mock PayPal / NETS gateways backed by httpx.MockTransport.
"""

import json

import httpx
import pytest

from shopfront import create_app
from shopfront.extensions import db
from shopfront.models import Product, User
from shopfront.services import cart_service, session_service
from shopfront.services.auth_service import hash_password
from shopfront.services.nets_client import NetsClient
from shopfront.services.paypal_client import PayPalClient
from shopfront.services.promotion_service import init_registry

TEST_PASSWORD = "Password123!"

VALID_CARD = {
    "name": "Test Shopper",
    "number": "4111 1111 1111 1111",
    "expiry": "12/99",
    "cvv": "123",
}


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'PROMOTION_KEYWORDS': ['milk'],
        'PROMOTION_PERCENT': 10,
        'QR_STREAM_POLL_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='session')
def password_hash():
    """bcrypt is slow on purpose; hash the shared test password once."""
    return hash_password(TEST_PASSWORD)


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function', autouse=True)
def db_session(app):
    """Fresh database, promotion registry and gateway clients for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        init_registry(app)

        yield db.session

        # Cleanup after test
        db.session.rollback()
        app.extensions.pop("paypal_client", None)
        app.extensions.pop("nets_client", None)


def make_user(db_session, password_hash, username, **fields):
    user = User(
        username=username,
        email=f"{username}@example.com",
        password_hash=password_hash,
        role=fields.pop("role", "user"),
        **fields,
    )
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture
def shopper(db_session, password_hash):
    """Gold member with a funded wallet, 100 points and a delivery address."""
    return make_user(
        db_session,
        password_hash,
        "shopper",
        plan="gold",
        wallet_balance_cents=1000,
        loyalty_points=100,
        address="1 Orchard Road",
    )


@pytest.fixture
def other_shopper(db_session, password_hash):
    return make_user(db_session, password_hash, "other", address="2 Bencoolen Street")


@pytest.fixture
def admin_user(db_session, password_hash):
    return make_user(db_session, password_hash, "admin", role="admin")


@pytest.fixture
def milk(db_session):
    product = Product(name="Fresh Milk", price_cents=300, stock_quantity=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def bread(db_session):
    product = Product(name="Bread", price_cents=200, stock_quantity=10)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture
def filled_cart(shopper, milk, bread):
    """2 x Fresh Milk @ 3.00 + 1 x Bread @ 2.00."""
    cart_service.add_item(shopper.id, milk.id, 2)
    cart_service.add_item(shopper.id, bread.id, 1)
    return cart_service.get_cart(shopper.id)


def auth_headers(user):
    _, token = session_service.create_session(user.id)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def shopper_headers(shopper):
    return auth_headers(shopper)


@pytest.fixture
def admin_headers(admin_user):
    return auth_headers(admin_user)


# =============================================================================
# MOCK GATEWAYS
# =============================================================================


class FakePayPal:
    """Scripted PayPal REST v2 sandbox."""

    def __init__(self):
        self.calls = []
        self.capture_status = "COMPLETED"
        self.fail_with = None
        self.created = 0
        # order id -> capture status, for lookups and repeated captures
        self.captured = {}
        # Capture succeeds at the gateway but the caller sees a timeout
        self.drop_capture_response = False
        self.lookup_fails = False
        # PayPal-Request-Id -> refund id
        self.refunds = {}
        self.refund_count = 0
        self.refund_fails = False

    def paths(self):
        return [path for _, path in self.calls]

    def _order_body(self, order_id, status):
        return {
            "id": order_id,
            "status": status,
            "purchase_units": [{
                "payments": {
                    "captures": [{
                        "id": f"CAPTURE-{order_id}",
                        "status": status,
                        "amount": {"currency_code": "SGD", "value": "6.66"},
                    }],
                },
            }],
        }

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if self.fail_with:
            return httpx.Response(self.fail_with, json={"name": "INTERNAL_SERVER_ERROR"})

        if path == "/v1/oauth2/token":
            return httpx.Response(200, json={"access_token": "sandbox-token", "token_type": "Bearer"})

        if path == "/v2/checkout/orders":
            self.created += 1
            return httpx.Response(201, json={"id": f"PAYPAL-ORDER-{self.created}", "status": "CREATED"})

        if request.method == "GET" and path.startswith("/v2/checkout/orders/"):
            if self.lookup_fails:
                return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})
            order_id = path.split("/")[-1]
            if order_id not in self.captured:
                return httpx.Response(200, json={"id": order_id, "status": "APPROVED"})
            return httpx.Response(200, json=self._order_body(order_id, self.captured[order_id]))

        if path.endswith("/capture"):
            order_id = path.split("/")[-2]
            if order_id in self.captured:
                return httpx.Response(422, json={
                    "name": "UNPROCESSABLE_ENTITY",
                    "details": [{"issue": "ORDER_ALREADY_CAPTURED"}],
                })
            self.captured[order_id] = self.capture_status
            if self.drop_capture_response:
                self.drop_capture_response = False
                raise httpx.ReadTimeout("Read timed out", request=request)
            return httpx.Response(201, json=self._order_body(order_id, self.capture_status))

        if path.endswith("/refund"):
            if self.refund_fails:
                return httpx.Response(503, json={"name": "SERVICE_UNAVAILABLE"})
            request_id = request.headers.get("PayPal-Request-Id")
            if request_id not in self.refunds:
                self.refund_count += 1
                refund_id = f"PAYPAL-REFUND-{self.refund_count}"
                if not request_id:
                    return httpx.Response(201, json={"id": refund_id, "status": "COMPLETED"})
                self.refunds[request_id] = refund_id
            return httpx.Response(201, json={"id": self.refunds[request_id], "status": "COMPLETED"})

        return httpx.Response(404, json={"name": "RESOURCE_NOT_FOUND"})


class FakeNets:
    """Scripted NETS QR sandbox. Queries report pending until told otherwise."""

    def __init__(self):
        self.calls = []
        self.issued = 0
        self.query_data = {"response_code": "00", "txn_status": 0}
        self.fail_with = None

    def paths(self):
        return [path for path, _ in self.calls]

    def confirm(self):
        self.query_data = {"response_code": "00", "txn_status": 1}

    def decline(self):
        self.query_data = {"response_code": "09", "txn_status": 2}

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        body = json.loads(request.content or b"{}")
        self.calls.append((path, body))

        if self.fail_with:
            return httpx.Response(self.fail_with, text="gateway down")

        if path == NetsClient.REQUEST_PATH:
            self.issued += 1
            return httpx.Response(200, json={"result": {"data": {
                "response_code": "00",
                "txn_status": 1,
                "qr_code": "iVBORw0KGgoAAAANSUhEUg==",
                "txn_retrieval_ref": f"NETSQR-{self.issued}",
                "network_status": 0,
            }}})

        if path == NetsClient.QUERY_PATH:
            data = dict(self.query_data, txn_retrieval_ref=body.get("txn_retrieval_ref"))
            return httpx.Response(200, json={"result": {"data": data}})

        return httpx.Response(404, text="not found")


@pytest.fixture
def paypal(app):
    fake = FakePayPal()
    app.extensions["paypal_client"] = PayPalClient(
        "https://paypal.test",
        "client-id",
        "client-secret",
        transport=httpx.MockTransport(fake.handler),
    )
    yield fake
    app.extensions.pop("paypal_client", None)


@pytest.fixture
def nets(app):
    fake = FakeNets()
    app.extensions["nets_client"] = NetsClient(
        "https://nets.test",
        "api-key",
        "project-id",
        "sandbox_nets|m|test",
        transport=httpx.MockTransport(fake.handler),
    )
    yield fake
    app.extensions.pop("nets_client", None)
