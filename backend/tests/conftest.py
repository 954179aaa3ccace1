"""
Pytest fixtures for Sokonet backend tests.

Provides test database setup, tenant fixtures (two businesses), a bound QR
token, a fake payment gateway, and the test client.
"""

import pytest

from sokonet import create_app
from sokonet.extensions import db
from sokonet.models import Business, Product, QRToken, User
from sokonet.services.gateway_client import ChargeSession, GatewayStatus, UnknownTracking


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'PESAPAL_CONSUMER_KEY': 'test-key',
    'PESAPAL_CONSUMER_SECRET': 'test-secret',
    'PESAPAL_BASE_URL': 'https://gateway.test',
    'PESAPAL_IPN_URL': 'https://shop.test/api/payments/ipn',
    'PESAPAL_CALLBACK_URL': 'https://shop.test/api/payments/callback',
    'PESAPAL_BACKOFF_SECONDS': 0,
    'FRONTEND_URL': 'https://front.test',
}


class FakeGateway:
    """
    In-memory stand-in for PesapalClient.

    Tracking ids are issued as T-1, T-2, ...; tests decide what the gateway
    reports for each through report().
    """

    def __init__(self):
        self.submitted = []
        self.registered = []
        self.queries = []
        self.statuses = {}
        self.submit_error = None
        self._seq = 0

    def register_ipn(self, url, notification_type="GET"):
        self.registered.append((url, notification_type))
        return f"ipn-{len(self.registered)}"

    def submit_order(self, payload):
        self.submitted.append(payload)
        if self.submit_error is not None:
            raise self.submit_error
        self._seq += 1
        tracking_id = f"T-{self._seq}"
        return ChargeSession(
            tracking_id=tracking_id,
            merchant_reference=payload["id"],
            redirect_url=f"https://pay.test/checkout/{tracking_id}",
        )

    def report(self, tracking_id, description, amount=None, merchant_reference=None):
        self.statuses[tracking_id] = GatewayStatus(
            tracking_id=tracking_id,
            status_description=description,
            payment_method="MpesaKE",
            amount=amount,
            currency="KES",
            confirmation_code=f"CONF-{tracking_id}",
            merchant_reference=merchant_reference,
        )

    def get_transaction_status(self, tracking_id):
        self.queries.append(tracking_id)
        status = self.statuses.get(tracking_id)
        if status is None:
            raise UnknownTracking(f"Gateway has no record of tracking id {tracking_id}")
        if isinstance(status, Exception):
            raise status
        return status


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    """Swap the payment gateway for a FakeGateway for one test."""
    original = app.extensions["payment_gateway"]
    fake = FakeGateway()
    app.extensions["payment_gateway"] = fake
    yield fake
    app.extensions["payment_gateway"] = original


@pytest.fixture(scope='function')
def business(db_session):
    """Business B1 (first tenant)."""
    business = Business(name="B1 - Mama Mboga", email="b1@sokonet.test", phone="+254700000001")
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def other_business(db_session):
    """Business B2 (second tenant)."""
    business = Business(name="B2 - Duka Kubwa", email="b2@sokonet.test", phone="+254700000002")
    db_session.add(business)
    db_session.commit()
    return business


@pytest.fixture(scope='function')
def customer(db_session):
    """End user U1."""
    user = User(name="Amina Wanjiru", email="u1@sokonet.test", phone="+254711000001")
    db_session.add(user)
    db_session.commit()
    return user


@pytest.fixture(scope='function')
def other_customer(db_session):
    user = User(name="Otieno", email="u2@sokonet.test", phone="+254711000002")
    db_session.add(user)
    db_session.commit()
    return user


def make_product(session, business, *, sku="WIDGET-001", name="Widget", price_cents=100, stock=5, **kwargs):
    product = Product(
        business_id=business.id,
        sku=sku,
        name=name,
        price_cents=price_cents,
        stock=stock,
        **kwargs,
    )
    session.add(product)
    session.commit()
    return product


@pytest.fixture(scope='function')
def widget(db_session, business):
    """Widget: price 100, stock 5."""
    return make_product(db_session, business)


@pytest.fixture(scope='function')
def gadget(db_session, business):
    return make_product(db_session, business, sku="GADGET-001", name="Gadget", price_cents=2500, stock=3)


@pytest.fixture(scope='function')
def token(db_session, business, customer):
    """QR-001 bound to the customer at business B1."""
    token = QRToken(business_id=business.id, code="QR000001", user_id=customer.id)
    db_session.add(token)
    db_session.commit()
    return token


@pytest.fixture(scope='function')
def unbound_token(db_session, business):
    token = QRToken(business_id=business.id, code="QR000002")
    db_session.add(token)
    db_session.commit()
    return token


def principal_headers(kind, principal_id, business_id=None):
    headers = {
        "X-Principal-Kind": kind,
        "X-Principal-Id": str(principal_id),
    }
    if business_id is not None:
        headers["X-Principal-Business-Id"] = str(business_id)
    return headers
