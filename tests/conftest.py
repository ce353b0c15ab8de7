import pytest
from fastapi.testclient import TestClient

from coursepay.access import EntitlementGrant
from coursepay.auth import get_current_user_id
from coursepay.config import Settings
from coursepay.database import init_db, make_engine, make_session_factory
from coursepay.gateways import MercadoPagoGateway, StripeGateway
from coursepay.main import create_app
from coursepay.models import Product
from coursepay.reconciliation import ReconciliationEngine
from tests.factories import BUYER_ID, MP_WEBHOOK_SECRET, SELLER_ID, STRIPE_WEBHOOK_SECRET


@pytest.fixture
def settings(tmp_path):
    return Settings(
        database_url=f"sqlite:///{tmp_path / 'test.db'}",
        jwt_secret="test-jwt-secret",
        stripe_secret_key="sk_test_123",
        stripe_webhook_secret=STRIPE_WEBHOOK_SECRET,
        mercado_pago_access_token="TEST-token",
        mercado_pago_public_key="TEST-public-key",
        mercado_pago_webhook_secret=MP_WEBHOOK_SECRET,
        enabled_gateways=("stripe", "mercadopago"),
        default_gateway="stripe",
        public_base_url="http://testserver",
        log_format="text",
    )


@pytest.fixture
def mp_sdk(mocker):
    return mocker.Mock()


@pytest.fixture
def gateways(settings, mp_sdk):
    return {
        "stripe": StripeGateway(settings.stripe_secret_key, settings.stripe_webhook_secret),
        "mercadopago": MercadoPagoGateway(
            access_token=settings.mercado_pago_access_token,
            public_key=settings.mercado_pago_public_key,
            webhook_secret=settings.mercado_pago_webhook_secret,
            callback_base_url=settings.public_base_url,
            sdk=mp_sdk,
        ),
    }


@pytest.fixture
def db_engine(settings):
    engine = make_engine(settings.database_url)
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(db_engine):
    return make_session_factory(db_engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def course(db):
    product = Product(seller_id=SELLER_ID, title="Intro to Python", is_active=True)
    db.add(product)
    db.commit()
    return product


@pytest.fixture
def grant(mocker):
    return mocker.Mock(wraps=EntitlementGrant())


@pytest.fixture
def engine_factory(session_factory, gateways, settings, grant):
    sessions = []

    def make():
        session = session_factory()
        sessions.append(session)
        return ReconciliationEngine(session, gateways, settings, grant)

    yield make
    for session in sessions:
        session.close()


@pytest.fixture
def recon(engine_factory):
    return engine_factory()


@pytest.fixture
def app(settings, gateways, grant, db_engine):
    return create_app(settings, gateways, grant)


@pytest.fixture
def client(app):
    # Bypass auth verification for tests
    app.dependency_overrides[get_current_user_id] = lambda: BUYER_ID

    with TestClient(app) as c:
        yield c

    app.dependency_overrides.clear()
