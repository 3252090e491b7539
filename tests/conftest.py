import pytest
from fastapi.testclient import TestClient

from config import Settings, get_settings
from database import get_store
from memory import MemoryStore

from factories import catalog_docs


@pytest.fixture
def store():
    return MemoryStore(initial=catalog_docs())


@pytest.fixture
def settings():
    return Settings(
        STORE_BACKEND="memory",
        VNPAY_TMN_CODE="SPECTRA1",
        VNPAY_HASH_SECRET="TESTSECRETKEY",
        VNPAY_PAYMENT_URL="https://sandbox.vnpayment.vn/paymentv2/vpcpay.html",
        VNPAY_RETURN_URL="http://testserver/api/payments/vnpay-return",
    )


@pytest.fixture
def client(store, settings):
    from main import app

    async def override_store():
        return store

    app.dependency_overrides[get_store] = override_store
    app.dependency_overrides[get_settings] = lambda: settings
    yield TestClient(app)
    app.dependency_overrides.clear()
