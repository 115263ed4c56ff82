"""
Fixtures for HTTP-level tests.

The app runs on the same fakes as the unit suite, injected through a
pre-built service container so the lifespan never opens real clients.
"""

import pytest
from fastapi.testclient import TestClient

from ussd_wallet.api.main import create_app
from ussd_wallet.container import ServiceContainer


@pytest.fixture
def container(settings, engine, session_factory, fake_redis, sms, custody, providers, converter):
    return ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        redis=fake_redis,
        sms=sms,
        custody=custody,
        providers=providers,
        converter=converter,
    )


@pytest.fixture
def client(settings, container):
    app = create_app(app_settings=settings, container=container)
    with TestClient(app) as test_client:
        yield test_client


@pytest.fixture
def login(client, sms):
    """Log a phone in through the OTP endpoints; returns auth headers."""

    def _login(phone: str) -> dict[str, str]:
        issued = client.post("/api/v1/auth/otp", json={"phone_number": phone})
        assert issued.status_code == 200
        verified = client.post(
            "/api/v1/auth/verify",
            json={"phone_number": phone, "code": sms.last_code(issued.json()["phone_number"])},
        )
        assert verified.status_code == 200
        return {"Authorization": f"Bearer {verified.json()['token']}"}

    return _login
