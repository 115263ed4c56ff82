"""
Service container.

Holds the process-wide clients (database engine, Redis, SMS, custody,
settlement providers, currency converter). Built once at startup by the
FastAPI lifespan and closed at shutdown; request-scoped services are
assembled from it per request.
"""

from dataclasses import dataclass

import redis
from sqlalchemy import Engine
from sqlalchemy.orm import Session, sessionmaker

from ussd_wallet.auth import AuthorizationGate
from ussd_wallet.config import Settings
from ussd_wallet.database import build_engine, build_session_factory
from ussd_wallet.flows.ussd_menu import UssdMenu
from ussd_wallet.integrations.custody import CustodyClient
from ussd_wallet.integrations.providers import (
    KotaniPayClient,
    ProviderRegistry,
    YellowCardClient,
)
from ussd_wallet.integrations.sms import Notifier, TwilioSmsClient
from ussd_wallet.logging_config import get_logger
from ussd_wallet.services.fx import CurrencyConverter
from ussd_wallet.services.orchestrator import MoneyMovementOrchestrator
from ussd_wallet.services.reconciler import WebhookReconciler
from ussd_wallet.services.sms_commands import SmsCommandService
from ussd_wallet.services.ussd_service import UssdService
from ussd_wallet.storage import SessionStore
from ussd_wallet.storage.redis_client import build_redis

logger = get_logger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide dependencies."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker
    redis: redis.Redis
    sms: TwilioSmsClient
    custody: CustodyClient
    providers: ProviderRegistry
    converter: CurrencyConverter

    @property
    def notifier(self) -> Notifier:
        return Notifier(self.sms, app_name=self.settings.app_name)

    @property
    def session_store(self) -> SessionStore:
        return SessionStore(self.redis, ttl_seconds=self.settings.session_ttl_seconds)

    @property
    def gate(self) -> AuthorizationGate:
        return AuthorizationGate.from_settings(self.redis, self.notifier, self.settings)

    # ─────────────────────────────────────────────────────────────────────────
    # Request-scoped services
    # ─────────────────────────────────────────────────────────────────────────

    def orchestrator(self, db: Session) -> MoneyMovementOrchestrator:
        return MoneyMovementOrchestrator(
            db,
            self.custody,
            self.providers,
            self.converter,
            self.notifier,
            self.settings,
        )

    def reconciler(self, db: Session) -> WebhookReconciler:
        return WebhookReconciler(
            db,
            self.orchestrator(db),
            self.notifier,
            confirmations_required=self.settings.custody_confirmations_required,
        )

    def ussd_service(self, db: Session) -> UssdService:
        gate = self.gate
        menu = UssdMenu(
            db,
            gate,
            self.orchestrator(db),
            self.custody,
            self.providers,
            self.converter,
            self.settings,
        )
        return UssdService(self.session_store, gate, menu, self.settings)

    def sms_commands(self, db: Session) -> SmsCommandService:
        return SmsCommandService(
            db,
            self.gate,
            self.custody,
            self.converter,
            self.notifier,
            self.settings,
        )

    def close(self) -> None:
        """Release connections held by the clients."""
        self.custody.close()
        self.providers.close()
        self.redis.close()
        self.engine.dispose()
        logger.info("service_container_closed")


def build_providers(settings: Settings) -> ProviderRegistry:
    """Settlement providers with their own HTTP clients and timeouts."""
    kotani = KotaniPayClient(
        base_url=settings.kotani_base_url,
        api_key=settings.kotani_api_key,
        integrator_id=settings.kotani_integrator_id,
        webhook_secret=settings.kotani_webhook_secret,
        timeout=settings.provider_timeout_seconds,
    )
    yellowcard = YellowCardClient(
        base_url=settings.yellowcard_base_url,
        api_key=settings.yellowcard_api_key,
        secret_key=settings.yellowcard_secret_key,
        webhook_secret=settings.yellowcard_webhook_secret,
        timeout=settings.provider_timeout_seconds,
    )
    return ProviderRegistry([kotani, yellowcard])


def build_container(settings: Settings) -> ServiceContainer:
    """
    Construct every process-wide client from settings.

    Args:
        settings: Application settings

    Returns:
        ServiceContainer; call close() at shutdown
    """
    engine = build_engine(settings.database_url)
    container = ServiceContainer(
        settings=settings,
        engine=engine,
        session_factory=build_session_factory(engine),
        redis=build_redis(settings.redis_url),
        sms=TwilioSmsClient(
            account_sid=settings.twilio_account_sid,
            auth_token=settings.twilio_auth_token,
            from_number=settings.twilio_sms_from,
        ),
        custody=CustodyClient(
            settings.custody_base_url,
            api_key=settings.custody_api_key,
            timeout=settings.custody_timeout_seconds,
            token_symbol=settings.token_symbol,
        ),
        providers=build_providers(settings),
        converter=CurrencyConverter.from_rates(settings.fx_rates, token=settings.token_symbol),
    )
    logger.info(
        "service_container_built",
        environment=settings.environment,
        providers=container.providers.names(),
        sms_configured=container.sms.is_configured,
    )
    return container
