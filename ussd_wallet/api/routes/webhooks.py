"""
Settlement and custody webhook endpoints.

Each callback is authenticated by an HMAC-SHA256 signature over the raw
body before anything is parsed. Applying an event is idempotent: a
replayed callback answers 200 with outcome "duplicate" and changes
nothing. Unknown references also answer 200 so providers stop retrying.
"""

import json
from typing import Annotated, Any

from fastapi import APIRouter, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool

from ussd_wallet.api.deps import Container, DbSession, Reconciler
from ussd_wallet.config import Settings
from ussd_wallet.integrations.providers.signatures import verify_signature
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])

CUSTODY_SIGNATURE_HEADER = "X-Custody-Signature"


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

def _check_signature(
    raw_body: bytes,
    signature: str | None,
    secret: str,
    settings: Settings,
    source: str,
) -> None:
    """
    Reject the request unless its signature matches.

    In development, validation is skipped when no secret is configured.

    Raises:
        HTTPException: 401 on a missing or invalid signature
    """
    if not secret:
        if settings.environment == "development":
            logger.warning(
                "webhook_signature_validation_skipped",
                source=source,
                reason="Development mode, no secret",
            )
            return
        logger.error("webhook_secret_missing", source=source)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Webhook secret not configured",
        )

    if not verify_signature(raw_body, signature, secret):
        logger.warning("webhook_invalid_signature", source=source)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook signature",
        )


def _parse_json(raw_body: bytes) -> dict[str, Any]:
    try:
        payload = json.loads(raw_body or b"{}")
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid JSON") from e
    if not isinstance(payload, dict):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Expected a JSON object")
    return payload


# ─────────────────────────────────────────────────────────────────────────────
# Custody
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/custody")
async def custody_webhook(
    request: Request,
    container: Container,
    db: DbSession,
    reconciler: Reconciler,
    x_custody_signature: Annotated[str | None, Header()] = None,
) -> dict:
    """
    Custody confirmation callback.

    Body: {"txHash": "...", "status": "confirmed" | "failed", "confirmations": 3}
    """
    raw_body = await request.body()
    _check_signature(
        raw_body,
        x_custody_signature,
        container.settings.custody_webhook_secret,
        container.settings,
        "custody",
    )

    payload = _parse_json(raw_body)
    tx_hash = payload.get("txHash")
    confirmation_status = payload.get("status")
    if not tx_hash or not confirmation_status:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="txHash and status are required",
        )
    try:
        confirmations = int(payload.get("confirmations") or 0)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid confirmations") from e

    outcome = await run_in_threadpool(
        reconciler.apply_custody_confirmation, str(tx_hash), str(confirmation_status), confirmations
    )
    await run_in_threadpool(db.commit)

    logger.info("custody_webhook_processed", tx_hash=tx_hash, outcome=outcome.value)
    return {"status": "ok", "outcome": outcome.value}


# ─────────────────────────────────────────────────────────────────────────────
# Settlement Providers
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/{provider_name}")
async def provider_webhook(
    provider_name: str,
    request: Request,
    container: Container,
    db: DbSession,
    reconciler: Reconciler,
) -> dict:
    """
    Settlement provider callback (kotanipay, yellowcard).

    The signature header name is provider-specific.
    """
    if provider_name not in container.providers:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Unknown provider")
    provider = container.providers.get(provider_name)

    raw_body = await request.body()
    _check_signature(
        raw_body,
        request.headers.get(provider.signature_header),
        provider.webhook_secret,
        container.settings,
        provider_name,
    )

    payload = _parse_json(raw_body)
    try:
        event = provider.parse_webhook(payload)
    except ValueError as e:
        logger.warning("webhook_unparseable", provider=provider_name, error=str(e))
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e)) from e

    outcome = await run_in_threadpool(reconciler.apply_provider_event, provider_name, event)
    await run_in_threadpool(db.commit)

    logger.info(
        "provider_webhook_processed",
        provider=provider_name,
        event_type=event.event_type,
        provider_tx_id=event.provider_tx_id,
        outcome=outcome.value,
    )
    return {"status": "ok", "outcome": outcome.value}
