"""
Inbound SMS endpoint.

Twilio posts each message the service number receives as a form. The
answer is sent through the REST API by the command service, so the
webhook itself returns an empty TwiML document.
"""

from typing import Annotated

from fastapi import APIRouter, Header, HTTPException, Request, Response, status
from fastapi.concurrency import run_in_threadpool
from twilio.request_validator import RequestValidator
from twilio.twiml.messaging_response import MessagingResponse

from ussd_wallet.api.deps import Container, SmsCommands
from ussd_wallet.errors import InvalidPhoneFormat
from ussd_wallet.logging_config import get_logger

logger = get_logger(__name__)

router = APIRouter(prefix="/sms", tags=["sms"])


def _twiml() -> Response:
    return Response(content=str(MessagingResponse()), media_type="application/xml")


@router.post("/inbound")
async def inbound_sms(
    request: Request,
    container: Container,
    commands: SmsCommands,
    x_twilio_signature: Annotated[str | None, Header()] = None,
) -> Response:
    """
    Handle one inbound SMS command.

    Raises:
        HTTPException: 401 on a missing or invalid Twilio signature,
            400 without a sender
    """
    settings = container.settings
    form = await request.form()
    params = {key: str(value) for key, value in form.items()}

    if settings.twilio_auth_token:
        validator = RequestValidator(settings.twilio_auth_token)
        if not validator.validate(str(request.url), params, x_twilio_signature or ""):
            logger.warning("sms_invalid_signature")
            raise HTTPException(
                status_code=status.HTTP_401_UNAUTHORIZED,
                detail="Invalid Twilio signature",
            )
    elif settings.environment == "development":
        logger.warning(
            "sms_signature_validation_skipped",
            reason="Development mode, no auth token",
        )
    else:
        logger.error("sms_auth_token_missing")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Twilio auth token not configured",
        )

    sender = params.get("From", "")
    if not sender:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing sender")

    try:
        await run_in_threadpool(commands.handle, sender, params.get("Body", ""))
    except InvalidPhoneFormat as e:
        # Nothing to answer; Twilio still gets a 200
        logger.warning("sms_unsupported_sender", code=e.code)
    return _twiml()
