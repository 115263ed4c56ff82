"""
USSD gateway callback endpoint.

The gateway posts one form per keypress with the whole conversation so far
in `text`; the response body starts with "CON " (keep the session open) or
"END " (close it). This module is a thin proxy over UssdService.
"""

from typing import Annotated

from fastapi import APIRouter, Form
from fastapi.responses import PlainTextResponse

from ussd_wallet.api.deps import UssdServiceDep
from ussd_wallet.logging_config import get_logger
from ussd_wallet.services.ussd_service import UssdRequest

logger = get_logger(__name__)

router = APIRouter(prefix="/ussd", tags=["ussd"])


@router.post("", response_class=PlainTextResponse)
def ussd_callback(
    service: UssdServiceDep,
    # Gateway callback fields (form-encoded)
    sessionId: Annotated[str, Form()],
    phoneNumber: Annotated[str, Form()],
    serviceCode: Annotated[str, Form()] = "",
    text: Annotated[str, Form()] = "",
) -> str:
    """
    Handle one USSD turn.

    Always answers 200 with a plain-text body; failures surface to the
    caller as an END message, never as an HTTP error.
    """
    return service.handle_turn(
        UssdRequest(
            session_id=sessionId,
            service_code=serviceCode,
            phone_number=phoneNumber,
            text=text,
        )
    )


@router.post("/timeout", response_class=PlainTextResponse)
def ussd_session_ended(
    service: UssdServiceDep,
    sessionId: Annotated[str, Form()],
) -> str:
    """Gateway notification that a session timed out or the caller hung up."""
    removed = service.end_session(sessionId)
    logger.info("ussd_session_ended", session_id=sessionId, removed=removed)
    return "OK"
