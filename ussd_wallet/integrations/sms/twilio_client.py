"""
Twilio SMS client.

Used for OTP delivery and transaction notifications. Send failures are
returned as a result dict instead of raised; callers decide whether a
failed delivery matters (it does for OTPs, it does not for receipts).
"""

from typing import Any

from twilio.base.exceptions import TwilioRestException
from twilio.rest import Client

from ussd_wallet.logging_config import get_logger, mask_phone

logger = get_logger(__name__)


class TwilioSmsClient:
    """
    Client for Twilio Programmable SMS.

    Example:
        client = TwilioSmsClient(account_sid, auth_token, from_number="+15005550006")
        result = client.send_message(to="254712345678", body="Your code is 123456")
        if result["success"]:
            print(result["message_id"])
    """

    def __init__(
        self,
        account_sid: str,
        auth_token: str,
        from_number: str,
        client: Client | None = None,
    ):
        """
        Initialize Twilio client.

        Args:
            account_sid: Twilio Account SID
            auth_token: Twilio Auth Token
            from_number: Default sender (number or alphanumeric sender id)
            client: Pre-built Twilio REST client
        """
        self.from_number = from_number

        if client is not None:
            self._client = client
        elif not account_sid or not auth_token:
            logger.warning(
                "twilio_credentials_missing",
                message="Twilio credentials not configured. SMS will not be sent."
            )
            self._client = None
        else:
            self._client = Client(account_sid, auth_token)
            logger.info("twilio_client_initialized", from_number=from_number)

    @property
    def is_configured(self) -> bool:
        """Check if Twilio client is properly configured."""
        return self._client is not None

    @staticmethod
    def _format_number(phone: str) -> str:
        """Format a phone number as E.164 (+XXXXXXXXXXX)."""
        cleaned = "".join(c for c in phone if c.isdigit())
        return f"+{cleaned}"

    def send_message(
        self,
        to: str,
        body: str,
        from_: str | None = None,
    ) -> dict[str, Any]:
        """
        Send an SMS via Twilio.

        Args:
            to: Recipient phone number
            body: Message text content
            from_: Sender override

        Returns:
            Dict with success flag and message_id (Twilio SID) or error
        """
        if not self.is_configured:
            logger.error("twilio_send_failed", reason="Client not configured", to=mask_phone(to))
            return {
                "success": False,
                "error": "Twilio client not configured",
                "message_id": None,
            }

        to_formatted = self._format_number(to)
        sender = from_ or self.from_number

        try:
            message = self._client.messages.create(from_=sender, to=to_formatted, body=body)
        except TwilioRestException as e:
            logger.error(
                "twilio_send_error",
                error_code=e.code,
                error_message=str(e),
                to=mask_phone(to),
            )
            return {
                "success": False,
                "error": str(e),
                "error_code": e.code,
                "message_id": None,
            }
        except Exception as e:
            logger.error(
                "twilio_send_unexpected_error",
                error=str(e),
                to=mask_phone(to),
                exc_info=True,
            )
            return {"success": False, "error": str(e), "message_id": None}

        logger.info(
            "twilio_message_sent",
            message_sid=message.sid,
            to=mask_phone(to),
            status=message.status,
        )
        return {
            "success": True,
            "message_id": message.sid,
            "status": message.status,
            "to": to_formatted,
            "from": sender,
        }
