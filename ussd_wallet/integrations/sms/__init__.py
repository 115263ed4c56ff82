"""SMS channel: Twilio client and notification templates."""

from ussd_wallet.integrations.sms.notifications import Notifier
from ussd_wallet.integrations.sms.twilio_client import TwilioSmsClient

__all__ = ["Notifier", "TwilioSmsClient"]
