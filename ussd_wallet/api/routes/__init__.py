"""
API route modules.
"""

from ussd_wallet.api.routes.auth import router as auth_router
from ussd_wallet.api.routes.health import router as health_router
from ussd_wallet.api.routes.sms import router as sms_router
from ussd_wallet.api.routes.transactions import router as transactions_router
from ussd_wallet.api.routes.ussd import router as ussd_router
from ussd_wallet.api.routes.webhooks import router as webhooks_router

__all__ = [
    "auth_router",
    "health_router",
    "sms_router",
    "transactions_router",
    "ussd_router",
    "webhooks_router",
]
