"""
USSD turn handler.

One gateway request is one turn:
1. normalize the caller's number and apply the per-phone throttle
2. load the session, or create it on the first turn
3. run the menu machine on the latest input segment
4. persist the new state with compare-and-set, or delete it on END
5. any error ends the session with a generic message
"""

from dataclasses import dataclass, replace

from ussd_wallet.auth import AuthorizationGate, validate_phone_number
from ussd_wallet.config import Settings
from ussd_wallet.errors import SessionConflict, WalletError
from ussd_wallet.flows.constants import SERVICE_UNAVAILABLE_MESSAGE, MenuState
from ussd_wallet.flows.ussd_menu import UssdMenu
from ussd_wallet.logging_config import get_logger, mask_phone
from ussd_wallet.storage import SessionStore

logger = get_logger(__name__)

UNAVAILABLE_RESPONSE = f"END {SERVICE_UNAVAILABLE_MESSAGE}"


@dataclass
class UssdRequest:
    """Gateway callback fields."""
    session_id: str
    service_code: str
    phone_number: str
    text: str = ""


def current_input(text: str) -> str:
    """
    Latest input segment.

    Gateways send the whole conversation joined by "*" ("2*0712345678*40");
    only the last segment is new.
    """
    if not text:
        return ""
    return text.split("*")[-1].strip()


class UssdService:
    """Runs USSD turns against the session store and the menu machine."""

    def __init__(
        self,
        session_store: SessionStore,
        gate: AuthorizationGate,
        menu: UssdMenu,
        settings: Settings,
    ):
        self.sessions = session_store
        self.gate = gate
        self.menu = menu
        self.settings = settings

    def handle_turn(self, request: UssdRequest) -> str:
        """
        Handle one gateway request.

        Returns:
            Response body starting with "CON " or "END "
        """
        log = logger.bind(session_id=request.session_id)
        try:
            phone = validate_phone_number(request.phone_number).normalized
            log = log.bind(phone=mask_phone(phone))

            self.gate.check_request_rate(
                phone,
                "ussd",
                self.settings.ussd_request_limit,
                self.settings.ussd_request_window_seconds,
            )

            session = self.sessions.get(request.session_id)
            if session is None:
                session = self.sessions.create(request.session_id, phone, MenuState.MAIN.value)
                # A new session always opens on the main menu
                user_input = ""
            else:
                user_input = current_input(request.text)

            if session.phone_number != phone:
                log.warning("ussd_session_phone_mismatch")
                return UNAVAILABLE_RESPONSE

            response = self.menu.transition(
                session.current_state, user_input, session.state_data, phone
            )

            if response.should_continue:
                self.sessions.save(
                    replace(
                        session,
                        current_state=response.next_state.value,
                        state_data=response.session_data,
                    )
                )
            else:
                self.sessions.delete(request.session_id)

            log.info(
                "ussd_turn_handled",
                state=session.current_state,
                next_state=response.next_state.value,
                should_continue=response.should_continue,
            )
            return response.wire_text

        except SessionConflict as e:
            log.warning("ussd_turn_conflict", error=str(e))
            return UNAVAILABLE_RESPONSE
        except WalletError as e:
            log.warning("ussd_turn_rejected", code=e.code, error=e.message)
            return UNAVAILABLE_RESPONSE
        except Exception as e:
            log.error("ussd_turn_failed", error=str(e), exc_info=True)
            return UNAVAILABLE_RESPONSE

    def end_session(self, session_id: str) -> bool:
        """Gateway notified that the session ended (timeout or hang-up)."""
        return self.sessions.delete(session_id)
