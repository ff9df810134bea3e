from consult_relay.client.client import ConsultationClient, SessionView
from consult_relay.client.ledger import MessageLedger

__all__ = [
    "ConsultationClient",
    "MessageLedger",
    "SessionView",
]
