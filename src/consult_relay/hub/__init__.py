from consult_relay.hub.hub import ConsultationHub
from consult_relay.hub.state_machine import resolve_transition

__all__ = [
    "ConsultationHub",
    "resolve_transition",
]
