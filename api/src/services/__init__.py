from api.src.services.intake import (
    InvalidEvent,
    normalize_event,
    sign,
    verify_signature,
)

__all__ = [
    "InvalidEvent",
    "normalize_event",
    "sign",
    "verify_signature",
]
