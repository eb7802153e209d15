from .async_utils import guarded_call, wait_with_stop
from .logging import log_event, sanitize_text, sanitize_value
from .parsing import to_bool, to_float, to_int

__all__ = [
    "guarded_call",
    "log_event",
    "sanitize_text",
    "sanitize_value",
    "to_bool",
    "to_float",
    "to_int",
    "wait_with_stop",
]
