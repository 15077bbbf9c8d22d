"""enginewatch monitor — periodic evaluation, recertification and the JSON status API."""
from .config import ConfigValidationError, WatchConfig

__all__ = ["ConfigValidationError", "WatchConfig"]
