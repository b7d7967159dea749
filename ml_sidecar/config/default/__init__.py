"""Default configuration values."""

from .runtime import *  # noqa: F401,F403
from .runtime import __all__ as _runtime_all
from .server import *  # noqa: F401,F403
from .server import __all__ as _server_all

__all__ = [*_runtime_all, *_server_all]
