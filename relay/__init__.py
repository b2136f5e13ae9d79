"""request-relay: resilient HTTP request pipeline."""

from relay.client import RelayClient
from relay.core.logging import configure_logging

__version__ = "0.1.0"

__all__ = ["RelayClient", "configure_logging", "__version__"]
