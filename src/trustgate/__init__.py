"""
TrustGate - Trust & Access Risk Engine
MFA credential lifecycle plus zero-trust evaluation and access decisions.
"""

__version__ = "0.1.0"

from trustgate.core.config import settings
from trustgate.core.logging import get_logger

logger = get_logger(__name__)
logger.debug(f"TrustGate v{__version__} initialized")

__all__ = ["settings", "get_logger", "__version__"]
