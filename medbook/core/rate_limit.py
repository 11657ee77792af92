"""Rate limiting configuration for the scheduling API."""

from slowapi import Limiter
from slowapi.util import get_remote_address

from medbook.core.config import settings

# memory:// per process; point RATE_LIMIT_STORAGE_URI at a shared store
# when running several workers
limiter = Limiter(
    key_func=get_remote_address,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    enabled=settings.RATE_LIMIT_ENABLED,
)
