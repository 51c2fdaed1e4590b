from slowapi import Limiter
from slowapi.util import get_remote_address

from ledger_sync.core.config import settings

# Shared by main (app.state.limiter) and the routers' @limiter.limit decorators.
# Backed by Redis so limits survive across worker restarts.
limiter = Limiter(key_func=get_remote_address, storage_uri=settings.redis_url)
