"""
api/limiter.py -- Shared slowapi rate limiter instance.

Imported by api/main.py (to mount as middleware) and web/routes.py (to limit
POSTs to the dispatcher with @limiter.limit()).

Using a single shared instance ensures all routes share the same in-memory
counter store.
"""

from slowapi import Limiter
from slowapi.util import get_remote_address

limiter = Limiter(key_func=get_remote_address, storage_uri="memory://")
