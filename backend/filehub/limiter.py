"""Rate limiter for auth and sync endpoints. WebDAV is not limited: file managers issue bursts of PROPFINDs."""

from slowapi import Limiter
from slowapi.util import get_remote_address

LOGIN_RATE = "10/minute"
REFRESH_RATE = "20/minute"
# Bulk sync of many small files; about 10 requests/sec
SYNC_RATE = "600/minute"
# 1 MiB chunks; a 1 GiB file is ~1000 requests
CHUNK_RATE = "3000/minute"

limiter = Limiter(key_func=get_remote_address)
