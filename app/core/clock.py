# auth_server/app/core/clock.py
from datetime import datetime, timezone


def now() -> datetime:
    """Instante atual em UTC (timezone-aware)."""
    return datetime.now(timezone.utc)


def utcnow() -> datetime:
    """Instante atual em UTC sem tzinfo, no formato guardado nas colunas DateTime."""
    return now().replace(tzinfo=None)
