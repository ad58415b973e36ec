from __future__ import annotations

from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from app.core.config import get_settings

settings = get_settings()


def normalize_database_url(raw_url: str) -> tuple[str, dict]:
    """Map heroku-style ``postgres://`` URLs onto asyncpg and lift libpq-only query args.

    Returns the cleaned URL and the ``connect_args`` asyncpg needs instead.
    """
    url = (raw_url or "").strip()
    if url.startswith("postgres://"):
        url = "postgresql+asyncpg://" + url[len("postgres://") :]
    elif url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://") :]
    if not url.startswith("postgresql+asyncpg://"):
        return url, {}

    parsed = urlsplit(url)
    filtered: list[tuple[str, str]] = []
    connect_args: dict = {}
    for key, value in parse_qsl(parsed.query, keep_blank_values=True):
        k = key.lower()
        if k == "sslmode":
            if (value or "").lower().strip() not in {"", "disable", "allow"}:
                connect_args["ssl"] = "require"
            continue
        if k == "channel_binding":
            # libpq option not supported by asyncpg connect().
            continue
        filtered.append((key, value))
    return urlunsplit(parsed._replace(query=urlencode(filtered))), connect_args


engine_kwargs: dict = {"pool_pre_ping": True}
if settings.serverless_mode:
    engine_kwargs["poolclass"] = NullPool

clean_url, connect_args = normalize_database_url(settings.database_url)
if connect_args:
    engine_kwargs["connect_args"] = connect_args
engine = create_async_engine(clean_url, **engine_kwargs)
AsyncSessionLocal = async_sessionmaker(bind=engine, expire_on_commit=False, class_=AsyncSession)
