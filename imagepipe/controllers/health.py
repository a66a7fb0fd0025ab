"""Liveness endpoint."""

from litestar import get


@get("/health", exclude_from_auth=True)
async def health() -> dict[str, str]:
    return {"status": "ok"}
