"""Shared helpers for ASGI middleware."""

from litestar.types import Send


async def send_plain(send: Send, status: int, body: bytes) -> None:
    """Send a plain-text response."""
    await send({
        "type": "http.response.start",
        "status": status,
        "headers": [(b"content-type", b"text/plain")],
    })
    await send({"type": "http.response.body", "body": body})


async def send_not_found(send: Send) -> None:
    await send_plain(send, 404, b"Not Found")


async def send_forbidden(send: Send) -> None:
    await send_plain(send, 403, b"Forbidden")
