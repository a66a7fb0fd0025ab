"""Pipeline telemetry through Pydantic Logfire, when it is installed and enabled.

Upload stages and storage calls run inside spans, orphaned objects are
reported as error events, and unhandled request failures are recorded with
their traceback. Without logfire every helper here does nothing and callers
fall back to stdlib logging where it matters.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any, Iterator

if TYPE_CHECKING:
    from imagepipe.config import LogfireConfig, Settings

_logfire = None
_configured = False


def is_available() -> bool:
    return _logfire is not None and _configured


def _configure_options(config: LogfireConfig, console_options: Any) -> dict[str, Any]:
    options: dict[str, Any] = {
        "service_name": config.service_name,
        "send_to_logfire": "if-token-present",
        "console": console_options if config.console else False,
    }
    if config.environment:
        options["environment"] = config.environment
    if config.sample_rate < 1.0:
        options["trace_sample_rate"] = config.sample_rate
    return options


def configure(settings: Settings) -> None:
    """Set up logfire once per process if ``logfire.enabled`` is on."""
    global _logfire, _configured

    if _configured or not settings.logfire.enabled:
        return

    try:
        import logfire
    except ImportError:
        return

    logfire.configure(**_configure_options(settings.logfire, logfire.ConsoleOptions()))
    _logfire = logfire
    _configured = True


def instrument_app(app):
    """Wrap the ASGI app in request tracing; returns *app* itself without logfire."""
    if not is_available():
        return app
    return _logfire.instrument_asgi(app)


def instrument_sqlalchemy(engine) -> None:
    if is_available():
        _logfire.instrument_sqlalchemy(engine=engine)


@contextmanager
def span(name: str, **attrs: Any) -> Iterator[Any]:
    """A logfire span around one pipeline stage, or ``None`` without logfire."""
    if not is_available():
        yield None
        return
    with _logfire.span(name, **attrs) as current:
        yield current


def annotate(current: Any, **attrs: Any) -> None:
    """Attach results to a span opened with :func:`span`."""
    if current is None:
        return
    for key, value in attrs.items():
        current.set_attribute(key, value)


def orphaned(bucket: str, paths: list[str], error: str | None) -> None:
    if is_available():
        _logfire.error(
            "Orphaned objects in {bucket}", bucket=bucket, paths=paths, count=len(paths), error=error
        )


def exception(msg: str, **kwargs: Any) -> bool:
    """Record the active exception; ``True`` means logfire took it."""
    if not is_available():
        return False
    _logfire.exception(msg, **kwargs)
    return True
