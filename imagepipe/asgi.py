"""ASGI entry point: ``hypercorn imagepipe.asgi:app``."""

from imagepipe.app_factory import create_asgi_app

app = create_asgi_app()
