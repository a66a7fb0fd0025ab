"""Command line for running and maintaining an imagepipe deployment."""

import asyncio
import base64
import os
import re
import secrets
import signal
import sys
from datetime import timedelta
from pathlib import Path

import click

from imagepipe.config import CONFIG_PATH_ENV

_KEY_FORMATS = {
    "urlsafe": secrets.token_urlsafe,
    "hex": secrets.token_hex,
    "base64": lambda n: base64.b64encode(secrets.token_bytes(n)).decode("ascii"),
}


@click.group()
@click.version_option(package_name="imagepipe")
@click.option(
    "--config",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help=f"app.yaml to use instead of ./app.yaml (sets {CONFIG_PATH_ENV})",
)
def cli(config_file):
    """imagepipe - image asset pipeline."""
    if config_file:
        os.environ[CONFIG_PATH_ENV] = str(Path(config_file).resolve())


def _hypercorn_config(host: str, port: int, workers: int, log_level: str, reload: bool):
    from hypercorn.config import Config

    config = Config()
    config.application_path = "imagepipe.asgi:app"
    config.bind = [f"{host}:{port}"]
    config.loglevel = log_level.upper()
    config.include_server_header = False
    # The reloader only supervises a single worker
    config.workers = 1 if reload else workers
    config.use_reloader = reload
    return config


async def _serve_until_signalled(app, config) -> None:
    from hypercorn.asyncio import serve as hypercorn_serve

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, stop.set)
    await hypercorn_serve(app, config, shutdown_trigger=stop.wait)


@cli.command()
@click.option("--host", default="127.0.0.1", help="Host to bind to")
@click.option("--port", default=8080, type=int, help="Port to bind to")
@click.option("--reload", is_flag=True, help="Restart on code changes (development)")
@click.option("--workers", default=1, type=int, help="Number of worker processes")
@click.option(
    "--log-level",
    default="info",
    type=click.Choice(["debug", "info", "warning", "error"]),
    help="Logging level",
)
def serve(host, port, reload, workers, log_level):
    """Serve the API and local bucket files with hypercorn."""
    config = _hypercorn_config(host, port, workers, log_level, reload)

    if reload or workers > 1:
        from hypercorn.run import run

        sys.exit(run(config))

    from imagepipe.asgi import app

    asyncio.run(_serve_until_signalled(app, config))


def _set_env_var(env_path: Path, name: str, value: str) -> None:
    """Replace or append ``name=value`` in a dotenv file."""
    content = env_path.read_text() if env_path.exists() else ""
    line = f"{name}={value}"
    pattern = re.compile(rf"^{re.escape(name)}=.*$", re.MULTILINE)

    if pattern.search(content):
        content = pattern.sub(line, content)
    else:
        if content and not content.endswith("\n"):
            content += "\n"
        content += line + "\n"
    env_path.write_text(content)


@cli.command()
@click.option("--write", type=click.Path(dir_okay=False), default=None, help="Store SECRET_KEY in this .env file")
@click.option(
    "--format",
    "fmt",
    default="urlsafe",
    type=click.Choice(sorted(_KEY_FORMATS)),
    help="Encoding of the generated key",
)
@click.option("--length", default=32, type=click.IntRange(min=16), help="Number of random bytes")
def secret(write, fmt, length):
    """Generate the key that signs access links."""
    key = _KEY_FORMATS[fmt](length)
    if not write:
        click.echo(key)
        return

    _set_env_var(Path(write), "SECRET_KEY", key)
    click.echo(f"SECRET_KEY written to {write}")


def _run_alembic(args: list[str]) -> None:
    """Build an Alembic Config for the packaged migrations and run *args*."""
    from alembic.config import CommandLine, Config

    package_dir = Path(__file__).parent
    alembic_ini = Path.cwd() / "alembic.ini"
    if not alembic_ini.exists():
        alembic_ini = package_dir / "alembic.ini"

    cfg = Config(str(alembic_ini))
    cfg.set_main_option("script_location", str(package_dir / "alembic"))

    cmd = CommandLine()
    options = cmd.parser.parse_args(args)
    if not hasattr(options, "cmd"):
        cmd.parser.error("too few arguments")
    cfg.cmd_opts = options
    fn, positional, kwarg = options.cmd
    fn(
        cfg,
        *[getattr(options, k, None) for k in positional],
        **{k: getattr(options, k, None) for k in kwarg},
    )


@cli.command(
    context_settings=dict(
        ignore_unknown_options=True,
        allow_extra_args=True,
    )
)
@click.pass_context
def db(ctx):
    """Run database migrations via Alembic.

    \b
    Examples:
        imagepipe db upgrade head     # Apply all migrations
        imagepipe db downgrade -1     # Roll back one migration
        imagepipe db current          # Show current revision
        imagepipe db history          # Show migration history
    """
    if not ctx.args:
        click.echo(ctx.get_help())
        return
    _run_alembic(ctx.args)


async def _with_orchestrator(work):
    """Run ``work(orchestrator, session)`` against the configured stores."""
    from imagepipe.app_factory import create_db_config
    from imagepipe.config import get_settings
    from imagepipe.db.services.upload_service import UploadOrchestrator
    from imagepipe.lib import observability
    from imagepipe.lib.storage import StorageManager

    settings = get_settings()
    observability.configure(settings)
    db_config = create_db_config(settings)
    storage = StorageManager(settings.storage, secret_key=settings.secret_key)
    orchestrator = UploadOrchestrator.from_settings(settings, storage)
    try:
        async with db_config.get_session() as session:
            return await work(orchestrator, session)
    finally:
        await storage.close()
        await db_config.get_engine().dispose()


@cli.group()
def orphans():
    """Find stored objects that no image record refers to."""
    pass


@orphans.command("scan")
@click.option("--bucket", default=None, help="Bucket to scan (defaults to the default bucket)")
@click.option("--prefix", default="", help="Only consider keys under this prefix")
def orphans_scan(bucket, prefix):
    """List orphaned objects."""
    keys = asyncio.run(
        _with_orchestrator(lambda o, s: o.scan_orphans(s, bucket, prefix))
    )
    for key in keys:
        click.echo(key)
    click.echo(f"{len(keys)} orphaned object(s)", err=True)


@orphans.command("delete")
@click.option("--bucket", default=None, help="Bucket to clean (defaults to the default bucket)")
@click.option("--prefix", default="", help="Only consider keys under this prefix")
@click.option("--yes", is_flag=True, help="Do not ask for confirmation")
def orphans_delete(bucket, prefix, yes):
    """Delete orphaned objects."""
    if not yes:
        click.confirm(
            f"Delete orphaned objects under '{prefix or '/'}'?", abort=True
        )
    keys = asyncio.run(
        _with_orchestrator(lambda o, s: o.delete_orphans(s, bucket, prefix))
    )
    click.echo(f"Deleted {len(keys)} orphaned object(s)")


@cli.command("purge-deleted")
@click.option(
    "--older-than",
    "days",
    default=30,
    type=click.IntRange(min=0),
    help="Purge images soft-deleted more than DAYS days ago",
)
def purge_deleted(days):
    """Hard-delete soft-deleted images and their stored objects."""
    results = asyncio.run(
        _with_orchestrator(lambda o, s: o.purge_deleted(s, timedelta(days=days)))
    )
    failed = [r for r in results if not r.ok]
    for result in failed:
        click.echo(f"{result.id}: {result.error}", err=True)
    click.echo(f"Purged {len(results) - len(failed)} of {len(results)} image(s)")
    if failed:
        sys.exit(1)


if __name__ == "__main__":
    cli()
