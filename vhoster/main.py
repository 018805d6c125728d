import threading
from pathlib import Path
from typing import Optional

import typer

from vhoster.config.loader import load_config
from vhoster.domain.errors import StorageInitError
from vhoster.infrastructure.event_bus import EventBus
from vhoster.infrastructure.ffmpeg import FFmpegAdapter
from vhoster.infrastructure.ffprobe import FFprobeAdapter
from vhoster.infrastructure.logging import setup_logging
from vhoster.infrastructure.media_store import MediaStore
from vhoster.infrastructure.metadata_registry import MetadataRegistry
from vhoster.infrastructure.web_server import MediaWebServer, WebContext
from vhoster.infrastructure.webhook import WebhookClient
from vhoster.infrastructure.ws_server import StatusChannelServer
from vhoster.pipeline.broadcast import StatusHub
from vhoster.pipeline.jobs import JobRegistry
from vhoster.pipeline.orchestrator import Orchestrator

app = typer.Typer(help="Video Hoster - upload, convert and stream media")


def _wait_for_interrupt() -> None:
    threading.Event().wait()


@app.callback()
def main() -> None:
    """Video Hoster command line."""


@app.command()
def serve(
    config_path: Optional[Path] = typer.Option(Path("conf/vhoster.yaml"), "--config", "-c", help="Path to YAML config"),
    host: Optional[str] = typer.Option(None, "--host", help="Interface to bind (overrides config)"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="HTTP port (overrides config and PORT)"),
    ws_port: Optional[int] = typer.Option(None, "--ws-port", help="Status channel port (overrides config and WS_PORT)"),
    uploads_dir: Optional[Path] = typer.Option(None, "--uploads-dir", help="Directory for stored media"),
    data_file: Optional[Path] = typer.Option(None, "--data-file", help="Metadata JSON file"),
    log_path: Optional[Path] = typer.Option(None, "--log-path", help="Path to log file (overrides config)"),
    debug: bool = typer.Option(False, "--debug/--no-debug", help="Enable verbose debug logging"),
):
    """Run the HTTP server and the status channel until interrupted."""
    try:
        config = load_config(config_path)
        # Apply CLI overrides
        if host: config.server.host = host
        if port is not None: config.server.port = port
        if ws_port is not None: config.server.ws_port = ws_port
        if uploads_dir is not None: config.storage.uploads_dir = uploads_dir
        if data_file is not None: config.storage.data_file = data_file
        if log_path is not None: config.logging.log_path = log_path
        if debug: config.logging.debug = True

        logger = setup_logging(
            config.storage.data_file.parent,
            debug=config.logging.debug,
            log_path=config.logging.log_path,
        )
        logger.info(
            f"Config: host={config.server.host}, port={config.server.port}, ws_port={config.server.ws_port}, "
            f"uploads={config.storage.uploads_dir}, data={config.storage.data_file}, "
            f"strategy={config.transcode.strategy.value}, workers={config.transcode.max_workers}"
        )

        store = MediaStore(config.storage.uploads_dir, chunk_size=config.storage.chunk_size)
        registry = MetadataRegistry(config.storage.data_file)
        try:
            store.ensure_ready()
            registry.ensure_ready()
        except StorageInitError as exc:
            typer.secho(f"Error: {exc}", fg=typer.colors.RED, err=True)
            raise typer.Exit(code=1)

        bus = EventBus()
        jobs = JobRegistry(bus)
        hub = StatusHub(jobs)
        hub.attach(bus)

        engine = FFmpegAdapter(config.transcode, FFprobeAdapter(config.transcode.ffprobe_path))
        orchestrator = Orchestrator(config=config, store=store, registry=registry, jobs=jobs, engine=engine)
        context = WebContext(
            config=config,
            orchestrator=orchestrator,
            jobs=jobs,
            webhook=WebhookClient(config.webhook.timeout_s, config.webhook.description),
        )

        web = MediaWebServer(context, port=config.server.port, host=config.server.host)
        channel = StatusChannelServer(hub, host=config.server.host, port=config.server.ws_port)
        web.start()
        channel.start()
        try:
            _wait_for_interrupt()
        finally:
            orchestrator.shutdown(wait=False)
            hub.flush(timeout=1.0)
            channel.stop()
            web.stop()
            logger.info("Server stopped")

    except KeyboardInterrupt:
        typer.secho("\nServer stopped by user (Ctrl+C)", fg=typer.colors.YELLOW)
        raise typer.Exit(code=130)

    except typer.Exit:
        raise

    except Exception as e:
        typer.secho(f"Fatal Error: {e}", fg=typer.colors.RED, err=True)
        raise typer.Exit(code=1)


if __name__ == "__main__":
    app()
