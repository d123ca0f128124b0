"""
Main CLI application for Parley.

Provides an interactive chat session over the dual-mode transport and
commands for probing the backend and inspecting configuration.
"""

import asyncio
import logging
import sys
from typing import Optional

import click
import yaml

from parley.lib.config import ConfigurationError, ParleyConfig, initialize_config
from parley.lib.errors import AuthenticationError
from parley.lib.logging_config import get_audit_logger, setup_logging
from parley.lib.metrics import initialize_metrics
from parley.lib.observability import get_meter, initialize_telemetry, shutdown_telemetry
from parley.models.chat_message import ChatMessage, DeliveryStatus
from parley.models.connection_state import ConnectionState, ModeChangeNotice, TransportMode
from parley.services.chat_session_client import ChatSessionClient
from parley.services.http_backend import HttpChatBackend
from parley.services.transcript import TranscriptRecorder
from parley.services.transport_probe import TransportProbe


logger = logging.getLogger("parley.cli")
audit_logger = get_audit_logger()

_STATUS_MARKS = {
    DeliveryStatus.SENDING: "...",
    DeliveryStatus.SENT: "->",
    DeliveryStatus.DELIVERED: "ok",
    DeliveryStatus.FAILED: "!!",
}


class ParleyApplication:
    """Main Parley application manager."""

    def __init__(self, config_path: Optional[str] = None, debug: bool = False):
        self.config_path = config_path
        self.debug = debug
        self.config: Optional[ParleyConfig] = None
        self.backend: Optional[HttpChatBackend] = None

    def initialize(self, mode: Optional[str] = None) -> ParleyConfig:
        """Load configuration and set up logging, telemetry and the backend."""
        logger.info("Initializing Parley")
        config = initialize_config(self.config_path).get_config()
        if mode:
            config.transport.mode = TransportMode(mode)

        logging_config = config.logging.model_dump()
        if self.debug or config.debug:
            logging_config["level"] = "DEBUG"
        setup_logging(logging_config)

        initialize_telemetry(config.observability)
        initialize_metrics(get_meter())

        self.config = config
        self.backend = HttpChatBackend(config.backend)
        logger.info(f"Parley initialized against {config.backend.base_url}")
        return config

    async def shutdown(self) -> None:
        """Release the backend and flush telemetry."""
        if self.backend:
            await self.backend.aclose()
            self.backend = None
        shutdown_telemetry()
        logger.info("Parley shutdown completed")


def _format_message(message: ChatMessage) -> str:
    mark = _STATUS_MARKS.get(message.delivery_status, "")
    stamp = message.created_at.strftime("%H:%M:%S")
    return f"[{stamp}] {message.role.value:>9} {mark:>3} {message.content}"


def _format_state(state: ConnectionState) -> str:
    parts = [f"mode={state.mode.value}"]
    if state.consecutive_failures:
        parts.append(f"failures={state.consecutive_failures}")
    if state.degraded:
        parts.append("degraded")
    if state.auto_recovery_exhausted:
        parts.append("auto-recovery exhausted (use /persistent)")
    if state.fatal_error:
        parts.append(f"fatal: {state.fatal_error}")
    return "connection: " + ", ".join(parts)


async def _print_messages(client: ChatSessionClient, recorder: Optional[TranscriptRecorder]) -> None:
    async for message in client.observe_messages():
        click.echo(_format_message(message))
        if recorder:
            await recorder.record_message(message)


async def _print_states(client: ChatSessionClient) -> None:
    last = None
    async for state in client.observe_connection_state():
        line = _format_state(state)
        if line != last:
            click.echo(line, err=True)
            last = line


async def _read_line(prompt: str) -> str:
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(None, lambda: click.prompt(prompt, default="", show_default=False))


async def _chat_impl(app: ParleyApplication, session_id: str, mode: Optional[str], transcript: Optional[str]) -> int:
    config = app.initialize(mode)
    recorder = TranscriptRecorder(transcript, session_id) if transcript else None
    fatal = asyncio.Event()

    client = ChatSessionClient(session_id, app.backend, config.transport)

    def on_mode_change(notice: ModeChangeNotice) -> None:
        click.echo(f"* switched to {notice.to_mode.value}: {notice.reason}", err=True)
        if recorder:
            asyncio.create_task(recorder.record_mode_change(notice))

    def on_fatal(error: AuthenticationError) -> None:
        click.echo(f"Session ended: {error}", err=True)
        fatal.set()

    client.on_mode_change(on_mode_change)
    client.on_fatal_error(on_fatal)

    audit_logger.log_connection_event("session_start", session_id, config.transport.mode.value, "started")
    watchers = []
    try:
        await client.start()
        watchers = [
            asyncio.create_task(_print_messages(client, recorder)),
            asyncio.create_task(_print_states(client)),
        ]
        click.echo("Type a message and press enter. Commands: /persistent, /retry KEY, /quit", err=True)

        while not fatal.is_set():
            line = (await _read_line(">")).strip()
            if not line:
                continue
            if line == "/quit":
                break
            if line == "/persistent":
                ok = await client.retry_persistent()
                click.echo("persistent channel active" if ok else "persistent channel unavailable", err=True)
            elif line.startswith("/retry "):
                key = line.split(maxsplit=1)[1]
                if not client.retry_message(key):
                    click.echo(f"{key} is not a failed message", err=True)
            else:
                client.note_typing()
                client.send_message(line)
    except (EOFError, click.Abort):
        pass
    finally:
        await client.close()
        for watcher in watchers:
            watcher.cancel()
        await asyncio.gather(*watchers, return_exceptions=True)
        audit_logger.log_connection_event("session_end", session_id, client.mode.value, "closed")
        await app.shutdown()

    return 1 if fatal.is_set() else 0


async def _probe_impl(app: ParleyApplication, session_id: str) -> int:
    config = app.initialize()
    probe = TransportProbe(app.backend, config.transport.connect_timeout_ms, config.transport.send_timeout_ms)
    try:
        result = await probe.connect(session_id)
        if result.connected:
            click.echo(f"Connected in {result.latency_ms}ms")
            return 0
        click.echo(f"Connect failed ({result.reason.value}): {result.error}", err=True)
        return 1
    finally:
        await probe.close()
        await app.shutdown()


# CLI Commands

@click.group()
@click.option('--config', '-c', help='Configuration file path')
@click.option('--debug', is_flag=True, help='Enable debug mode')
@click.pass_context
def cli(ctx, config, debug):
    """Parley dual-mode chat client CLI."""
    ctx.ensure_object(dict)
    ctx.obj['config_path'] = config
    ctx.obj['debug'] = debug

    if debug:
        logging.basicConfig(level=logging.DEBUG)


@cli.command()
@click.argument('session_id')
@click.option('--mode', '-m', type=click.Choice([m.value for m in TransportMode]), help='Transport preference')
@click.option('--transcript', '-t', type=click.Path(), help='Append delivered messages to this JSONL file')
@click.pass_context
def chat(ctx, session_id, mode, transcript):
    """Start an interactive chat session."""
    try:
        app = ParleyApplication(ctx.obj.get('config_path'), ctx.obj.get('debug'))
        sys.exit(asyncio.run(_chat_impl(app, session_id, mode, transcript)))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        sys.exit(130)


@cli.command()
@click.argument('session_id')
@click.pass_context
def probe(ctx, session_id):
    """Attempt one persistent connection and report the result."""
    try:
        app = ParleyApplication(ctx.obj.get('config_path'), ctx.obj.get('debug'))
        sys.exit(asyncio.run(_probe_impl(app, session_id)))
    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)
    except AuthenticationError as e:
        click.echo(f"Authentication rejected: {e}", err=True)
        sys.exit(2)


@cli.command()
@click.pass_context
def validate(ctx):
    """Validate the Parley configuration."""
    try:
        config_manager = initialize_config(ctx.obj.get('config_path'))
        config = config_manager.get_config()
        warnings = config_manager.validate_config()

        click.echo("Configuration validation completed successfully!")
        click.echo(f"Configuration file: {config.config_file_path}")
        click.echo(f"Backend: {config.backend.base_url}")
        click.echo(f"Transport preference: {config.transport.mode.value}")
        click.echo(f"Telemetry: {'enabled' if config.observability.enabled else 'disabled'}")

        if warnings:
            click.echo("\nWarnings:")
            for warning in warnings:
                click.echo(f"  - {warning}")
        else:
            click.echo("\nNo warnings found.")

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


@cli.command('config-show')
@click.option('--output', '-o', type=click.Path(), help='Output file path')
@click.pass_context
def config_show(ctx, output):
    """Show the effective transport and backend configuration."""
    try:
        config = initialize_config(ctx.obj.get('config_path')).get_config()
        config_dict = {
            "transport": config.transport.model_dump(mode="json"),
            "backend": config.backend.model_dump(mode="json", exclude={"auth_token"}),
        }

        if output:
            with open(output, 'w') as f:
                yaml.dump(config_dict, f, default_flow_style=False, indent=2)
            click.echo(f"Configuration exported to: {output}")
        else:
            click.echo(yaml.dump(config_dict, default_flow_style=False, indent=2))

    except ConfigurationError as e:
        click.echo(f"Configuration error: {e}", err=True)
        sys.exit(1)


if __name__ == '__main__':
    cli()
