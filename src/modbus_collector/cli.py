#!/usr/bin/env python3
"""Command-line entry point for modbus-collector using Typer."""

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from . import __version__  # type: ignore
from .collector import Collector
from .config import CollectorConfig, load_config, with_overrides
from .errors import CollectorError, ConfigError, SinkConfigError, TransportError
from .sink import FORMATS, ConsoleSink, MemorySink, format_tags, format_value, json_record

app = typer.Typer(
    name="mbcollect",
    help="Poll Modbus input registers on a schedule and forward them as tagged measurements.",
    no_args_is_help=True,
)

logger = logging.getLogger(__name__)

_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")

# ============================================================================
# Shared options and helpers
# ============================================================================

ConfigArgument = Annotated[
    Path,
    typer.Argument(help="Path to the TOML configuration file", envvar="MBCOLLECT_CONFIG"),
]
HostOption = Annotated[
    Optional[str],
    typer.Option("--host", "-h", help="Override [modbus] hostname", envvar="MBCOLLECT_HOST"),
]
PortOption = Annotated[
    Optional[int],
    typer.Option("--port", "-p", help="Override [modbus] port", envvar="MBCOLLECT_PORT"),
]
TimeoutOption = Annotated[
    Optional[float],
    typer.Option("--timeout", "-t", help="Override request timeout in seconds", envvar="MBCOLLECT_TIMEOUT"),
]
VerboseOption = Annotated[
    bool,
    typer.Option("--verbose", "-v", help="Enable debug logging"),
]
LogLevelOption = Annotated[
    Optional[str],
    typer.Option("--log-level", "-l", help="Log level: DEBUG, INFO, WARNING, ERROR", envvar="MBCOLLECT_LOG_LEVEL"),
]
LogFileOption = Annotated[
    Optional[Path],
    typer.Option("--log-file", help="Also write logs to this file", envvar="MBCOLLECT_LOG_FILE"),
]
JsonOption = Annotated[
    bool,
    typer.Option("--json", help="Output as JSON"),
]


def setup_logging(verbose: bool = False, level: str | None = None, log_file: Path | None = None) -> None:
    """Configure root logging from the verbose flag, an explicit level and an optional file."""
    if level is not None:
        name = level.upper()
        if name not in _LEVELS:
            raise typer.BadParameter(f"Invalid log level {level!r}", param_hint="--log-level")
        resolved = getattr(logging, name)
    else:
        resolved = logging.DEBUG if verbose else logging.WARNING
    detailed = verbose or resolved <= logging.INFO
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=resolved,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s" if detailed else "%(levelname)s: %(message)s",
        handlers=handlers,
        force=True,
    )
    # pymodbus logs every retry and framing detail; keep it quiet unless debugging
    logging.getLogger("pymodbus").setLevel(logging.DEBUG if resolved <= logging.DEBUG else logging.WARNING)


def load(
    config_path: Path,
    host: Optional[str] = None,
    port: Optional[int] = None,
    timeout: Optional[float] = None,
    format: Optional[str] = None,
) -> CollectorConfig:
    """Load the config file and apply command-line overrides; exits 2 on any problem."""
    if format is not None and format not in FORMATS:
        typer.echo(f"Error: Invalid format '{format}'. Must be text, json, or csv.", err=True)
        raise typer.Exit(2)
    if timeout is not None and timeout <= 0:
        typer.echo(f"Error: Timeout must be positive, got {timeout}", err=True)
        raise typer.Exit(2)
    try:
        config = load_config(config_path)
    except ConfigError as e:
        typer.echo(f"Error: Invalid configuration: {e}", err=True)
        raise typer.Exit(2)
    return with_overrides(config, host=host, port=port, timeout=timeout, format=format)


def device_summary(config: CollectorConfig) -> list[dict]:
    """Per-device read plan, as shown by `check`."""
    from .codec import plan_reads

    out = []
    for d in config.devices:
        spans = plan_reads(d.registers, coalesce=config.modbus.coalesce)
        out.append(
            {
                "id": d.unit_id,
                "scan_interval": d.scan_interval,
                "tags": dict(d.tags),
                "registers": [
                    {
                        "name": r.name,
                        "addr": r.address,
                        "data_type": r.data_type.value,
                        "words": r.words,
                        "scaling": r.scaling,
                        "tags": d.merged_tags(r),
                    }
                    for r in d.registers
                ],
                "reads": [{"start": s.start, "count": s.count} for s in spans],
            }
        )
    return out


# ============================================================================
# Commands
# ============================================================================


@app.command()
def run(
    config_path: ConfigArgument,
    host: HostOption = None,
    port: PortOption = None,
    timeout: TimeoutOption = None,
    format: Annotated[
        Optional[str],
        typer.Option("--format", "-f", help="Console output format: text, json, csv (default from config)"),
    ] = None,
    verbose: VerboseOption = False,
    log_level: LogLevelOption = None,
    log_file: LogFileOption = None,
) -> None:
    """
    Poll all configured devices until interrupted.

    Each device is read on its own scan interval over the single shared connection.
    Lost connections are re-established automatically; the first connect must succeed.
    Press Ctrl+C to stop gracefully.
    """
    setup_logging(verbose, log_level, log_file)
    config = load(config_path, host, port, timeout, format)

    try:
        sink = ConsoleSink(format=config.sink.format)
        collector = Collector(config, sink)
        collector.run()
    except KeyboardInterrupt:
        typer.echo("\nStopped by user", err=True)
        raise typer.Exit(0)
    except SinkConfigError as e:
        typer.echo(f"Error: Sink misconfigured: {e}", err=True)
        raise typer.Exit(2)
    except TransportError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)


@app.command()
def check(
    config_path: ConfigArgument,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Validate the configuration and show each device's registers and read plan.

    Does not connect to the bus.
    """
    setup_logging(verbose)
    config = load(config_path)
    devices = device_summary(config)

    if json_output:
        m = config.modbus
        typer.echo(
            json.dumps(
                {
                    "modbus": {
                        "hostname": m.hostname,
                        "port": m.port,
                        "protocol": m.protocol,
                        "timeout": m.timeout,
                        "backoff": m.effective_backoff,
                        "coalesce": m.coalesce,
                    },
                    "devices": devices,
                },
                indent=2,
            )
        )
        return

    m = config.modbus
    typer.echo(f"Endpoint:  {m.protocol}://{m.hostname}:{m.port} (timeout {m.timeout:g}s, backoff {m.effective_backoff:g}s)")
    for d in devices:
        typer.echo(f"Device {d['id']}: every {d['scan_interval']:g}s, {len(d['registers'])} register(s), {len(d['reads'])} read(s)")
        for r in d["registers"]:
            typer.echo(f"  {r['name']:<24} addr={r['addr']:<6} {r['data_type']:<4} x{r['scaling']:g}  {format_tags(r['tags'])}")
        for s in d["reads"]:
            typer.echo(f"  read {s['start']}+{s['count']}")


@app.command()
def read(
    config_path: ConfigArgument,
    device: Annotated[
        Optional[int],
        typer.Option("--device", "-d", help="Only read this unit id (default: all devices)"),
    ] = None,
    host: HostOption = None,
    port: PortOption = None,
    timeout: TimeoutOption = None,
    verbose: VerboseOption = False,
    json_output: JsonOption = False,
) -> None:
    """
    Connect, run one tick per device and print the measurements.

    Exits 3 if the connection cannot be opened or any device fails to read.
    """
    setup_logging(verbose)
    config = load(config_path, host, port, timeout)
    if device is not None and device not in {d.unit_id for d in config.devices}:
        typer.echo(f"Error: Unknown device id: {device}", err=True)
        raise typer.Exit(2)

    sink = MemorySink()
    try:
        collector = Collector(config, sink)
        collector.supervisor.start()
        try:
            results = collector.poll_once(device)
        finally:
            collector.supervisor.stop()
    except TransportError as e:
        typer.echo(f"Error: Connection/Modbus error: {e}", err=True)
        raise typer.Exit(3)
    except CollectorError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(4)
    except Exception as e:
        typer.echo(f"Error: Unexpected error: {e}", err=True)
        if verbose:
            import traceback
            traceback.print_exc()
        raise typer.Exit(4)

    failed = [r for r in results if not r.ok]
    if json_output:
        output = {
            "measurements": [json_record(m) for r in results for m in r.measurements],
        }
        if failed:
            output["errors"] = {str(r.unit_id): str(r.error) for r in failed}
        typer.echo(json.dumps(output, indent=2))
    else:
        for r in results:
            for m in r.measurements:
                typer.echo(f"{m.timestamp.isoformat()} {m.name}={format_value(m.value)} {format_tags(m.tags)}")
        for r in failed:
            typer.echo(f"Error: device {r.unit_id}: {r.error}", err=True)
    if failed:
        raise typer.Exit(3)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        typer.echo(f"modbus-collector {__version__}")
        raise typer.Exit(0)


@app.callback()
def main(
    version: Annotated[
        Optional[bool],
        typer.Option("--version", callback=version_callback, is_eager=True, help="Show version and exit"),
    ] = None,
) -> None:
    """mbcollect - poll Modbus devices and forward tagged measurements."""
    pass


if __name__ == "__main__":
    app()
