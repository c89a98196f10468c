"""Command line interface for issuing requests through the client pipeline."""

import json
import logging
import sys
import uuid
from pathlib import Path

import click
import structlog

from falconnect.client import HttpClient
from falconnect.config import ConfigValidationError, HttpClientConfig
from falconnect.errors import HttpClientError
from falconnect.observability.logging import bind_client_context, configure_logging
from falconnect.settings import ClientSettings


logger = structlog.get_logger()

PRESET_CHOICES = ["default", "production", "development", "test"]


def _resolve_config(preset: str | None, config_path: Path | None) -> HttpClientConfig:
    """Build the effective config from CLI options over environment settings."""
    settings = ClientSettings()
    overrides: dict[str, object] = {}
    if preset is not None:
        overrides["preset"] = preset
    if config_path is not None:
        overrides["config_file"] = config_path
    if overrides:
        settings = settings.model_copy(update=overrides)

    try:
        return settings.build_config()
    except ConfigValidationError as e:
        click.echo(f"Configuration validation failed: {e.file_path}", err=True)
        for error in e.errors:
            click.echo(f"  - {error['loc']}: {error['msg']}", err=True)
        sys.exit(1)


def _parse_headers(values: tuple[str, ...]) -> dict[str, str]:
    headers: dict[str, str] = {}
    for value in values:
        name, sep, header_value = value.partition(":")
        if not sep or not name.strip():
            msg = f"Invalid header '{value}', expected NAME:VALUE"
            raise click.BadParameter(msg, param_hint="--header")
        headers[name.strip()] = header_value.strip()
    return headers


@click.group()
@click.version_option(version="0.1.0")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable debug logging.",
)
@click.option(
    "--json-logs/--no-json-logs",
    default=None,
    help="Use JSON format for logs (default: FALCONNECT_LOG_JSON or true).",
)
def main(verbose: bool, json_logs: bool | None) -> None:
    """HTTP client with retries, caching, rate limiting and metrics."""
    settings = ClientSettings()
    level = logging.DEBUG if verbose else getattr(logging, settings.log_level.upper())
    configure_logging(
        level=level,
        json_format=settings.log_json if json_logs is None else json_logs,
    )
    bind_client_context(str(uuid.uuid4()))


@main.command()
@click.argument("url")
@click.option(
    "--method",
    "-X",
    default="GET",
    show_default=True,
    help="HTTP method.",
)
@click.option(
    "--header",
    "-H",
    "header_values",
    multiple=True,
    help="Request header as NAME:VALUE (repeatable).",
)
@click.option(
    "--data",
    "-d",
    default=None,
    help="Request body.",
)
@click.option(
    "--preset",
    type=click.Choice(PRESET_CHOICES),
    default=None,
    help="Configuration preset (default: FALCONNECT_PRESET or default).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to a YAML client configuration file.",
)
@click.option(
    "--repeat",
    type=click.IntRange(min=1),
    default=1,
    show_default=True,
    help="Number of times to send the request.",
)
@click.option(
    "--stats",
    is_flag=True,
    help="Print the client statistics snapshot after the requests.",
)
def request(  # noqa: PLR0913
    url: str,
    method: str,
    header_values: tuple[str, ...],
    data: str | None,
    preset: str | None,
    config_path: Path | None,
    repeat: int,
    stats: bool,
) -> None:
    """Send a request to URL and print a JSON summary of each response."""
    headers = _parse_headers(header_values)
    config = _resolve_config(preset, config_path)

    with HttpClient(config) as client:
        for _ in range(repeat):
            try:
                response = client.request(method, url, headers=headers, content=data)
            except HttpClientError as e:
                logger.warning("request_failed", error_class=e.error_class.value)
                click.echo(json.dumps(e.to_dict()), err=True)
                sys.exit(1)

            click.echo(
                json.dumps(
                    {
                        "status_code": response.status_code,
                        "from_cache": response.from_cache,
                        "bytes": len(response.content),
                        "content_type": response.headers.get("content-type"),
                    }
                )
            )

        if stats:
            click.echo(json.dumps(client.get_statistics(), indent=2, default=str))


@main.command("show-config")
@click.option(
    "--preset",
    type=click.Choice(PRESET_CHOICES),
    default=None,
    help="Configuration preset (default: FALCONNECT_PRESET or default).",
)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to a YAML client configuration file.",
)
def show_config(preset: str | None, config_path: Path | None) -> None:
    """Print the effective client configuration as JSON."""
    config = _resolve_config(preset, config_path)
    click.echo(config.model_dump_json(indent=2))
