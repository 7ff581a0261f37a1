import asyncio
import json
import logging
import os
import sys
import traceback
from pathlib import Path
from typing import Any

import click

from .config import ConsulConfigModel, load_consul_config, parse_consul_uri
from .directive import ConsulDirective, DirectiveRegistry
from .operations import default_registry
from .parser import parse_expression
from .schema import schema_fields
from .state import StateEvent


def get_env_flag(env_var: str, default: bool = False) -> bool:
    """Get a boolean flag from an environment variable.

    Returns:
        True if the environment variable is set to "1", "true", or "yes" (case insensitive)
    """
    value = os.environ.get(env_var, "").lower()
    return value in ("1", "true", "yes") if value else default


def configure_logging(debug: bool = False) -> None:
    """Configure the root logger for CLI use."""
    if not debug:
        debug = get_env_flag("EV_CONSUL_DEBUG")

    level = logging.DEBUG if debug else logging.WARNING

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove any existing handlers to avoid duplicate messages
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setLevel(level)
    stream_handler.setFormatter(logging.Formatter("%(levelname)s:%(name)s:%(message)s"))
    root_logger.addHandler(stream_handler)


def output_result(result: Any, json_output: bool = False) -> None:
    if json_output:
        click.echo(json.dumps({"status": "ok", "result": result}, indent=2, default=str))
    elif isinstance(result, (dict, list)):
        click.echo(json.dumps(result, indent=2, default=str))
    else:
        click.echo(result)


def output_error(error: BaseException, json_output: bool = False, debug: bool = False) -> None:
    """Output an error in either JSON or human-readable format and abort."""
    error_info = {"error": str(error)}
    if debug:
        error_info["type"] = error.__class__.__name__
        error_info["traceback"] = traceback.format_exc()

    if json_output:
        click.echo(json.dumps({"status": "error", **error_info}, indent=2))
    else:
        click.echo(f"Error: {error_info['error']}", err=True)
        if debug and "traceback" in error_info:
            click.echo("\nTraceback:", err=True)
            click.echo(error_info["traceback"], err=True)

    raise click.Abort()


def strip_prefix(expression: str) -> str:
    """Accept expressions with or without the ``$consul:`` prefix."""
    parts = DirectiveRegistry.split_reference(expression)
    if parts is not None and parts[0] == "consul":
        return parts[1]
    return expression


@click.group()
@click.version_option(package_name="evergreen-consul")
def cli() -> None:
    """Resolve $consul: configuration directives."""


@cli.command(name="operations")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
def operations(json_output: bool) -> None:
    """List the supported Consul operations and their aliases."""
    listing = []
    for descriptor in default_registry():
        fields = schema_fields(descriptor.schema)
        listing.append(
            {
                "name": descriptor.name,
                "aliases": sorted(descriptor.aliases),
                "required": [name for name, f in fields.items() if f["required"]],
                "optional": [
                    name for name, f in fields.items() if not f["required"] and not f["base"]
                ],
                "description": descriptor.description,
            }
        )

    if json_output:
        output_result(listing, json_output=True)
        return

    for entry in listing:
        line = entry["name"]
        if entry["aliases"]:
            line += f" ({', '.join(entry['aliases'])})"
        if entry["required"]:
            line += f"  requires: {', '.join(entry['required'])}"
        click.echo(line)


@cli.command(name="parse")
@click.argument("expression")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
def parse(expression: str, json_output: bool, debug: bool) -> None:
    """Validate an expression without contacting Consul.

    \b
    Examples:
        evergreen-consul parse 'kv?key=services/email'
        evergreen-consul parse '$consul:health.service?service=email&mode=watch'
    """
    configure_logging(debug)
    try:
        request = parse_expression(strip_prefix(expression))
    except Exception as e:
        output_error(e, json_output, debug)
        return

    output_result({"method": request.method, "options": dict(request.options)}, json_output)


@cli.command(name="get")
@click.argument("expression")
@click.option("--uri", help="Consul URI, overrides EV_CONSUL_URI")
@click.option("--config", "config_file", type=click.Path(exists=True), help="Path to YAML config")
@click.option("--json-output", is_flag=True, help="Output in JSON format")
@click.option("--debug", is_flag=True, help="Show detailed debug information")
def get(
    expression: str,
    uri: str | None,
    config_file: str | None,
    json_output: bool,
    debug: bool,
) -> None:
    """Resolve an expression against Consul.

    With mode=watch, every change is printed until interrupted.

    \b
    Examples:
        evergreen-consul get 'kv?key=services/email'
        evergreen-consul get 'health.service?service=email&mode=watch' --uri http://consul:8500
    """
    configure_logging(debug)
    try:
        if uri:
            config = parse_consul_uri(uri)
        else:
            config = load_consul_config(Path(config_file) if config_file else None)
        asyncio.run(_get_async(strip_prefix(expression), config, json_output))
    except KeyboardInterrupt:
        if not json_output:
            click.echo("\nOperation cancelled by user", err=True)
        raise click.Abort() from None
    except click.ClickException:
        raise
    except Exception as e:
        output_error(e, json_output, debug)


async def _get_async(expression: str, config: ConsulConfigModel, json_output: bool) -> None:
    """Async implementation of the get command."""
    with ConsulDirective(config) as directive:
        manager = await directive.resolve(expression)

        if manager.has_value():
            output_result(manager.current_value(), json_output)
        elif not json_output:
            click.echo("No value (initial fetch failed, ignoreStartupNodata is set)", err=True)

        if not manager.watching:
            return

        manager.on(StateEvent.CHANGE, lambda value: output_result(value, json_output))
        manager.on(StateEvent.ERROR, lambda error: click.echo(f"Watch error: {error}", err=True))
        try:
            await asyncio.Event().wait()
        finally:
            await manager.end_watch()


def main() -> None:
    cli(prog_name="evergreen-consul")


if __name__ == "__main__":
    sys.exit(main())
