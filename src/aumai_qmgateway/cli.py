"""CLI entry point for aumai-qmgateway."""

from __future__ import annotations

import asyncio
import datetime
import json
import re
import sys
from typing import Any

import click

from aumai_qmgateway.audit import AuditLogger, AuditQuery
from aumai_qmgateway.config import ConfigError, GatewayConfig, load_config
from aumai_qmgateway.connector import Connector
from aumai_qmgateway.errors import GatewayError
from aumai_qmgateway.health import HealthChecker
from aumai_qmgateway.log import configure_logging
from aumai_qmgateway.models import AuditQueryOptions, CallerContext
from aumai_qmgateway.rbac import PermissionChecker


@click.group()
@click.version_option(package_name="aumai-qmgateway")
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, file_okay=True, dir_okay=False, readable=True),
    default=None,
    help="Path to the YAML configuration file (default: standard locations).",
)
@click.pass_context
def main(ctx: click.Context, config_path: str | None) -> None:
    """AumAI QM Gateway — resilient, audited access to a QM backend.

    Use 'aumai-qmgateway --help' to see available sub-commands.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    # Until a config names a level, only warnings reach stderr.
    configure_logging("warn")


# ---------------------------------------------------------------------------
# health
# ---------------------------------------------------------------------------


@main.command("health")
@click.option("--probe/--no-probe", default=True, show_default=True,
              help="Detect each endpoint's API version before reporting.")
@click.pass_context
def health_command(ctx: click.Context, probe: bool) -> None:
    """Print the health of every configured endpoint as JSON."""
    config = _load(ctx)

    async def run() -> dict[str, Any]:
        connector = Connector(config)
        try:
            if probe:
                await connector.detect_versions()
            checker = HealthChecker(connector, AuditLogger(config.audit.log_path, config.audit.enabled))
            return checker.get_health_status().model_dump(mode="json")
        finally:
            await connector.aclose()

    status = _run(run())
    click.echo(json.dumps(status, indent=2))
    if status["status"] == "unhealthy":
        sys.exit(2)


# ---------------------------------------------------------------------------
# negotiate-version
# ---------------------------------------------------------------------------


@main.command("negotiate-version")
@click.option("--endpoint", "endpoint_name", default=None,
              help="Endpoint name (default endpoint when omitted).")
@click.pass_context
def negotiate_version_command(ctx: click.Context, endpoint_name: str | None) -> None:
    """Detect and negotiate the API version of an endpoint."""
    config = _load(ctx)

    async def run() -> str:
        connector = Connector(config)
        try:
            return await connector.negotiate_version(endpoint_name)
        finally:
            await connector.aclose()

    click.echo(_run(run()))


# ---------------------------------------------------------------------------
# check-permission
# ---------------------------------------------------------------------------


@main.command("check-permission")
@click.option("--role", "roles", multiple=True, help="Role name (repeatable).")
@click.option("--permission", required=True, help="Permission, e.g. 'write:lots'.")
@click.pass_context
def check_permission_command(ctx: click.Context, roles: tuple[str, ...], permission: str) -> None:
    """Check whether a set of roles grants a permission."""
    config = _load(ctx)
    checker = PermissionChecker(config.roles)
    try:
        checker.check(permission, CallerContext(roles=roles))
    except GatewayError as exc:
        click.echo(click.style(f"DENY  {permission}: {exc.message}", fg="red"))
        sys.exit(1)
    click.echo(click.style(f"ALLOW {permission}", fg="green"))


# ---------------------------------------------------------------------------
# audit
# ---------------------------------------------------------------------------


@main.command("audit")
@click.option(
    "--since",
    "since_spec",
    default=None,
    help="Only entries from the last N seconds/minutes/hours/days (e.g. '30m', '2h', '7d').",
)
@click.option("--start", "start_date", default=None, help="Start (ISO 8601, inclusive).")
@click.option("--end", "end_date", default=None, help="End (ISO 8601, inclusive).")
@click.option("--user", "user_id", default=None, help="Filter by user id.")
@click.option("--tool", "tool", default=None, help="Filter by tool name.")
@click.option("--operation", type=click.Choice(["read", "write"]), default=None)
@click.option("--entity-type", default=None)
@click.option("--entity-id", default=None)
@click.option("--limit", type=click.IntRange(1, 1000), default=100, show_default=True)
@click.option("--offset", type=click.IntRange(min=0), default=0, show_default=True)
@click.option(
    "--output",
    "output_format",
    type=click.Choice(["text", "json"]),
    default="text",
    show_default=True,
)
@click.option(
    "--log-path",
    "log_path",
    default=None,
    help="Audit directory (default: audit.log_path from configuration).",
)
@click.pass_context
def audit_command(
    ctx: click.Context,
    since_spec: str | None,
    start_date: str | None,
    end_date: str | None,
    user_id: str | None,
    tool: str | None,
    operation: str | None,
    entity_type: str | None,
    entity_id: str | None,
    limit: int,
    offset: int,
    output_format: str,
    log_path: str | None,
) -> None:
    """Search the audit trail."""
    if log_path is None:
        log_path = _load(ctx).audit.log_path

    if since_spec is not None and start_date is None:
        since = datetime.datetime.now(datetime.UTC) - _parse_duration(since_spec)
        start_date = since.isoformat()

    try:
        options = AuditQueryOptions.model_validate(
            {
                "start_date": start_date,
                "end_date": end_date,
                "user_id": user_id,
                "tool": tool,
                "operation": operation,
                "entity_type": entity_type,
                "entity_id": entity_id,
                "limit": limit,
                "offset": offset,
            }
        )
    except ValueError as exc:
        click.echo(click.style(f"invalid filter: {exc}", fg="red"), err=True)
        sys.exit(1)

    result = _run(AuditQuery(log_path).query(options))

    if output_format == "json":
        click.echo(json.dumps(result.model_dump(mode="json", exclude_none=True), indent=2))
        return

    if not result.entries:
        click.echo(f"No audit entries in {log_path}")
        return

    click.echo(f"Audit log — showing {len(result.entries)} of {result.total} entries")
    click.echo("-" * 70)
    for entry in result.entries:
        status = "OK  " if entry.result == "success" else "FAIL"
        color = "green" if entry.result == "success" else "red"
        entity = ""
        if entry.entity_type:
            entity = f" entity={entry.entity_type}"
            if entry.entity_id:
                entity += f"/{entry.entity_id}"
        suffix = f" — {entry.error}" if entry.error else ""
        click.echo(
            click.style(
                f"  [{status}] {entry.timestamp.isoformat()} "
                f"tool={entry.tool} op={entry.operation.value} "
                f"user={entry.user_id or '-'}{entity}{suffix}",
                fg=color,
            )
        )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _load(ctx: click.Context) -> GatewayConfig:
    try:
        config = load_config(ctx.obj.get("config_path"))
    except ConfigError as exc:
        click.echo(click.style(str(exc), fg="red"), err=True)
        sys.exit(1)
    configure_logging(config.server.log_level)
    return config


def _run(coro: Any) -> Any:
    try:
        return asyncio.run(coro)
    except GatewayError as exc:
        click.echo(click.style(f"{exc.kind.value}: {exc.message}", fg="red"), err=True)
        sys.exit(1)


def _parse_duration(spec: str) -> datetime.timedelta:
    """Parse a duration string like '30m', '2h', '7d', '3600s' into a timedelta."""
    pattern = re.compile(r"^(\d+(?:\.\d+)?)\s*([smhd]?)$", re.IGNORECASE)
    match = pattern.match(spec.strip())
    if not match:
        raise click.BadParameter(
            f"Invalid duration '{spec}'."
            " Expected format: <number>[s|m|h|d], e.g. '30m', '2h', '7d'."
        )
    value = float(match.group(1))
    unit = match.group(2).lower()
    multiplier = {"s": 1, "m": 60, "h": 3600, "d": 86400, "": 1}
    return datetime.timedelta(seconds=value * multiplier[unit])


if __name__ == "__main__":
    main()
