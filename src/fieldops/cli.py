from __future__ import annotations

import json
import logging
from typing import Optional

import typer
import uvicorn

from fieldops import __version__
from fieldops.config import get_settings
from fieldops.exceptions.handlers import ConfigurationError
from fieldops.meta_engine.bootstrap import AccessControl, bootstrap_access_control
from fieldops.meta_engine.schemas.access import Operation

app = typer.Typer(add_completion=False, help="FieldOps access core CLI")


def _configure_logging() -> None:
    logging.basicConfig(
        level=get_settings().LOG_LEVEL.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _load(fallback: bool) -> AccessControl:
    settings = get_settings()
    if fallback:
        settings = settings.model_copy(update={"ROLE_SOURCE": "fallback"})
    try:
        return bootstrap_access_control(settings=settings)
    except ConfigurationError as exc:
        typer.echo(f"Configuration error: {exc.message}", err=True)
        for problem in exc.details.get("errors", []):
            typer.echo(f"  - {problem}", err=True)
        raise typer.Exit(code=1) from exc


@app.callback()
def _root() -> None:
    _configure_logging()


@app.command()
def start(
    host: Optional[str] = typer.Option(None, help="Bind host"),
    port: Optional[int] = typer.Option(None, help="Bind port"),
    reload: bool = typer.Option(False, help="Auto-reload on changes (dev)"),
) -> None:
    settings = get_settings()
    uvicorn.run(
        "fieldops.api.app:app",
        host=host or settings.HOST,
        port=port or settings.PORT,
        reload=reload,
    )


@app.command()
def version() -> None:
    typer.echo(__version__)


@app.command()
def check(
    fallback: bool = typer.Option(False, help="Use the built-in role table instead of the database"),
) -> None:
    """Validate entity metadata, the permission matrix and RLS coverage."""
    access = _load(fallback)
    issues = access.check()
    if issues:
        for issue in issues:
            typer.echo(f"- {issue}", err=True)
        raise typer.Exit(code=1)
    typer.echo(
        f"OK: {len(access.registry)} entities, {len(access.matrix.resources())} resources, "
        f"roles {', '.join(access.hierarchy.role_names())}"
    )


@app.command()
def matrix(
    fallback: bool = typer.Option(False, help="Use the built-in role table instead of the database"),
    as_json: bool = typer.Option(False, "--json", help="Print JSON"),
) -> None:
    """Print the minimum role per resource and operation."""
    access = _load(fallback)
    table = access.matrix.as_table()
    if as_json:
        typer.echo(json.dumps(table, indent=2, sort_keys=True))
        return
    ops = [op.value for op in Operation]
    typer.echo("resource".ljust(18) + "".join(op.ljust(12) for op in ops))
    for resource in sorted(table):
        row = table[resource]
        typer.echo(resource.ljust(18) + "".join((row.get(op) or "-").ljust(12) for op in ops))


@app.command()
def explain(
    role: str = typer.Argument(..., help="Role name"),
    resource: str = typer.Argument(..., help="Resource, e.g. work_orders"),
    operation: Operation = typer.Argument(..., help="create|read|update|delete"),
    fallback: bool = typer.Option(False, help="Use the built-in role table instead of the database"),
) -> None:
    """Show the permission decision and RLS policy for one role/resource/operation."""
    access = _load(fallback)
    decision = access.matrix.explain(role, resource, operation)
    policy = access.rls.get_policy(role, resource)
    typer.echo(
        json.dumps(
            {
                "allowed": decision.allowed,
                "reason": decision.reason,
                "resource": decision.resource,
                "operation": decision.operation.value,
                "minimum_role": decision.minimum_role,
                "rls_policy": policy.value if policy else None,
            },
            indent=2,
        )
    )
    if not decision.allowed:
        raise typer.Exit(code=2)


def main() -> None:  # pragma: no cover
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
