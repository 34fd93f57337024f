"""Command-line interface for the duplicate reconciliation service."""

from __future__ import annotations

import json
from contextlib import closing
from typing import Any, Optional

import typer

from .errors import ReconciliationError
from .logging import get_logger
from .models import Credential
from .runtime import build_runtime
from .service import build_request

logger = get_logger(__name__)

app = typer.Typer(add_completion=False, help="DIAN duplicate-invoice reconciliation")


@app.command("authenticate")
def authenticate_command(
    credential_url: str = typer.Option(..., "--credential-url", help="Portal URL carrying pk and token"),
) -> None:
    runtime = build_runtime()
    with closing(runtime):
        result = _run(lambda: runtime.service.authenticate(Credential.from_url(credential_url)))
        _echo(result)


@app.command("fetch")
def fetch_command(
    track_id: str = typer.Option(..., "--track-id", help="CUFE of the document to download"),
    credential_url: Optional[str] = typer.Option(
        None,
        "--credential-url",
        help="Authenticate first with this URL",
    ),
    session_id: Optional[str] = typer.Option(
        None,
        "--session-id",
        help="Reuse a session returned by the authenticate command",
    ),
) -> None:
    if bool(credential_url) == bool(session_id):
        raise typer.BadParameter("Provide exactly one of --credential-url or --session-id")

    runtime = build_runtime()
    with closing(runtime):
        if credential_url:
            result = _run(lambda: runtime.service.process(Credential.from_url(credential_url), track_id))
        else:
            result = _run(lambda: runtime.service.fetch_document(track_id, session_id))
        _echo(result)


@app.command("reconcile")
def reconcile_command(
    owner: str = typer.Option(..., "--owner", help="Numeric identification number of the ledger owner"),
    date_from: str = typer.Option(..., "--from", help="Window start (YYYY-MM-DD)"),
    date_to: str = typer.Option(..., "--to", help="Window end (YYYY-MM-DD)"),
    credential_url: str = typer.Option(..., "--credential-url", help="Portal URL carrying pk and token"),
    limit: Optional[int] = typer.Option(
        None,
        "--limit",
        help="Cap the duplicate query; results are not representative",
    ),
) -> None:
    runtime = build_runtime()
    with closing(runtime):
        report = _run(
            lambda: runtime.service.reconcile(build_request(owner, date_from, date_to, credential_url, limit))
        )
        _echo(report.to_dict())
        if report.stats.errors:
            raise typer.Exit(code=2)


@app.command("service")
def service_command(
    host: str = typer.Option("0.0.0.0", "--host", help="Service bind host"),
    port: int = typer.Option(8000, "--port", help="Service port"),
) -> None:
    import uvicorn

    uvicorn.run(
        "dian_dedup.app:create_app",
        host=host,
        port=port,
        factory=True,
        log_level="info",
    )


def _run(action) -> Any:
    try:
        return action()
    except ReconciliationError as exc:
        logger.error("command_failed", code=exc.code, error=str(exc))
        typer.echo(json.dumps(exc.to_dict(), ensure_ascii=False), err=True)
        raise typer.Exit(code=1) from exc


def _echo(payload: dict) -> None:
    typer.echo(json.dumps(payload, ensure_ascii=False, indent=2, default=str))


def main():
    app()


if __name__ == "__main__":  # pragma: no cover
    main()
