"""CLI entrypoint (Typer).

- `gitferry serve` runs the API
- the other commands talk to a running API over HTTP:
  `gitferry submit run.json`, `gitferry status <run_id>`, `gitferry runs`,
  `gitferry stats [--global]`, `gitferry cancel <operation_id>`,
  `gitferry cleanup --days 30`
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Optional

import httpx
import typer

from gitferry.config import get_settings

app = typer.Typer(help="gitferry: move code from GitHub into GitLab merge requests.")

API_URL_OPTION = typer.Option("http://localhost:8000", "--api-url", envvar="GITFERRY_API_URL")
OWNER_OPTION = typer.Option(..., "--owner", envvar="GITFERRY_OWNER_ID", help="Owner id sent as X-Owner-Id")
ADMIN_TOKEN_OPTION = typer.Option("", "--admin-token", envvar="GITFERRY_ADMIN_TOKEN")


def _call(
    method: str,
    api_url: str,
    path: str,
    owner: str | None = None,
    admin_token: str = "",
    **kwargs: Any,
) -> Any:
    headers: dict[str, str] = {}
    if owner:
        headers["X-Owner-Id"] = owner
    if admin_token:
        headers["X-Admin-Token"] = admin_token

    try:
        response = httpx.request(
            method, f"{api_url.rstrip('/')}/api{path}", headers=headers, timeout=30.0, **kwargs
        )
    except httpx.HTTPError as e:
        typer.echo(f"Could not reach {api_url}: {e}", err=True)
        raise typer.Exit(code=2)

    body = response.json() if response.content else None
    if response.is_error:
        error = (body or {}).get("error", {}) if isinstance(body, dict) else {}
        typer.echo(f"{response.status_code} {error.get('type', 'ERROR')}: {error.get('message', response.text)}", err=True)
        raise typer.Exit(code=1)
    return body


def _print(data: Any) -> None:
    typer.echo(json.dumps(data, indent=2))


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Defaults to API_HOST"),
    port: Optional[int] = typer.Option(None, help="Defaults to API_PORT"),
    reload: bool = typer.Option(False, help="Reload on code changes"),
):
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "gitferry.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
    )


@app.command()
def submit(
    config_file: Path = typer.Argument(..., exists=True, readable=True, help="Run configuration (JSON)"),
    owner: str = OWNER_OPTION,
    api_url: str = API_URL_OPTION,
):
    """Submit a pipeline run."""
    payload = json.loads(config_file.read_text(encoding="utf-8"))
    result = _call("POST", api_url, "/pipeline/runs", owner=owner, json=payload)
    typer.echo(f"Run {result['run_id']} started (progress: /api/pipeline/progress/{result['operation_id']})")


@app.command()
def status(
    run_id: str,
    owner: str = OWNER_OPTION,
    api_url: str = API_URL_OPTION,
):
    """Show a run and its steps."""
    run = _call("GET", api_url, f"/pipeline/runs/{run_id}", owner=owner)
    typer.echo(f"Run {run['id']}: {run['status']} ({run['completion_percentage']}%)")
    for step in run["steps"]:
        line = f"  {step['order']}. {step['name']:<22} {step['status']}"
        if step.get("message"):
            line += f"  {step['message']}"
        typer.echo(line)
    if run.get("error_detail"):
        typer.echo(f"Failed at {run['error_detail']['step']}: {run['error_detail']['message']}")
    if run.get("result") and run["result"].get("merge_request_url"):
        typer.echo(f"Merge request: {run['result']['merge_request_url']}")


@app.command()
def runs(
    owner: str = OWNER_OPTION,
    page: int = typer.Option(1, min=1),
    page_size: int = typer.Option(10, min=1, max=100),
    api_url: str = API_URL_OPTION,
):
    """List your runs, newest first."""
    data = _call(
        "GET", api_url, "/pipeline/runs", owner=owner, params={"page": page, "page_size": page_size}
    )
    for run in data["runs"]:
        typer.echo(f"{run['id']}  {run['status']:<12} {run['created_at']}")
    typer.echo(f"page {data['page']}/{max(data['total_pages'], 1)} ({data['total']} runs)")


@app.command()
def stats(
    owner: str = typer.Option("", "--owner", envvar="GITFERRY_OWNER_ID"),
    global_: bool = typer.Option(False, "--global", help="Stats over all owners"),
    admin_token: str = ADMIN_TOKEN_OPTION,
    api_url: str = API_URL_OPTION,
):
    """Show run statistics."""
    if global_:
        data = _call("GET", api_url, "/pipeline/stats/global", admin_token=admin_token)
    else:
        if not owner:
            typer.echo("--owner is required unless --global is given", err=True)
            raise typer.Exit(code=2)
        data = _call("GET", api_url, "/pipeline/stats", owner=owner)
    data.pop("recent_runs", None)
    _print(data)


@app.command()
def cancel(operation_id: str, api_url: str = API_URL_OPTION):
    """Cancel a running source fetch."""
    data = _call("POST", api_url, f"/pipeline/progress/{operation_id}/cancel")
    typer.echo("Cancelled" if data["cancelled"] else "No running fetch for that operation")


@app.command()
def cleanup(
    days: Optional[int] = typer.Option(None, "--days", min=1, help="Defaults to the server's retention setting"),
    admin_token: str = ADMIN_TOKEN_OPTION,
    api_url: str = API_URL_OPTION,
):
    """Delete finished runs older than N days."""
    data = _call("POST", api_url, "/pipeline/cleanup", admin_token=admin_token, json={"days_old": days})
    typer.echo(f"Deleted {data['deleted_count']} runs older than {data['days_old']} days")


def main() -> None:
    logging.basicConfig(level=logging.WARNING, format="%(levelname)s %(name)s: %(message)s")
    app()


if __name__ == "__main__":
    main()
