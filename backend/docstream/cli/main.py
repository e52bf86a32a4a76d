"""CLI entrypoint for Docstream."""

from __future__ import annotations

import json
import math
import os
import uuid
from pathlib import Path
from typing import Optional

import requests
import typer

app = typer.Typer(name="dstr", help="Docstream command-line interface")

DEFAULT_HOST = "http://127.0.0.1:5173"
DEFAULT_CHUNK_SIZE = 2 * 1024 * 1024


def _resolve_host(override: Optional[str]) -> str:
    if override:
        return override.rstrip("/")
    env_host = os.environ.get("DSTR_HOST")
    if env_host:
        return env_host.rstrip("/")
    return DEFAULT_HOST


def _request(method: str, path: str, host: Optional[str] = None, **kwargs) -> requests.Response:
    base = _resolve_host(host)
    url = f"{base}{path}"
    kwargs.setdefault("timeout", 60)
    resp = requests.request(method, url, **kwargs)
    if not resp.ok:
        try:
            detail = resp.json()
        except ValueError:
            detail = resp.text
        typer.echo(f"Request failed ({resp.status_code}): {detail}", err=True)
        raise typer.Exit(code=1)
    return resp


def _echo_json(payload: object) -> None:
    typer.echo(json.dumps(payload, indent=2))


def _follow(channel: str, host: Optional[str]) -> dict:
    """Print progress lines until the channel closes; returns the last event."""
    last: dict = {}
    resp = _request("GET", f"/progress/{channel}", host=host, stream=True, timeout=(10, None))
    with resp:
        for line in resp.iter_lines():
            if not line:
                continue
            event = json.loads(line)
            last = event
            percent = event.get("percent")
            prefix = f"[{percent:5.1f}%]" if isinstance(percent, (int, float)) else "[  -  ]"
            typer.echo(f"{prefix} {event['type']}: {event['message']}")
    return last


@app.command()
def upload(
    path: Path = typer.Argument(..., exists=True, dir_okay=False, help="Document to upload"),
    chunk_size: int = typer.Option(DEFAULT_CHUNK_SIZE, "--chunk-size", min=1, help="Bytes per chunk"),
    priority: str = typer.Option("medium", "--priority", help="critical, high, medium or low"),
    mode: Optional[str] = typer.Option(None, "--mode", help="Chunking mode: granular or standard"),
    max_retries: Optional[int] = typer.Option(None, "--max-retries", min=0, help="Retries after a failed attempt"),
    follow: bool = typer.Option(False, "--follow", help="Stream job progress after upload"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Upload a document in chunks and queue it for processing."""
    total_bytes = path.stat().st_size
    total_chunks = max(1, math.ceil(total_bytes / chunk_size))
    upload_id = uuid.uuid4().hex
    fields: dict[str, str] = {
        "uploadId": upload_id,
        "originalName": path.name,
        "totalChunks": str(total_chunks),
        "totalBytes": str(total_bytes),
        "priority": priority,
    }
    if mode:
        fields["mode"] = mode
    if max_retries is not None:
        fields["maxRetries"] = str(max_retries)

    body: dict = {}
    with path.open("rb") as fh:
        for index in range(total_chunks):
            data = fh.read(chunk_size)
            resp = _request(
                "POST",
                "/documents/chunks",
                host=host,
                data={**fields, "chunkIndex": str(index)},
                files={"file": (path.name, data, "application/octet-stream")},
            )
            body = resp.json()
            typer.echo(f"chunk {index + 1}/{total_chunks} sent", err=True)

    _echo_json(body)
    if follow and body.get("jobId"):
        last = _follow(body["jobId"], host)
        if last.get("type") == "failed":
            raise typer.Exit(code=1)


@app.command()
def job(
    job_id: str = typer.Argument(..., help="Job identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show one job."""
    _echo_json(_request("GET", f"/jobs/{job_id}", host=host).json())


@app.command()
def jobs(
    status: Optional[str] = typer.Option(None, "--status", help="queued, active, completed or failed"),
    limit: int = typer.Option(50, "--limit", min=1),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """List jobs in dispatch order."""
    params: dict[str, object] = {"limit": limit}
    if status:
        params["status"] = status
    _echo_json(_request("GET", "/jobs", host=host, params=params).json())


@app.command()
def stats(
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Show queue counters."""
    _echo_json(_request("GET", "/jobs/stats", host=host).json())


@app.command()
def cancel(
    job_id: str = typer.Argument(..., help="Job identifier"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Cancel a queued job."""
    body = _request("DELETE", f"/jobs/{job_id}", host=host).json()
    _echo_json(body)
    if not body.get("cancelled"):
        raise typer.Exit(code=1)


@app.command("follow")
def follow_channel(
    channel: str = typer.Argument(..., help="Job id or upload id"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Stream progress events for a job or an upload."""
    _follow(channel, host)


@app.command()
def query(
    q: str = typer.Argument(..., help="Query text"),
    k: int = typer.Option(8, "--k", help="Number of results to return"),
    threshold: Optional[float] = typer.Option(None, "--threshold", help="Minimum cosine score"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Query the semantic index."""
    payload: dict[str, object] = {"query": q, "k": k}
    if threshold is not None:
        payload["threshold"] = threshold
    _echo_json(_request("POST", "/query", host=host, json=payload).json())


@app.command()
def similar(
    document_id: str = typer.Argument(..., help="Document identifier"),
    k: int = typer.Option(5, "--k", help="Number of documents to return"),
    host: Optional[str] = typer.Option(None, "--host", help="Override backend host"),
) -> None:
    """Find documents similar to a processed document."""
    _echo_json(_request("GET", f"/documents/{document_id}/similar", host=host, params={"k": k}).json())


if __name__ == "__main__":
    app()
