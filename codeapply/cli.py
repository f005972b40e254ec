"""CLI entrypoint (Typer).

Commands:
- `codeapply serve`                       run the API server
- `codeapply parse response.txt`          show what a response would change
- `codeapply apply response.txt --sandbox-id ID`
                                          apply through a running server and
                                          stream its progress
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import List, Optional

import httpx
import typer

from codeapply.config import get_settings
from codeapply.parsing.response import parse_ai_response
from codeapply.pipeline.edits import parse_morph_edits
from codeapply.pipeline.progress import EventStreamBuffer, summarize_events


app = typer.Typer(help="Apply AI-generated code to live sandboxes.")


def _read_response(file: Path) -> str:
    if not file.exists():
        typer.echo(f"File not found: {file}", err=True)
        raise typer.Exit(code=2)
    return file.read_text(encoding="utf-8")


def _describe(event: dict) -> str:
    event_type = event.get("type", "?")
    for key in ("message", "fileName", "command", "output", "error"):
        if event.get(key):
            return f"[{event_type}] {event[key]}".rstrip()
    return f"[{event_type}]"


@app.command()
def serve(
    host: Optional[str] = typer.Option(None, help="Bind address"),
    port: Optional[int] = typer.Option(None, help="Port"),
    reload: bool = typer.Option(False, help="Auto-reload on code changes"),
):
    """Run the API server."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "codeapply.api.main:app",
        host=host or settings.api_host,
        port=port or settings.api_port,
        reload=reload,
        log_level=settings.log_level.lower(),
    )


@app.command()
def parse(
    file: Path = typer.Argument(..., help="File containing a raw AI response"),
    as_json: bool = typer.Option(False, "--json", help="Print the parsed result as JSON"),
):
    """Parse a saved AI response and show files, packages and commands."""
    text = _read_response(file)
    parsed = parse_ai_response(text)
    edits = parse_morph_edits(text)

    if as_json:
        payload = {**parsed.to_wire(), "edits": [e.to_wire() for e in edits]}
        typer.echo(json.dumps(payload, indent=2))
        return

    typer.echo(f"Files ({len(parsed.files)}):")
    for f in parsed.files:
        marker = "" if f.complete else "  (truncated)"
        typer.echo(f"  {f.path}  {len(f.content)} chars{marker}")
    typer.echo(f"Packages: {', '.join(parsed.packages) or '-'}")
    typer.echo(f"Commands: {', '.join(parsed.commands) or '-'}")
    if edits:
        typer.echo(f"Edits: {', '.join(e.target_file for e in edits)}")
    if parsed.explanation:
        typer.echo(f"Explanation: {parsed.explanation}")


@app.command()
def apply(
    file: Path = typer.Argument(..., help="File containing a raw AI response"),
    sandbox_id: str = typer.Option(..., "--sandbox-id", help="Target sandbox id"),
    edit: bool = typer.Option(False, "--edit", help="Treat the response as an edit"),
    package: Optional[List[str]] = typer.Option(None, "--package", help="Extra package to install"),
    url: Optional[str] = typer.Option(None, "--url", help="Server base URL"),
):
    """Apply a saved AI response through a running server."""
    settings = get_settings()
    base_url = url or f"http://localhost:{settings.api_port}"
    body = {
        "response": _read_response(file),
        "isEdit": edit,
        "sandboxId": sandbox_id,
        "packages": list(package or []),
    }

    buffer = EventStreamBuffer()
    events: list[dict] = []
    try:
        with httpx.Client(base_url=base_url, timeout=None) as client:
            with client.stream("POST", "/api/apply-ai-code-stream", json=body) as response:
                if response.is_error:
                    response.read()
                    typer.echo(f"Server returned {response.status_code}: {response.text}", err=True)
                    raise typer.Exit(code=1)
                for chunk in response.iter_text():
                    for event in buffer.add_chunk(chunk):
                        events.append(event)
                        typer.echo(_describe(event))
                for event in buffer.flush():
                    events.append(event)
                    typer.echo(_describe(event))
    except httpx.HTTPError as e:
        typer.echo(f"Request failed: {e}", err=True)
        raise typer.Exit(code=1)

    summary = summarize_events(events)
    if summary.failed:
        typer.echo(f"Failed: {summary.error}", err=True)
        raise typer.Exit(code=1)
    if summary.completed:
        result = summary.result
        if result is not None:
            typer.echo(
                f"Done: {len(result.files_created)} created, {len(result.files_updated)} updated, "
                f"{len(result.errors)} errors"
            )
        return
    typer.echo("Stream ended without a final event; the apply may be partial.")


def main() -> None:
    logging.basicConfig(
        level=get_settings().log_level.upper(),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    app()


if __name__ == "__main__":
    main()
