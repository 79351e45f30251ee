"""CLI commands for feishu-bridge."""

from __future__ import annotations

import typer
from rich.console import Console
from rich.table import Table

from feishubridge import __logo__, __version__

app = typer.Typer(
    name="feishu-bridge",
    help=f"{__logo__} feishu-bridge - Feishu/Lark webhook bridge for a local assistant CLI",
    no_args_is_help=True,
)

console = Console()


def _mark(ok: bool) -> str:
    return "[green]✓[/green]" if ok else "[red]✗[/red]"


@app.command()
def version() -> None:
    """Show the installed version."""
    console.print(f"{__logo__} feishu-bridge v{__version__}")


@app.command()
def status() -> None:
    """Show effective configuration and the resolved assistant runner."""
    from feishubridge.agent.runner import resolve_runner
    from feishubridge.errors import BridgeError
    from feishubridge.settings import get_settings

    s = get_settings()
    console.print(f"{__logo__} feishu-bridge status\n")

    table = Table(show_header=True, header_style="bold")
    table.add_column("Setting")
    table.add_column("Value")
    table.add_row("FEISHU_APP_ID", _mark(bool(s.feishu_app_id)))
    table.add_row("FEISHU_APP_SECRET", _mark(bool(s.feishu_app_secret)))
    table.add_row("FEISHU_VERIFICATION_TOKEN", _mark(bool(s.feishu_verification_token)))
    table.add_row("FEISHU_ENCRYPT_KEY", _mark(bool(s.feishu_encrypt_key)))
    table.add_row("ECHO_MODE", str(s.echo_mode))
    table.add_row("REQUIRE_MENTION_IN_GROUP", str(s.require_mention_in_group))
    table.add_row("SEND_PROCESSING_HINT", f"{s.send_processing_hint} (after {s.processing_hint_delay_seconds:g}s)")
    table.add_row("PROGRESS_PING_SECONDS", f"{s.progress_ping_seconds:g}")
    table.add_row("HARD_TIMEOUT_SECONDS", f"{s.hard_timeout_seconds:g}")
    table.add_row("GROUP_CACHE_ENABLED", f"{s.group_cache_enabled} (max {s.group_cache_max_items})")
    table.add_row("Workspace", str(s.workspace_root))
    table.add_row("Outputs", str(s.outputs_dir))
    table.add_row("Downloads", str(s.download_dir))
    console.print(table)

    try:
        runner = resolve_runner(s.assistant_mode, s.assistant_bin, s.assistant_entry)
    except BridgeError as exc:
        console.print(f"Assistant runner: {_mark(False)} {exc}")
    else:
        command = " ".join([runner.command, *runner.base_args])
        console.print(f"Assistant runner: {_mark(True)} {runner.name} ({runner.mode}) → {command}")


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind host (default: HOST or 0.0.0.0)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Bind port (default: PORT or 8787)"),
    reload: bool = typer.Option(False, "--reload", help="Auto-reload on code changes"),
) -> None:
    """Start the webhook server (FastAPI + Uvicorn)."""
    import uvicorn

    from feishubridge.settings import get_settings

    s = get_settings()
    bind_host = host or s.host
    bind_port = port or s.port
    console.print(f"{__logo__} Starting feishu-bridge on {bind_host}:{bind_port} ...")
    uvicorn.run(
        "feishubridge.api.app:create_app",
        host=bind_host,
        port=bind_port,
        reload=reload,
        factory=True,
    )


if __name__ == "__main__":
    app()
