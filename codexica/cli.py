from __future__ import annotations

import asyncio
import logging
from pathlib import Path

import aiosqlite
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from codexica.builder import BuildResult, execute_build, parse_whitelist, plan_build
from codexica.changes import ChangeReport, diff_manifests
from codexica.config import GatewayConfig, load_config
from codexica.errors import (
    ConfigError,
    DependencyError,
    ManifestBuildError,
    NotFound,
    Unauthorized,
)
from codexica.filters import build_scope_filter
from codexica.gateway import Gateway
from codexica.hash_cache import cache_files, load_hashes, replace_hashes


USAGE_EXIT_CODE = 2

app = typer.Typer(
    help="codexica: opaque-identifier manifests and per-principal file resolution",
    context_settings={"help_option_names": ["-h", "--help"]},
)
console = Console()
err_console = Console(stderr=True)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False, rich_tracebacks=False)],
        force=True,
    )


def _render_minted(report: ChangeReport) -> None:
    if not report.minted:
        return

    table = Table(title="New identifiers")
    table.add_column("Path")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    table.add_column("UUID")

    for entry in report.minted:
        table.add_row(entry.path, entry.content_type, str(entry.size), entry.identifier)

    console.print(table)


def _render_revoked(report: ChangeReport) -> None:
    if not report.revoked:
        return
    console.print(Text(f"Revoked identifiers ({len(report.revoked)}):", style="yellow"))
    for path, identifier in report.revoked:
        console.print(f"  {identifier}  {path}")


def _print_build_result(result: BuildResult, *, show_changes: bool) -> None:
    stats = result.manifest.stats
    console.print(f"[green]Wrote manifest:[/green] {result.output}")
    console.print(
        f"Stats: entries={stats.total_entries} files={stats.total_files} "
        f"dirs={stats.total_dirs} bytes={stats.total_bytes}"
    )
    if not result.prior_table:
        return

    report = diff_manifests(result.prior_table, result.manifest)
    console.print(
        f"Identifiers: carried={len(report.carried)} minted={len(report.minted)} "
        f"revoked={len(report.revoked)}"
    )
    if show_changes:
        _render_minted(report)
        _render_revoked(report)


async def _build_async(
    root: Path,
    new: Path,
    old: Path | None,
    whitelist: str | None,
    include: tuple[str, ...],
    exclude: tuple[str, ...],
    hash_cache: Path | None,
    *,
    lockdown: bool,
    progress: bool,
    show_changes: bool,
) -> int:
    try:
        plan = plan_build(
            root,
            new,
            prior=old,
            whitelist=parse_whitelist(whitelist),
            scope_filter=build_scope_filter(include, exclude),
            lockdown=lockdown,
            exclude_paths=cache_files(hash_cache) if hash_cache is not None else (),
        )

        # The cache is opened only once the checks above have passed.
        previous_hashes = None
        if hash_cache is not None:
            previous_hashes = await load_hashes(hash_cache, plan.root)

        # Scanning and hashing are synchronous; only the cache is awaited.
        result = execute_build(
            plan,
            previous_hashes=previous_hashes,
            console=console if progress else None,
        )

        if hash_cache is not None:
            cached = await replace_hashes(hash_cache, plan.root, result.scanned)
            logging.getLogger(__name__).debug("Hash cache refreshed with %d file(s)", cached)
    except KeyboardInterrupt:
        err_console.print("[yellow]Build interrupted.[/yellow] The previous manifest was left in place.")
        return 130
    except DependencyError as exc:
        err_console.print(f"[red]Missing dependency:[/red] {exc}")
        return USAGE_EXIT_CODE
    except (ConfigError, ManifestBuildError) as exc:
        err_console.print(f"[red]{exc}[/red]")
        return USAGE_EXIT_CODE
    except (OSError, aiosqlite.Error) as exc:
        err_console.print(f"[red]Build failed:[/red] {exc}")
        return USAGE_EXIT_CODE

    _print_build_result(result, show_changes=show_changes)
    return 0


@app.command()
def build(
    root: Path = typer.Option(
        ...,
        "--root",
        "-r",
        help="Root of storage (e.g. /srv/data). The root itself is never written into the manifest.",
    ),
    new: Path = typer.Option(
        ...,
        "--new",
        "-n",
        help="Manifest file to create (written atomically, left read-only).",
    ),
    old: Path | None = typer.Option(
        None,
        "--old",
        "-o",
        help="Previous manifest used to reuse UUIDs: same path + hash keeps the same UUID.",
    ),
    whitelist: str | None = typer.Option(
        None,
        "--whitelist",
        "-w",
        help="Comma-separated top-level folders under ROOT to index, e.g. 'A,B,C'.",
    ),
    include: list[str] | None = typer.Option(
        None,
        "--include",
        help="Include glob pattern(s) for files to index (repeatable).",
    ),
    exclude: list[str] | None = typer.Option(
        None,
        "--exclude",
        help="Exclude glob pattern(s) for files or folders to skip (repeatable).",
    ),
    hash_cache: Path | None = typer.Option(
        None,
        "--hash-cache",
        help="SQLite file caching hashes of unchanged files between builds.",
    ),
    lockdown: bool = typer.Option(
        True,
        "--lockdown/--no-lockdown",
        help="Force 0444 on files and 0555 on directories within the indexed scope.",
    ),
    progress: bool = typer.Option(
        False,
        "--progress/--no-progress",
        help="Show a progress bar while hashing.",
    ),
    changes: bool = typer.Option(
        False,
        "--changes",
        help="List minted and revoked identifiers compared with --old.",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Build a manifest for a storage tree (UUID + hash + metadata)."""
    _configure_logging(verbose)
    raise typer.Exit(
        code=asyncio.run(
            _build_async(
                root,
                new,
                old,
                whitelist,
                tuple(include or ()),
                tuple(exclude or ()),
                hash_cache,
                lockdown=lockdown,
                progress=progress,
                show_changes=changes,
            )
        )
    )


def _gateway_config(acl: Path | None, storage_root: Path | None) -> GatewayConfig:
    config = load_config()
    if acl is not None:
        config.acl_path = str(acl)
    if storage_root is not None:
        config.storage_root = str(storage_root)
    return config.validate()


@app.command()
def view(
    principal: str = typer.Option(
        "",
        "--principal",
        envvar="REMOTE_USER",
        help="Authenticated principal. Defaults to REMOTE_USER from the upstream auth layer.",
    ),
    acl: Path | None = typer.Option(None, "--acl", help="ACL document to use instead of the configured one."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Show the merged manifest view for a principal."""
    _configure_logging(verbose)
    try:
        gateway = Gateway(_gateway_config(acl, None))
        view_ = gateway.access.resolve_view(principal)
    except Unauthorized:
        err_console.print("[red]Unauthorized[/red]")
        raise typer.Exit(code=1)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=USAGE_EXIT_CODE)

    table = Table(title=f"Entries visible to {view_.principal}")
    table.add_column("UUID")
    table.add_column("Path")
    table.add_column("Type")
    table.add_column("Size", justify="right")
    for entry in view_.entries:
        table.add_row(entry.identifier, entry.path, entry.content_type, str(entry.size))
    console.print(table)

    stats = view_.stats
    console.print(f"Buckets: {', '.join(view_.buckets) or '(none)'}")
    console.print(
        f"Stats: files={stats.total_files} dirs={stats.total_dirs} bytes={stats.total_bytes}"
    )


@app.command()
def resolve(
    token: str = typer.Argument(..., help="Capability token (UUID) to resolve."),
    principal: str = typer.Option(
        "",
        "--principal",
        envvar="REMOTE_USER",
        help="Authenticated principal. Defaults to REMOTE_USER from the upstream auth layer.",
    ),
    acl: Path | None = typer.Option(None, "--acl", help="ACL document to use instead of the configured one."),
    storage_root: Path | None = typer.Option(None, "--root", "-r", help="Storage root to resolve against."),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Enable debug logging."),
) -> None:
    """Resolve a capability token to a file for a principal."""
    _configure_logging(verbose)
    try:
        gateway = Gateway(_gateway_config(acl, storage_root))
        resolved = gateway.resolve(principal, token)
    except NotFound:
        err_console.print("Not found")
        raise typer.Exit(code=1)
    except Unauthorized:
        err_console.print("[red]Unauthorized[/red]")
        raise typer.Exit(code=1)
    except ConfigError as exc:
        err_console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=USAGE_EXIT_CODE)

    console.print(str(resolved.path), highlight=False, soft_wrap=True)
    console.print(f"Type: {resolved.content_type} | Size: {resolved.size}", highlight=False)


def main() -> None:
    app()
