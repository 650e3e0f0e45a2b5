"""CLI interface for drivesync."""

import logging
from pathlib import Path
from typing import Any, Optional

import click

from . import __version__
from .api import DriveClient
from .auth import StaticTokenProvider
from .cli_progress import run_sync_with_progress
from .config import config
from .exceptions import DriveAPIError, DriveSyncError
from .output import OutputFormatter
from .sync import (
    ConflictPolicy,
    CycleSummary,
    StateStore,
    SyncAction,
    SyncConfigError,
    SyncEngine,
    SyncPair,
    load_sync_pairs_from_json,
)

logger = logging.getLogger(__name__)

ACTION_SYMBOLS = {
    SyncAction.UPLOAD: "↑",
    SyncAction.DOWNLOAD: "↓",
    SyncAction.DELETE_LOCAL: "✗",
    SyncAction.DELETE_REMOTE: "✗",
    SyncAction.CREATE_LOCAL_DIR: "+",
    SyncAction.CREATE_REMOTE_DIR: "+",
    SyncAction.RENAME: "⇄",
    SyncAction.CONFLICT: "!",
}


def require_token(ctx: Any, out: OutputFormatter) -> str:
    """Return the access token from --token or the config, or exit."""
    token = ctx.obj.get("token") or config.token
    if not token:
        out.error(
            "No access token configured. "
            "Run 'drivesync init' or set DRIVESYNC_TOKEN."
        )
        ctx.exit(1)
    return token


def create_client(token: str) -> DriveClient:
    return DriveClient(token_provider=StaticTokenProvider(token))


@click.group()
@click.option("--token", "-t", envvar="DRIVESYNC_TOKEN", help="Drive access token")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-essential output")
@click.option("--json", is_flag=True, help="Output in JSON format")
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose/debug logging output",
)
@click.version_option(version=__version__)
@click.pass_context
def main(
    ctx: Any,
    token: Optional[str],
    quiet: bool,
    json: bool,
    verbose: bool,
) -> None:
    """drivesync - Keep local folders and Google Drive folders in sync."""
    ctx.ensure_object(dict)
    ctx.obj["token"] = token
    ctx.obj["out"] = OutputFormatter(json_output=json, quiet=quiet)
    ctx.obj["verbose"] = verbose

    if verbose:
        logging.basicConfig(
            level=logging.DEBUG,
            format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%H:%M:%S",
        )
        logging.getLogger("drivesync").setLevel(logging.DEBUG)
    else:
        logging.basicConfig(level=logging.WARNING)


@main.command()
@click.option(
    "--token",
    "-t",
    prompt="Enter your Drive access token",
    hide_input=True,
    help="Drive access token",
)
@click.pass_context
def init(ctx: Any, token: str) -> None:
    """Initialize drivesync configuration.

    Stores your access token in ~/.config/drivesync/config.json for future use.
    """
    out: OutputFormatter = ctx.obj["out"]

    out.info("Validating access token...")
    client = create_client(token)
    try:
        about = client.get_about()
        user = about.get("user", {}) if isinstance(about, dict) else {}
        out.success(f"✓ Token is valid ({user.get('emailAddress', 'unknown user')})")
    except DriveAPIError as e:
        out.error(f"Token validation failed: {e}")
        if not click.confirm("Save token anyway?", default=False):
            out.warning("Configuration cancelled.")
            ctx.exit(1)
    finally:
        client.close()

    try:
        config.save_token(token)
    except OSError as e:
        out.error(f"Failed to save configuration: {e}")
        ctx.exit(1)

    out.print_summary(
        "Initialization Complete",
        [
            ("Status", "✓ Configuration saved successfully"),
            ("Config file", str(config.get_config_path())),
        ],
    )


def _resolve_pairs(
    ctx: Any,
    out: OutputFormatter,
    path: Optional[str],
    remote_folder: Optional[str],
    config_file: Optional[str],
    policy: Optional[str],
) -> list[SyncPair]:
    """Build the sync pairs of the sync command from its arguments."""
    if config_file:
        if path or remote_folder:
            out.error("Cannot combine --config with PATH or --remote-folder")
            ctx.exit(1)
        try:
            pairs = load_sync_pairs_from_json(Path(config_file))
        except SyncConfigError as e:
            out.error(str(e))
            ctx.exit(1)
        if policy:
            for pair in pairs:
                pair.conflict_policy = ConflictPolicy(policy)
        return pairs

    if not path:
        out.error("Specify a local PATH or --config FILE")
        ctx.exit(1)
        return []

    pair = _pair_from_args(path, remote_folder)
    if policy:
        pair.conflict_policy = ConflictPolicy(policy)
    return [pair]


def _display_summary(out: OutputFormatter, summary: CycleSummary) -> None:
    """Print the plan (dry run) or result of one cycle."""
    if summary.dry_run:
        out.info(f"Plan for {summary.local_path}:")
        actions = [d for d in summary.plan if d.action != SyncAction.NOOP]
        if not actions:
            out.info("  Everything is in sync")
        for decision in actions:
            symbol = ACTION_SYMBOLS.get(decision.action, " ")
            out.info(
                f"  {symbol} {decision.action.value}: {decision.relative_path} "
                f"({decision.reason})"
            )

    for conflict in summary.conflicts:
        if conflict.renamed_to:
            out.warning(
                f"Conflict on {conflict.relative_path}: other version kept as "
                f"{conflict.renamed_to}"
            )
        elif conflict.resolution is None:
            out.warning(f"Unresolved conflict on {conflict.relative_path}")

    for error in summary.errors:
        out.error(error)

    stats = summary.stats
    title = "Dry Run" if summary.dry_run else "Sync Complete"
    if summary.aborted:
        title = "Sync Cancelled" if summary.abort_reason == "cancelled" else "Sync Aborted"
    items = [
        ("Local", summary.local_path),
        ("Remote folder", summary.remote_folder_id),
        ("Uploaded", str(stats.get("uploads", 0))),
        ("Downloaded", str(stats.get("downloads", 0))),
        ("Deleted locally", str(stats.get("deletes_local", 0))),
        ("Deleted remotely", str(stats.get("deletes_remote", 0))),
        ("Directories created", str(stats.get("dirs_created", 0))),
        ("Conflicts", str(stats.get("conflicts", 0))),
        ("Skipped", str(stats.get("skips", 0))),
        ("Failed", str(stats.get("failures", 0))),
        ("Duration", f"{summary.duration:.1f}s"),
    ]
    if summary.aborted and summary.abort_reason != "cancelled":
        items.append(("Reason", summary.abort_reason or "unknown"))
    out.print_summary(title, items)


@main.command()
@click.argument("path", type=str, required=False)
@click.option("--remote-folder", "-r", help="ID of the remote folder to sync with")
@click.option(
    "--config",
    "-c",
    "config_file",
    type=click.Path(exists=True, dir_okay=False),
    help="JSON file with a list of sync pairs",
)
@click.option("--dry-run", is_flag=True, help="Show what would be done without syncing")
@click.option(
    "--workers",
    type=int,
    default=None,
    help="Number of parallel transfer workers (default: from config, 4)",
)
@click.option(
    "--policy",
    type=click.Choice([p.value for p in ConflictPolicy]),
    default=None,
    help="Conflict policy (default: newest)",
)
@click.option("--no-progress", is_flag=True, help="Disable progress display")
@click.pass_context
def sync(
    ctx: Any,
    path: Optional[str],
    remote_folder: Optional[str],
    config_file: Optional[str],
    dry_run: bool,
    workers: Optional[int],
    policy: Optional[str],
    no_progress: bool,
) -> None:
    """Sync local directories with Drive folders in both directions.

    PATH: Local directory (with --remote-folder) OR literal sync pair in
    format: /local/path:FOLDER_ID

    Examples:
        drivesync sync ./docs -r 1AbCdEf
        drivesync sync /home/user/docs:1AbCdEf --dry-run
        drivesync sync --config pairs.json --policy local
    """
    out: OutputFormatter = ctx.obj["out"]
    pairs = _resolve_pairs(ctx, out, path, remote_folder, config_file, policy)

    if workers is not None and workers < 1:
        out.error("Workers must be at least 1")
        ctx.exit(1)

    token = require_token(ctx, out)
    client = create_client(token)
    engine = SyncEngine(
        client,
        state_dir=config.state_dir,
        max_workers=workers or config.max_workers,
        max_attempts=config.max_attempts,
    )

    if not out.quiet:
        for pair in pairs:
            out.info(f"Syncing: {pair}")
        if dry_run:
            out.info("Dry run: No changes will be made")
        out.print("")

    try:
        summaries = run_sync_with_progress(
            engine, pairs, dry_run, out, show_progress=not no_progress
        )
    except DriveSyncError as e:
        out.error(str(e))
        ctx.exit(1)
        return
    finally:
        client.close()

    if out.json_output:
        out.output_json([summary.to_dict() for summary in summaries])
    else:
        for summary in summaries:
            _display_summary(out, summary)

    if any(s.aborted and s.abort_reason == "cancelled" for s in summaries):
        ctx.exit(130)
    if not all(summary.success for summary in summaries):
        ctx.exit(1)


def _pair_from_args(path: str, remote_folder: Optional[str]) -> SyncPair:
    try:
        if remote_folder:
            return SyncPair(local=Path(path), remote_folder_id=remote_folder)
        return SyncPair.parse_literal(path)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="PATH") from e


@main.command()
@click.argument("path", type=str)
@click.option("--remote-folder", "-r", help="ID of the remote folder")
@click.pass_context
def status(ctx: Any, path: str, remote_folder: Optional[str]) -> None:
    """Show the stored sync state of a sync pair."""
    out: OutputFormatter = ctx.obj["out"]
    pair = _pair_from_args(path, remote_folder)

    store = StateStore(config.state_dir, pair.local, pair.remote_folder_id)
    state = store.load()
    files = [item for item in state.items.values() if not item.is_dir]
    total_size = sum(item.local.size for item in files)

    if out.json_output:
        out.output_json(
            {
                "local_path": state.local_path,
                "remote_folder_id": state.remote_folder_id,
                "last_sync": state.last_sync,
                "files": len(files),
                "directories": len(state.items) - len(files),
                "size": total_size,
                "state_file": str(store.snapshot_file),
            }
        )
        return

    if not state.items and not state.last_sync:
        out.info(f"{pair} has not been synced yet")
        return

    out.print_summary(
        "Sync Status",
        [
            ("Local", state.local_path),
            ("Remote folder", state.remote_folder_id),
            ("Last sync", state.last_sync or "never"),
            ("Files", str(len(files))),
            ("Directories", str(len(state.items) - len(files))),
            ("Size", out.format_size(total_size)),
            ("State file", str(store.snapshot_file)),
        ],
    )


@main.command("reset-state")
@click.argument("path", type=str)
@click.option("--remote-folder", "-r", help="ID of the remote folder")
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def reset_state(ctx: Any, path: str, remote_folder: Optional[str], yes: bool) -> None:
    """Forget the stored sync state of a sync pair.

    The next sync compares both sides from scratch: files that differ are
    treated as conflicts and nothing is deleted.
    """
    out: OutputFormatter = ctx.obj["out"]
    pair = _pair_from_args(path, remote_folder)

    if not yes and not click.confirm(f"Reset sync state of {pair}?", default=False):
        out.warning("Reset cancelled.")
        ctx.exit(1)

    store = StateStore(config.state_dir, pair.local, pair.remote_folder_id)
    try:
        cleared = store.clear()
    except OSError as e:
        out.error(f"Failed to reset sync state: {e}")
        ctx.exit(1)
        return

    if out.json_output:
        out.output_json({"cleared": cleared})
    elif cleared:
        out.success(f"✓ Sync state of {pair} cleared")
    else:
        out.info(f"No sync state stored for {pair}")


if __name__ == "__main__":
    main()
