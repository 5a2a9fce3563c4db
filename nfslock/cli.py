"""Typer CLI wiring for nfslock."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import List, Optional

import typer

from nfslock import __version__
from nfslock.cache import uncache as uncache_path
from nfslock.claim import read_owner_lines
from nfslock.config import configure, get_settings, load_settings
from nfslock.errors import NFSLockError
from nfslock.handle import acquire
from nfslock.logging import configure_logging, get_logger, log_exceptions
from nfslock.naming import is_claim_token, lock_path_for
from nfslock.records import LockType

app = typer.Typer(help="NFS-safe file locking built on hard links")

logger = get_logger(__name__)


def _version_callback(value: bool) -> None:
    """Print the nfslock package version when requested."""

    if value:
        typer.echo(f"nfslock {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the nfslock version and exit.",
        callback=_version_callback,
        is_eager=True,
    ),
    log_level: str = typer.Option(
        "",
        "--log-level",
        help="Set the log level (e.g. info, debug). Overrides NFSLOCK_LOG_LEVEL.",
    ),
    config: Optional[Path] = typer.Option(
        None,
        "--config",
        "-c",
        exists=True,
        file_okay=True,
        dir_okay=False,
        resolve_path=True,
        help="YAML file with a 'lock' settings section.",
    ),
) -> None:
    """Global callback to wire shared options like --version."""

    configure_logging(log_level or None)
    if config is not None:
        configure(load_settings(config))


def _fail(exc: Exception) -> None:
    typer.echo(f"nfslock: {exc}", err=True)
    raise typer.Exit(code=1)


@app.command()
def run(
    target: Path = typer.Argument(..., help="File to lock."),
    command: List[str] = typer.Argument(..., help="Command to run while holding the lock."),
    shared: bool = typer.Option(False, "--shared", "-s", help="Take a shared lock."),
    nonblocking: bool = typer.Option(
        False, "--nonblocking", "-n", help="Fail at once if the lock is held."
    ),
    timeout: Optional[float] = typer.Option(
        None, "--timeout", "-t", help="Seconds to wait for the lock."
    ),
    stale: Optional[float] = typer.Option(
        None, "--stale", help="Break lock objects older than this many seconds."
    ),
) -> None:
    """Run COMMAND while holding a lock on TARGET."""

    lock_type = LockType.SHARED if shared else LockType.EXCLUSIVE
    if nonblocking:
        lock_type |= LockType.NONBLOCKING

    try:
        handle = acquire(target, lock_type, timeout, stale)
    except NFSLockError as exc:
        _fail(exc)
        return

    try:
        with handle, log_exceptions(logger, message=f"Command failed under lock on {target}"):
            completed = subprocess.run(command, check=False)
    except OSError as exc:
        _fail(exc)
        return
    raise typer.Exit(code=completed.returncode)


@app.command()
def uncache(
    paths: List[Path] = typer.Argument(..., help="Files whose cached state to drop."),
) -> None:
    """Force the NFS client to refetch PATHS from the server."""

    for path in paths:
        try:
            uncache_path(path)
        except NFSLockError as exc:
            _fail(exc)


@app.command()
def status(target: Path = typer.Argument(..., help="File whose lock to inspect.")) -> None:
    """Show the owners recorded in TARGET's lock object."""

    try:
        lock_path = lock_path_for(target, get_settings())
        owners = read_owner_lines(lock_path)
    except NFSLockError as exc:
        _fail(exc)
        return

    if owners is None:
        typer.echo(f"{target}: unlocked")
        return
    if not owners:
        typer.echo(f"{target}: locked (no owner records in {lock_path.name})")
        return
    typer.echo(f"{target}: locked by {len(owners)} owner(s)")
    for entry in owners:
        typer.echo(f"  {entry.owner.host} pid={entry.owner.pid} {entry.mode.name} {entry.token}")

    listed = {entry.token for entry in owners}
    stray = [
        path.name
        for path in lock_path.parent.iterdir()
        if is_claim_token(lock_path, path) and path.name not in listed
    ]
    if stray:
        typer.echo(f"  {len(stray)} claim token(s) not recorded as owners: {', '.join(sorted(stray))}")


def main() -> None:
    app()


__all__ = ["app", "main"]


if __name__ == "__main__":
    main()
