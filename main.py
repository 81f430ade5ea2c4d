"""SSHMirror — headless entry point.

Configures logging, loads a saved connection profile, starts watching its
local root and logs every queue status change until interrupted.
"""

from __future__ import annotations

import argparse
import asyncio
import getpass
import logging
import sys
from typing import Sequence

from sshmirror.config import ConfigManager
from sshmirror.connection import (
    SSHConnection,
    TransportError,
    UnknownHostError,
    accept_host_key,
)
from sshmirror.context import ConnectionContext
from sshmirror.engine import SyncEngine
from sshmirror.status import QueueStatus
from sshmirror.utils.path_helpers import human_readable_size

_LOG_FORMAT = "%(asctime)s  %(levelname)-8s  %(name)s — %(message)s"
_DATE_FORMAT = "%H:%M:%S"

log = logging.getLogger(__name__)


def _configure_logging(verbose: bool = False) -> None:
    """Set up root logging to stderr."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=_LOG_FORMAT,
        datefmt=_DATE_FORMAT,
        stream=sys.stderr,
    )
    # Quieten noisy third-party loggers
    logging.getLogger("paramiko").setLevel(logging.WARNING)
    logging.getLogger("watchdog").setLevel(logging.WARNING)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="sshmirror",
        description="Mirror a local directory to a remote host over SFTP",
    )
    parser.add_argument(
        "profile",
        nargs="?",
        help="Saved profile name (defaults to the first saved profile)",
    )
    parser.add_argument(
        "--pull",
        action="store_true",
        help="Download the remote tree into the local root before watching",
    )
    parser.add_argument(
        "--upload-all",
        action="store_true",
        help="Queue every local file for upload after the watcher starts",
    )
    parser.add_argument(
        "--accept-host-key",
        action="store_true",
        help="Trust and save the host key if the host is not in known_hosts",
    )
    parser.add_argument(
        "--set-password",
        action="store_true",
        help="Prompt for the SSH password and store it in the OS keyring",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    return parser


def _describe(status: QueueStatus) -> str:
    text = (
        f"[{status.connection_id}] {status.last_phase}: pending={status.pending} "
        f"active={status.active} done={status.processed} failed={status.failed}"
    )
    if status.recent:
        item = status.recent[0]
        if item.bytes_total:
            text += (
                f" | {item.path} {human_readable_size(item.bytes_sent)}"
                f"/{human_readable_size(item.bytes_total)}"
            )
        if item.note:
            text += f" ({item.note})"
    if status.last_error:
        text += f" | last error: {status.last_error}"
    return text


async def _connect(engine: SyncEngine, ctx: ConnectionContext, accept_new_host: bool) -> None:
    """Open the connection by listing the remote root, trusting a new host key
    on request."""
    try:
        await engine.list_remote_dir(ctx)
    except UnknownHostError as exc:
        if not accept_new_host or exc.key is None:
            raise
        log.warning("Trusting %s key %s for %s", exc.key_type, exc.fingerprint, exc.hostname)
        accept_host_key(exc.hostname or ctx.host, exc.key)
        await engine.list_remote_dir(ctx)


async def _run(
    ctx: ConnectionContext,
    config: dict,
    pull: bool,
    upload_all: bool,
    accept_new_host: bool,
) -> None:
    engine = SyncEngine(config)
    updates = engine.subscribe(ctx, maxsize=64)
    try:
        await _connect(engine, ctx, accept_new_host)
        if pull:
            count = await engine.sync_remote_to_local(ctx)
            log.info("Pulled %d file(s) from %s", count, ctx.remote_root)
        await engine.start_watch(ctx)
        if upload_all:
            await engine.force_upload_all(ctx)
        log.info("Watching %s → %s:%s (Ctrl+C to stop)", ctx.local_root, ctx.host, ctx.remote_root)
        last = ""
        while True:
            text = _describe(await updates.get())
            if text != last:
                log.info("%s", text)
                last = text
    finally:
        status = await engine.stop_watch(ctx)
        if status is not None:
            log.info("Stopped: %d processed, %d failed", status.processed, status.failed)
        await engine.close()


def main(argv: Sequence[str] | None = None) -> int:
    """Bootstrap and run SSHMirror."""
    args = _build_parser().parse_args(argv)
    _configure_logging(args.verbose)
    log.info("Starting SSHMirror")

    config = ConfigManager()
    name = args.profile
    if name is None:
        profiles = config.get_profiles()
        if not profiles:
            log.error("No saved profiles in ~/.sshmirror/profiles.json")
            return 1
        name = profiles[0].get("name", "")

    try:
        ctx = config.build_context(name)
    except (KeyError, ValueError) as exc:
        log.error("Cannot use profile %r: %s", name, exc)
        return 1

    if args.set_password:
        SSHConnection.from_context(ctx).store_password(getpass.getpass(f"Password for {ctx.username}@{ctx.host}: "))

    try:
        asyncio.run(
            _run(ctx, config.get_all(), args.pull, args.upload_all, args.accept_host_key)
        )
    except KeyboardInterrupt:
        log.info("Interrupted")
    except UnknownHostError as exc:
        log.error(
            "%s (%s %s)\nRe-run with --accept-host-key to trust it.",
            exc, exc.key_type, exc.fingerprint,
        )
        return 2
    except TransportError as exc:
        log.error("Connection failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
