"""CLI for snapshot reconstruction, commit-log export and retention."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta
from pathlib import Path

from registry.config import settings
from registry.models.enums import EntityKind
from replay.clock import SystemClock, parse_timestamp
from replay.errors import ReplayError

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(levelname)-5.5s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _timestamp(value: str) -> datetime:
    """argparse type for ISO-8601 timestamps with an explicit offset."""
    try:
        return parse_timestamp(value)
    except ValueError as e:
        raise argparse.ArgumentTypeError(str(e)) from e


def _kinds(values: list[str] | None) -> list[EntityKind] | None:
    if not values:
        return None
    return [EntityKind(v) for v in values]


async def reconstruct_command(
    export_dir: Path,
    log_dir: Path,
    start: datetime,
    end: datetime,
    kinds: list[EntityKind] | None,
    output: Path,
    workers: int = 0,
    partitions: int = 16,
    keep_tombstones: bool = False,
    export_out: Path | None = None,
) -> int:
    """Reconstruct a snapshot from file artifacts and write it out.

    Args:
        export_dir: Bulk export to seed from.
        log_dir: Exported commit log covering (start, end].
        start: Window start (at or before the export's completion).
        end: Cutoff instant of the snapshot.
        kinds: Kinds to track (default: every kind the export contains).
        output: Path of the canonical snapshot JSON.
        workers: Fold thread pool size (0 folds inline).
        partitions: Number of fold partitions.
        keep_tombstones: Emit deleted entities as absent.
        export_out: Also write the snapshot as an export artifact here.

    Returns:
        0 on success, 1 on failure.
    """
    from replay.engine import reconstruct_snapshot
    from replay.export import BulkExportReader, ExportWriter

    if kinds is None:
        kinds = sorted(BulkExportReader(export_dir).kinds)

    executor = ThreadPoolExecutor(max_workers=workers) if workers > 0 else None
    try:
        snapshot = await reconstruct_snapshot(
            export_dir,
            log_dir,
            start,
            end,
            kinds,
            executor=executor,
            partition_count=partitions,
            keep_tombstones=keep_tombstones,
        )
    finally:
        if executor is not None:
            executor.shutdown(wait=True)

    snapshot.write(output)
    logger.info(f"Wrote snapshot to {output} (sha256 {snapshot.digest()})")

    stats = snapshot.stats
    if stats is not None and stats.unknown_kinds:
        for kind, count in sorted(stats.unknown_kinds.items()):
            logger.warning(f"  skipped {count} mutations of unknown kind '{kind}'")

    if export_out is not None:
        ExportWriter(export_out).write_snapshot(snapshot)
        logger.info(f"Wrote snapshot as export to {export_out}")
    return 0


async def export_log_command(log_dir: Path, start: datetime, end: datetime) -> int:
    """Copy the SQL commit log for (start, end] into file segments.

    Returns:
        0 on success, 1 on failure.
    """
    from registry.models.base import async_session_maker
    from replay.commit_log.exporter import export_commit_log
    from replay.commit_log.file_store import FileCommitLogStore
    from replay.commit_log.sql_store import SqlCommitLogStore
    from replay.records import SnapshotWindow

    target = FileCommitLogStore.create(log_dir, settings.commit_log_bucket_count)
    async with async_session_maker() as session:
        source = SqlCommitLogStore(
            session,
            settings.commit_log_bucket_count,
            SystemClock(),
            durability_lag=timedelta(milliseconds=settings.commit_log_durability_lag_ms),
        )
        result = await export_commit_log(source, target, SnapshotWindow(start, end))

    logger.info(
        f"Exported {result.transactions_exported} transactions "
        f"({result.segments_written} segments)"
    )
    return 0


def verify_command(
    snapshot_path: Path, reference_export: Path, ignore_timestamps: bool = False
) -> int:
    """Compare a written snapshot against a reference export.

    Returns:
        0 if they match, 1 otherwise.
    """
    from replay.export import BulkExportReader, load_export_snapshot
    from replay.sink import Snapshot
    from replay.verification import compare_snapshots

    derived = Snapshot.load(snapshot_path)
    reference = load_export_snapshot(BulkExportReader(reference_export), derived.kinds)
    result = compare_snapshots(
        derived, reference, kinds=derived.kinds, compare_timestamps=not ignore_timestamps
    )

    print(f"\nMatch: {result.entities_match}")
    print(f"Mismatch: {result.entities_mismatch}")
    print(f"Only in snapshot: {result.entities_only_in_derived}")
    print(f"Only in reference: {result.entities_only_in_reference}")
    for mismatch in result.mismatches[:20]:
        print(f"  {mismatch.kind}/{mismatch.entity_id}: {mismatch.mismatch_type}")
    if len(result.mismatches) > 20:
        print(f"  ... and {len(result.mismatches) - 20} more")

    if result.is_clean:
        logger.info("Snapshot matches reference")
        return 0
    logger.error("Snapshot does not match reference")
    return 1


async def confirm_consumer_command(
    consumer: str, through: datetime, description: str | None = None
) -> int:
    """Register a consumer if needed and record its confirmation."""
    from registry.models.base import async_session_maker
    from replay.retention import RetentionService

    async with async_session_maker() as session:
        service = RetentionService(session, SystemClock())
        await service.register_consumer(consumer, description=description)
        await service.confirm_consumer(consumer, through)
        await session.commit()

    logger.info(f"Consumer '{consumer}' confirmed through {through.isoformat()}")
    return 0


async def advance_checkpoint_command(to: datetime, note: str | None = None) -> int:
    """Advance the retention checkpoint."""
    from registry.models.base import async_session_maker
    from replay.retention import RetentionService

    async with async_session_maker() as session:
        service = RetentionService(session, SystemClock())
        await service.advance_checkpoint(to, note=note)
        await session.commit()
    return 0


async def purge_command(before: datetime | None, log_dir: Path | None = None) -> int:
    """Purge commit-log data older than a checkpoint (default: the current one)."""
    from registry.models.base import async_session_maker
    from replay.commit_log.file_store import FileCommitLogStore
    from replay.retention import RetentionService

    archive = FileCommitLogStore(log_dir) if log_dir is not None else None
    async with async_session_maker() as session:
        service = RetentionService(session, SystemClock())
        if before is None:
            before = await service.current_checkpoint()
            if before is None:
                logger.error("No checkpoint has been advanced; nothing to purge.")
                return 1
        result = await service.purge_before(before, archive=archive)
        await session.commit()

    print(f"Purged transactions: {result.transactions_purged}")
    print(f"Purged segments: {result.segments_purged}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Registry snapshot replay CLI")
    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # Reconstruct command
    reconstruct_parser = subparsers.add_parser(
        "reconstruct", help="Reconstruct a snapshot from an export and a commit log"
    )
    reconstruct_parser.add_argument(
        "--export-dir",
        type=Path,
        default=Path(settings.export_dir),
        help=f"Bulk export directory (default: {settings.export_dir})",
    )
    reconstruct_parser.add_argument(
        "--log-dir",
        type=Path,
        default=Path(settings.commit_log_dir),
        help=f"Commit log directory (default: {settings.commit_log_dir})",
    )
    reconstruct_parser.add_argument("--start", type=_timestamp, required=True)
    reconstruct_parser.add_argument("--end", type=_timestamp, required=True)
    reconstruct_parser.add_argument(
        "--kinds",
        nargs="+",
        choices=[k.value for k in EntityKind],
        help="Kinds to track (default: every kind in the export)",
    )
    reconstruct_parser.add_argument(
        "--output", type=Path, required=True, help="Snapshot JSON to write"
    )
    reconstruct_parser.add_argument(
        "--workers",
        type=int,
        default=settings.replay_workers,
        help="Fold worker threads (0 folds inline)",
    )
    reconstruct_parser.add_argument(
        "--partitions", type=int, default=settings.replay_partition_count
    )
    reconstruct_parser.add_argument(
        "--keep-tombstones",
        action="store_true",
        help="Emit deleted entities as absent instead of dropping them",
    )
    reconstruct_parser.add_argument(
        "--export-out",
        type=Path,
        help="Also write the snapshot as an export artifact",
    )

    # Export-log command
    export_parser = subparsers.add_parser(
        "export-log", help="Export the SQL commit log for a window to files"
    )
    export_parser.add_argument(
        "--log-dir", type=Path, default=Path(settings.commit_log_dir)
    )
    export_parser.add_argument("--start", type=_timestamp, required=True)
    export_parser.add_argument("--end", type=_timestamp, required=True)

    # Verify command
    verify_parser = subparsers.add_parser(
        "verify", help="Compare a snapshot against a reference export"
    )
    verify_parser.add_argument("snapshot", type=Path, help="Snapshot JSON file")
    verify_parser.add_argument("reference", type=Path, help="Reference export directory")
    verify_parser.add_argument(
        "--ignore-timestamps",
        action="store_true",
        help="Compare payloads only",
    )

    # Confirm-consumer command
    confirm_parser = subparsers.add_parser(
        "confirm-consumer", help="Confirm a consumer no longer needs older data"
    )
    confirm_parser.add_argument("consumer", help="Consumer name")
    confirm_parser.add_argument("--through", type=_timestamp, required=True)
    confirm_parser.add_argument("--description")

    # Advance-checkpoint command
    advance_parser = subparsers.add_parser(
        "advance-checkpoint", help="Advance the commit log retention checkpoint"
    )
    advance_parser.add_argument("--to", type=_timestamp, required=True)
    advance_parser.add_argument("--note")

    # Purge command
    purge_parser = subparsers.add_parser(
        "purge", help="Delete commit log data older than a checkpoint"
    )
    purge_parser.add_argument(
        "--before",
        type=_timestamp,
        help="Purge horizon (default: the current checkpoint)",
    )
    purge_parser.add_argument(
        "--log-dir",
        type=Path,
        help="Also purge segments from this exported commit log",
    )

    return parser


def main(argv: list[str] | None = None) -> int:
    """Main entry point for CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        if args.command == "reconstruct":
            return asyncio.run(
                reconstruct_command(
                    export_dir=args.export_dir,
                    log_dir=args.log_dir,
                    start=args.start,
                    end=args.end,
                    kinds=_kinds(args.kinds),
                    output=args.output,
                    workers=args.workers,
                    partitions=args.partitions,
                    keep_tombstones=args.keep_tombstones,
                    export_out=args.export_out,
                )
            )

        elif args.command == "export-log":
            return asyncio.run(export_log_command(args.log_dir, args.start, args.end))

        elif args.command == "verify":
            return verify_command(args.snapshot, args.reference, args.ignore_timestamps)

        elif args.command == "confirm-consumer":
            return asyncio.run(
                confirm_consumer_command(args.consumer, args.through, args.description)
            )

        elif args.command == "advance-checkpoint":
            return asyncio.run(advance_checkpoint_command(args.to, args.note))

        elif args.command == "purge":
            return asyncio.run(purge_command(args.before, args.log_dir))

        else:
            parser.print_help()
            return 1

    except ReplayError as e:
        logger.error(f"{type(e).__name__}: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
