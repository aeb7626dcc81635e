"""
Audit partition retention and rotation.

Partitions older than the retention horizon are deleted; the current day's
partition is rotated to a numbered sibling once it grows past the size cap.
"""

import asyncio
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import structlog

from learnacademy.security.settings import get_settings

from .service import AuditLogger, parse_partition_name

logger = structlog.get_logger(__name__)


class AuditRetentionPolicy:
    """Configuration for audit log retention."""

    def __init__(
        self,
        retention_days: int | None = None,
        max_file_size_bytes: int | None = None,
        check_interval_seconds: int | None = None,
    ):
        """
        Initialize retention policy.

        Args:
            retention_days: Days to retain partitions
            max_file_size_bytes: Rotate a partition once it exceeds this size
            check_interval_seconds: Interval of the background sweep
        """
        audit_settings = get_settings().audit
        self.retention_days = retention_days or audit_settings.retention_days
        self.max_file_size_bytes = max_file_size_bytes or audit_settings.max_file_size_bytes
        self.check_interval_seconds = (
            check_interval_seconds or audit_settings.retention_check_interval_seconds
        )


class AuditRetentionService:
    """Service for managing audit partition retention and rotation."""

    def __init__(self, audit_logger: AuditLogger, policy: AuditRetentionPolicy | None = None):
        self.audit_logger = audit_logger
        self.policy = policy or AuditRetentionPolicy()
        self._running = False
        self._tasks: set[asyncio.Task[None]] = set()

    @property
    def log_dir(self) -> Path:
        return self.audit_logger.log_dir

    async def cleanup_old_logs(self, dry_run: bool = False) -> dict[str, Any]:
        """
        Delete partitions older than the retention horizon.

        Args:
            dry_run: If True, only report what would be deleted

        Returns:
            Summary of cleanup operation
        """
        cutoff = datetime.now(UTC).date() - timedelta(days=self.policy.retention_days)
        results: dict[str, Any] = {"deleted": [], "errors": [], "dry_run": dry_run}

        for path in self.audit_logger.partitions(end=cutoff - timedelta(days=1)):
            if dry_run:
                results["deleted"].append(path.name)
                continue
            try:
                await asyncio.to_thread(path.unlink)
                results["deleted"].append(path.name)
            except OSError as e:
                logger.error("audit.retention_delete_failed", path=str(path), error=str(e))
                results["errors"].append({"path": path.name, "error": str(e)})

        if results["deleted"]:
            logger.info(
                "audit.retention_cleanup",
                deleted=len(results["deleted"]),
                cutoff=cutoff.isoformat(),
                dry_run=dry_run,
            )
        return results

    def _next_rotation_path(self, path: Path) -> Path:
        index = 1
        while True:
            candidate = path.with_name(f"{path.stem}.{index}{path.suffix}")
            if not candidate.exists():
                return candidate
            index += 1

    async def rotate_large_partitions(self) -> list[str]:
        """Rotate base partitions that exceed the size cap."""
        rotated = []
        for path in self.audit_logger.partitions():
            # Only base partitions (category-YYYY-MM-DD.log) are appended to.
            if path.stem.count(".") or parse_partition_name(path.name) is None:
                continue
            try:
                size = path.stat().st_size
            except OSError:
                continue
            if size <= self.policy.max_file_size_bytes:
                continue

            target = self._next_rotation_path(path)
            async with self.audit_logger._lock:
                await asyncio.to_thread(path.rename, target)
            rotated.append(target.name)
            logger.info("audit.partition_rotated", source=path.name, target=target.name, size=size)
        return rotated

    async def get_retention_statistics(self) -> dict[str, Any]:
        """Partition counts and sizes per category."""
        stats: dict[str, Any] = {"categories": {}, "total_bytes": 0, "oldest": None}
        for path in self.audit_logger.partitions():
            parsed = parse_partition_name(path.name)
            if parsed is None:
                continue
            category, day = parsed
            size = path.stat().st_size
            entry = stats["categories"].setdefault(category, {"files": 0, "bytes": 0})
            entry["files"] += 1
            entry["bytes"] += size
            stats["total_bytes"] += size
            if stats["oldest"] is None or day.isoformat() < stats["oldest"]:
                stats["oldest"] = day.isoformat()
        stats["retention_days"] = self.policy.retention_days
        return stats

    async def run_once(self) -> None:
        await self.rotate_large_partitions()
        await self.cleanup_old_logs()

    async def _retention_loop(self) -> None:
        while self._running:
            try:
                await self.run_once()
            except Exception as e:
                logger.error("audit.retention_loop_error", error=str(e))
            await asyncio.sleep(self.policy.check_interval_seconds)

    async def start(self) -> None:
        """Start the background retention sweep."""
        if self._running:
            return
        self._running = True
        self._tasks.add(asyncio.create_task(self._retention_loop()))
        logger.info("audit.retention_started", retention_days=self.policy.retention_days)

    async def stop(self) -> None:
        """Stop the background retention sweep."""
        self._running = False
        for task in self._tasks:
            task.cancel()

        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        logger.info("audit.retention_stopped")
