"""
Backup entry pipeline - runs one configured entry end to end.

Workflow:
1. Preparing: run the source command (if any) and locate the archive input
2. Archiving: create {archive_name}-{YYYYMMDD}[-N].tar.zst
3. Uploading: upload to every enabled backend (Baidu, then Cloud189)
4. Finalizing: delete or keep the archive / command output
5. Done, or Failed(stage, cause)

Uploads to different backends are independent: one failing does not stop
the next, but any failure fails the entry.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Dict, List, Optional

from panbackup.config import BackupItem
from .compression import create_dated_archive, get_archive_size
from .placeholders import build_context, resolve_placeholders
from .retention import RetentionManager
from .sources import PreparedSource, ShellCommandRunner, prepare_source
from .storage import UploadBackend, UploadError


logger = logging.getLogger(__name__)


class Stage(str, Enum):
    PREPARING = 'preparing'
    ARCHIVING = 'archiving'
    UPLOADING = 'uploading'
    FINALIZING = 'finalizing'
    DONE = 'done'


class UploadStageError(UploadError):
    """Raised when at least one enabled backend failed for an entry."""
    pass


@dataclass
class BackendOutcome:
    """Result of uploading an entry's archive to one backend."""

    success: bool
    remote_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class RunResult:
    """Outcome of one entry. On failure, stage is where it failed."""

    entry_id: str
    index: int
    success: bool = False
    stage: Stage = Stage.PREPARING
    cause: Optional[str] = None
    archive_path: Optional[str] = None
    backend_results: Dict[str, BackendOutcome] = field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    logs: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ResolvedEntry:
    """A BackupItem with every placeholder substituted for this run."""

    index: int
    archive_name: str
    source: str
    remote_dir: str
    command: Optional[str] = None
    command_workdir: Optional[str] = None
    keep_archive: bool = False
    keep_command_source: bool = True

    @classmethod
    def from_item(cls, item: BackupItem, index: int, run_date: date) -> 'ResolvedEntry':
        """
        Resolve {date} and {archive_name} in an entry's fields.

        Args:
            item: Configured entry
            index: Position of the entry in the configuration
            run_date: Local date captured at run start

        Returns:
            ResolvedEntry
        """
        context = build_context(item.archive_name, run_date)
        return cls(
            index=index,
            archive_name=context['archive_name'],
            source=resolve_placeholders(item.source, context),
            remote_dir=resolve_placeholders(item.remote_dir, context),
            command=resolve_placeholders(item.command, context),
            command_workdir=resolve_placeholders(item.command_workdir, context),
            keep_archive=item.keep_archive,
            keep_command_source=item.keep_command_source
        )

    @property
    def entry_id(self) -> str:
        return f"#{self.index + 1} {self.archive_name}"


class EntryPipeline:
    """
    Runs the backup workflow for one entry.
    """

    def __init__(
        self,
        entry: ResolvedEntry,
        backends: List[UploadBackend],
        archive_dir: str,
        run_date: date,
        runner: Optional[ShellCommandRunner] = None
    ):
        """
        Initialize entry pipeline.

        Args:
            entry: Resolved entry to execute
            backends: Enabled backends, in upload order
            archive_dir: Directory where the archive is written
            run_date: Date used in the archive name
            runner: Command runner for source commands
        """
        self.entry = entry
        self.backends = backends
        self.archive_dir = archive_dir
        self.run_date = run_date
        self.runner = runner
        self.stage = Stage.PREPARING
        self.prepared: Optional[PreparedSource] = None
        self.archive_path: Optional[str] = None
        self.backend_results: Dict[str, BackendOutcome] = {}
        self.logs: List[str] = []

    def execute(self) -> RunResult:
        """
        Execute the entry.

        Returns:
            RunResult; exceptions from any stage are captured, never raised
        """
        result = RunResult(
            entry_id=self.entry.entry_id,
            index=self.entry.index,
            started_at=datetime.now()
        )

        self._log(f"Starting backup entry: {self.entry.entry_id}")

        try:
            self._execute_workflow()
            result.success = True
            self.stage = Stage.DONE
            self._log("Backup entry completed successfully")
        except Exception as e:
            result.success = False
            result.cause = f"{type(e).__name__}: {e}"
            self._log(f"Backup entry failed at {self.stage.value}: {result.cause}", level=logging.ERROR)
        finally:
            failed_stage = self.stage
            self._finalize()
            result.stage = Stage.DONE if result.success else failed_stage
            result.archive_path = self.archive_path
            result.backend_results = dict(self.backend_results)
            result.completed_at = datetime.now()
            result.logs = list(self.logs)

        return result

    def _execute_workflow(self):
        # Step 1: Prepare source
        self.stage = Stage.PREPARING
        self._log("Preparing source" + (" (running command)" if self.entry.command else ""))
        self.prepared = prepare_source(
            self.entry.source,
            command=self.entry.command,
            command_workdir=self.entry.command_workdir,
            runner=self.runner
        )
        self._log(f"Source ready: {self.prepared.path}")

        # Step 2: Create archive
        self.stage = Stage.ARCHIVING
        self._log(f"Creating archive in {self.archive_dir}")
        self.archive_path = create_dated_archive(
            str(self.prepared.path),
            self.archive_dir,
            self.entry.archive_name,
            self.run_date
        )
        size = get_archive_size(self.archive_path)
        self._log(f"Archive created: {self.archive_path} ({size / 1024 / 1024:.2f} MB)")

        # Step 3: Upload
        self.stage = Stage.UPLOADING
        self._upload_all()

    def _upload_all(self):
        if not self.backends:
            self._log("No upload backend enabled, skipping upload", level=logging.WARNING)
            return

        for backend in self.backends:
            self._log(f"Uploading to {backend.name}: {self.entry.remote_dir}")
            try:
                remote_path = backend.upload_with_reauth(self.archive_path, self.entry.remote_dir)
            except Exception as e:
                error = f"{type(e).__name__}: {e}"
                self.backend_results[backend.name] = BackendOutcome(success=False, error=error)
                self._log(f"Upload to {backend.name} failed: {error}", level=logging.ERROR)
                continue

            self.backend_results[backend.name] = BackendOutcome(success=True, remote_path=remote_path)
            self._log(f"Uploaded to {backend.name}: {remote_path}")

        failed = [
            f"{name} ({outcome.error})"
            for name, outcome in self.backend_results.items()
            if not outcome.success
        ]
        if failed:
            raise UploadStageError(f"Upload failed for {', '.join(failed)}")

    def _finalize(self):
        """Apply retention. Never raises."""
        if self.prepared is None and self.archive_path is None:
            return

        self.stage = Stage.FINALIZING
        retention = RetentionManager(
            keep_archive=self.entry.keep_archive,
            keep_command_source=self.entry.keep_command_source
        )
        try:
            retention.finalize(
                self.archive_path,
                {name: outcome.success for name, outcome in self.backend_results.items()},
                source_path=str(self.prepared.path) if self.prepared else None,
                source_generated=bool(self.prepared and self.prepared.generated)
            )
        except Exception as e:
            self._log(f"Warning: Finalizing failed: {e}", level=logging.WARNING)
        self.logs.extend(retention.logs)

    def _log(self, message: str, level: int = logging.INFO):
        """
        Add a log message with timestamp.

        Args:
            message: Log message
            level: logging level for the mirrored log record
        """
        timestamp = datetime.now().strftime('%Y-%m-%d %H:%M:%S')
        self.logs.append(f"[{timestamp}] {message}")
        logger.log(level, f"[{self.entry.entry_id}] {message}")
