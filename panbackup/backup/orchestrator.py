"""
Run orchestration - executes every configured entry and summarizes.

Entries are independent: a failing entry never stops the others. Backends
(and their credential caches) are built once per run and shared by all
entries, so a credential is refreshed at most once even when entries run
concurrently.
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Callable, List, Optional

from panbackup.config import AppSettings, BackupConfig, BackupItem
from .baidu import BaiduPanBackend, BaiduTokenCache
from .cloud189 import Cloud189Backend, Cloud189SessionCache
from .credentials import CredentialStore
from .executor import EntryPipeline, ResolvedEntry, RunResult, Stage
from .sources import ShellCommandRunner
from .storage import UploadBackend


logger = logging.getLogger(__name__)


def build_backends(app: AppSettings, prompt: Optional[Callable[[str], str]] = None) -> List[UploadBackend]:
    """
    Create the enabled backends in upload order (Baidu, then Cloud189).

    Args:
        app: Application settings
        prompt: Callable used for interactive Baidu authorization

    Returns:
        List of backends; disabled ones are skipped
    """
    backends: List[UploadBackend] = []

    if app.baidu_enabled:
        cache = BaiduTokenCache(
            app.baidu_app_key,
            app.baidu_app_secret,
            CredentialStore(str(app.baidu_config_path)),
            prompt=prompt
        )
        backends.append(BaiduPanBackend(cache))

    if app.cloud189_enabled:
        cache = Cloud189SessionCache(
            CredentialStore(str(app.cloud189_config_path)),
            username=app.cloud189_username,
            password=app.cloud189_password,
            use_qr=app.cloud189_use_qr
        )
        backends.append(Cloud189Backend(cache))

    return backends


@dataclass
class RunSummary:
    """Aggregated results of one run."""

    results: List[RunResult] = field(default_factory=list)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None

    @property
    def succeeded(self) -> int:
        return sum(1 for result in self.results if result.success)

    @property
    def failed(self) -> int:
        return len(self.failures)

    @property
    def failures(self) -> List[RunResult]:
        return [result for result in self.results if not result.success]

    @property
    def exit_code(self) -> int:
        return 1 if self.failures else 0

    def format(self) -> str:
        """Human readable summary (never contains commands or credentials)."""
        lines = [
            f"Backup run finished: {self.succeeded} succeeded, {self.failed} failed "
            f"({len(self.results)} entries)"
        ]
        for result in self.failures:
            lines.append(f"  FAILED {result.entry_id} at {result.stage.value}: {result.cause}")
        return '\n'.join(lines)


class Orchestrator:
    """
    Runs the entry pipeline for every configured entry.
    """

    def __init__(
        self,
        backends: List[UploadBackend],
        archive_dir: str = '.',
        max_workers: int = 1,
        runner: Optional[ShellCommandRunner] = None,
        today: Callable[[], date] = date.today
    ):
        """
        Initialize orchestrator.

        Args:
            backends: Enabled backends, shared by all entries
            archive_dir: Directory for archives
            max_workers: Entries run concurrently when > 1
            runner: Command runner for source commands
            today: Returns the local run date
        """
        self.backends = backends
        self.archive_dir = archive_dir
        self.max_workers = max(1, max_workers)
        self.runner = runner
        self.today = today

    def run(self, items: List[BackupItem]) -> RunSummary:
        """
        Run all entries and collect one RunResult per entry.

        Returns:
            RunSummary in configuration order
        """
        summary = RunSummary(started_at=datetime.now())
        run_date = self.today()

        logger.info(f"Starting backup run with {len(items)} entries")

        if self.max_workers > 1 and len(items) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
                futures = [
                    pool.submit(self._run_entry, index, item, run_date)
                    for index, item in enumerate(items)
                ]
                summary.results = [future.result() for future in futures]
        else:
            summary.results = [
                self._run_entry(index, item, run_date)
                for index, item in enumerate(items)
            ]

        summary.completed_at = datetime.now()

        for line in summary.format().splitlines():
            if summary.failed:
                logger.error(line)
            else:
                logger.info(line)

        return summary

    def _run_entry(self, index: int, item: BackupItem, run_date: date) -> RunResult:
        try:
            entry = ResolvedEntry.from_item(item, index, run_date)
            pipeline = EntryPipeline(
                entry,
                self.backends,
                str(self.archive_dir),
                run_date,
                runner=self.runner
            )
            return pipeline.execute()
        except Exception as e:
            logger.exception(f"Unexpected error in backup entry #{index + 1}")
            return RunResult(
                entry_id=f"#{index + 1} {item.archive_name}",
                index=index,
                success=False,
                stage=Stage.PREPARING,
                cause=f"{type(e).__name__}: {e}"
            )


def run_backups(config: BackupConfig, prompt: Optional[Callable[[str], str]] = None) -> RunSummary:
    """
    Run every entry of a validated configuration.

    Args:
        config: Loaded configuration
        prompt: Callable used for interactive Baidu authorization

    Returns:
        RunSummary
    """
    backends = build_backends(config.app, prompt=prompt)
    if not backends:
        logger.warning("No upload backend enabled; archives will only be created locally")

    orchestrator = Orchestrator(
        backends,
        archive_dir=str(config.app.archive_dir_path),
        max_workers=config.app.max_workers
    )
    return orchestrator.run(config.backups)
