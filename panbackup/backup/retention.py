"""
Retention decisions for the Finalizing stage.

After an entry's uploads, decides whether the local archive and a
command-generated source are kept or deleted:

- archive: deleted only if keep_archive is false, at least one backend was
  enabled and every enabled backend succeeded; otherwise kept so a failed
  upload can be retried without rebuilding it
- command-generated source: deleted if keep_command_source is false
- a user-supplied source is never touched

Deletions are best-effort: failures are logged, never raised.
"""

import os
import shutil
import logging
from pathlib import Path
from typing import Dict, List, Optional


logger = logging.getLogger(__name__)


class RetentionManager:
    """
    Applies an entry's keep/delete settings after its uploads.
    """

    def __init__(self, keep_archive: bool = False, keep_command_source: bool = True):
        """
        Initialize retention manager.

        Args:
            keep_archive: Keep the local archive even after successful uploads
            keep_command_source: Keep the file/directory a command produced
        """
        self.keep_archive = keep_archive
        self.keep_command_source = keep_command_source
        self.logs: List[str] = []

    def should_delete_archive(self, backend_results: Dict[str, bool]) -> bool:
        """
        Decide whether the archive can be deleted.

        Args:
            backend_results: Backend name -> upload succeeded

        Returns:
            True if the archive should be deleted
        """
        if self.keep_archive:
            return False
        if not backend_results:
            return False
        return all(backend_results.values())

    def finalize(
        self,
        archive_path: Optional[str],
        backend_results: Dict[str, bool],
        source_path: Optional[str] = None,
        source_generated: bool = False
    ) -> Dict[str, bool]:
        """
        Apply retention for one entry.

        Args:
            archive_path: Archive produced by the entry (None if archiving failed)
            backend_results: Backend name -> upload succeeded
            source_path: Archive input path
            source_generated: True if a command produced source_path

        Returns:
            Dict with 'archive_deleted' and 'source_deleted' flags
        """
        result = {'archive_deleted': False, 'source_deleted': False}

        if archive_path:
            if self.should_delete_archive(backend_results):
                result['archive_deleted'] = self._remove(archive_path)
            elif self.keep_archive:
                self._log(f"Keeping archive: {archive_path}")
            elif not backend_results:
                self._log(f"No upload backend enabled, keeping archive: {archive_path}")
            else:
                failed = sorted(name for name, ok in backend_results.items() if not ok)
                self._log(f"Upload failed for {', '.join(failed)}, keeping archive: {archive_path}")

        if source_path and source_generated and not self.keep_command_source:
            result['source_deleted'] = self._remove(source_path)

        return result

    def _remove(self, path: str) -> bool:
        target = Path(path)
        try:
            if target.is_dir() and not target.is_symlink():
                shutil.rmtree(target)
            elif target.exists() or target.is_symlink():
                os.remove(target)
            else:
                self._log(f"Nothing to delete at {path}")
                return False
            self._log(f"Deleted {path}")
            return True
        except OSError as e:
            self._log(f"Warning: Failed to delete {path}: {e}", level=logging.WARNING)
            return False

    def _log(self, message: str, level: int = logging.INFO):
        self.logs.append(message)
        logger.log(level, message)
