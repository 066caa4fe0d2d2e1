"""
Backup module for panbackup.

This module handles the core backup functionality including:
- Source preparation (paths and generating commands)
- Compression into dated .tar.zst archives
- Storage (Baidu Netdisk and Cloud189)
- Entry execution and run orchestration
- Retention of local archives
"""

from .executor import EntryPipeline, ResolvedEntry, RunResult, Stage
from .sources import prepare_source, ShellCommandRunner
from .compression import create_archive, create_dated_archive
from .storage import UploadBackend, UploadError
from .baidu import BaiduPanBackend, BaiduTokenCache
from .cloud189 import Cloud189Backend, Cloud189SessionCache
from .retention import RetentionManager
from .orchestrator import Orchestrator, RunSummary, build_backends, run_backups

__all__ = [
    'EntryPipeline',
    'ResolvedEntry',
    'RunResult',
    'Stage',
    'prepare_source',
    'ShellCommandRunner',
    'create_archive',
    'create_dated_archive',
    'UploadBackend',
    'UploadError',
    'BaiduPanBackend',
    'BaiduTokenCache',
    'Cloud189Backend',
    'Cloud189SessionCache',
    'RetentionManager',
    'Orchestrator',
    'RunSummary',
    'build_backends',
    'run_backups'
]
