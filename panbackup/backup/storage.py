"""
Upload backend interface and error taxonomy.

Each backend pairs an uploader with its own CredentialCache:
- BaiduPanBackend (token based, see baidu.py)
- Cloud189Backend (session based, see cloud189.py)
"""

import os
import logging
from typing import Optional
from urllib.parse import urlsplit

import requests

from .credentials import AuthenticationError, CredentialCache


logger = logging.getLogger(__name__)


class UploadError(Exception):
    """Raised when an upload fails."""
    pass


class AuthRejected(UploadError):
    """The backend rejected the credential (expired or revoked)."""
    pass


class NetworkError(UploadError):
    """Transport-level failure talking to the backend. Not retried."""
    pass


class QuotaOrPermissionError(UploadError):
    """Out of space or not allowed to write. Fatal for the entry."""
    pass


class UploadBackend:
    """
    Base class for remote storage backends.

    Subclasses implement upload(local_path, remote_dir, credential).
    """

    name = 'backend'

    def __init__(self, credential_cache: CredentialCache):
        self.credential_cache = credential_cache

    def upload(self, local_path: str, remote_dir: str, credential) -> str:
        """
        Upload a local file into remote_dir, creating directories as needed.

        Args:
            local_path: Path to the local archive
            remote_dir: Placeholder-resolved remote directory
            credential: Credential from this backend's cache

        Returns:
            Remote path of the uploaded file (remote_dir/filename)

        Raises:
            AuthRejected: If the credential is rejected
            NetworkError: On transport failures
            QuotaOrPermissionError: If the backend refuses the write
            UploadError: For any other backend error
        """
        raise NotImplementedError

    def upload_with_reauth(self, local_path: str, remote_dir: str) -> str:
        """
        Upload using the cached credential, re-authenticating once on rejection.

        A second rejection, or a failed re-authentication, surfaces as
        AuthRejected. Other upload errors are never retried here.

        Returns:
            Remote path of the uploaded file
        """
        if not os.path.isfile(local_path):
            raise UploadError(f"Local file not found: {local_path}")

        credential = self.credential_cache.get_valid_credential()
        try:
            return self.upload(local_path, remote_dir, credential)
        except AuthRejected as e:
            logger.warning(f"[{self.name}] Credential rejected ({e}), re-authenticating and retrying once")
            self.credential_cache.invalidate(credential)

        try:
            credential = self.credential_cache.get_valid_credential()
        except AuthenticationError as e:
            raise AuthRejected(f"{self.name} rejected the credential and re-authentication failed: {e}") from e
        return self.upload(local_path, remote_dir, credential)


def join_remote_path(remote_dir: str, filename: str) -> str:
    """
    Join a remote directory and file name with exactly one slash.

    Remote paths are always absolute.
    """
    directory = normalize_remote_dir(remote_dir)
    if directory == '/':
        return f"/{filename}"
    return f"{directory}/{filename}"


def normalize_remote_dir(remote_dir: Optional[str]) -> str:
    """Return remote_dir as an absolute path without a trailing slash."""
    directory = (remote_dir or '').strip().replace('\\', '/')
    parts = [part for part in directory.split('/') if part]
    return '/' + '/'.join(parts)


def describe_request_error(error: Exception) -> str:
    """
    Describe a failed HTTP request by exception type and host.

    requests puts the full request URL in its exception messages, and query
    strings here carry access tokens, refresh tokens and client secrets.
    """
    if not isinstance(error, requests.RequestException):
        return str(error)

    request = getattr(error, 'request', None)
    url = getattr(request, 'url', None)
    host = urlsplit(url).hostname if url else None
    name = type(error).__name__
    return f"{name} ({host})" if host else name
