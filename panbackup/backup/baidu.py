"""
Baidu Netdisk (xpan) backend.

Authentication uses OAuth2 with the out-of-band redirect: on first use the
user opens the authorize URL, pastes the returned code, and the resulting
access/refresh tokens are cached on disk. Expired access tokens are renewed
with the refresh token; if that fails the authorization flow runs again.

Uploads follow the sliced upload protocol:
1. precreate (with the MD5 of every 4MB block)
2. superfile2 upload of each block
3. create (merge)
"""

import os
import json
import logging
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional

import requests

from panbackup.utils.crypto import BLOCK_SIZE, block_md5_list
from .credentials import (
    AuthenticationError,
    CredentialCache,
    CredentialStore,
    parse_timestamp,
    utcnow
)
from .storage import (
    AuthRejected,
    NetworkError,
    QuotaOrPermissionError,
    UploadBackend,
    UploadError,
    describe_request_error,
    join_remote_path,
    normalize_remote_dir
)


logger = logging.getLogger(__name__)

BASE_URL = 'https://pan.baidu.com/rest/2.0/xpan/'
OAUTH_URL = 'https://openapi.baidu.com/oauth/2.0/'
PCS_UPLOAD_URL = 'https://d.pcs.baidu.com/rest/2.0/pcs/superfile2'
QUOTA_URL = 'https://pan.baidu.com/api/quota'

USER_AGENT = 'pan.baidu.com'
REQUEST_TIMEOUT = 60
CHUNK_TIMEOUT = 300
TOKEN_EXPIRY_MARGIN = 300  # seconds

# rtype=1: rename on remote path conflict instead of overwriting an older archive
RENAME_ON_CONFLICT = '1'

AUTH_ERRNOS = {-6, 110, 111}
QUOTA_OR_PERMISSION_ERRNOS = {-7, -10, 31365}
ERRNO_ALREADY_EXISTS = -8


def _default_prompt(message: str) -> str:
    return input(f"{message}: ")


@dataclass(frozen=True)
class BaiduToken:
    """Cached OAuth2 token pair."""

    access_token: Optional[str]
    refresh_token: Optional[str]
    expires_at: datetime


class BaiduTokenCache(CredentialCache):
    """
    Token cache for one Baidu app key.
    """

    name = 'baidu'

    def __init__(
        self,
        app_key: str,
        app_secret: str,
        store: CredentialStore,
        session: Optional[requests.Session] = None,
        prompt: Optional[Callable[[str], str]] = None
    ):
        """
        Initialize Baidu token cache.

        Args:
            app_key: Baidu app key (client_id)
            app_secret: Baidu app secret (client_secret)
            store: Persistent credential store
            session: HTTP session (created if omitted)
            prompt: Callable used to read the authorization code
        """
        super().__init__(store)
        self.app_key = app_key
        self.app_secret = app_secret
        self.session = session or requests.Session()
        self.prompt = prompt or _default_prompt

    def _from_state(self, state: Dict[str, Any]) -> BaiduToken:
        stored_key = state.get('app_key')
        if stored_key and stored_key != self.app_key:
            raise ValueError("token belongs to a different app key")

        expires_at = parse_timestamp(state.get('expires_at'))
        if expires_at is None:
            raise ValueError("missing or invalid expires_at")

        return BaiduToken(
            access_token=state.get('access_token'),
            refresh_token=state.get('refresh_token'),
            expires_at=expires_at
        )

    def _to_state(self, credential: BaiduToken) -> Dict[str, Any]:
        return {
            'app_key': self.app_key,
            'access_token': credential.access_token,
            'refresh_token': credential.refresh_token,
            'expires_at': credential.expires_at.isoformat()
        }

    def _is_valid(self, credential: BaiduToken) -> bool:
        return bool(credential.access_token) and utcnow() < credential.expires_at

    def _without_access(self, credential: BaiduToken) -> Optional[BaiduToken]:
        if not credential.refresh_token:
            return None
        return replace(credential, access_token=None, expires_at=utcnow())

    def authorization_url(self) -> str:
        return (
            f"{OAUTH_URL}authorize?response_type=code&client_id={self.app_key}"
            f"&redirect_uri=oob&scope=basic,netdisk"
        )

    def _authenticate(self) -> BaiduToken:
        """Run the interactive authorization-code flow."""
        logger.info("Baidu authorization required")
        logger.info(f"1. Open this URL in a browser: {self.authorization_url()}")
        logger.info("2. Log in and approve access to receive an authorization code")

        try:
            code = self.prompt("3. Paste the authorization code")
        except EOFError:
            raise AuthenticationError("Baidu authorization code required but no input is available")

        code = (code or '').strip()
        if not code:
            raise AuthenticationError("No Baidu authorization code entered")

        token = self._request_token({
            'grant_type': 'authorization_code',
            'code': code,
            'client_id': self.app_key,
            'client_secret': self.app_secret,
            'redirect_uri': 'oob'
        }, previous=None)

        self._log_account(token)
        return token

    def _refresh(self, credential: BaiduToken) -> BaiduToken:
        if not credential.refresh_token:
            raise AuthenticationError("No refresh token available")

        token = self._request_token({
            'grant_type': 'refresh_token',
            'refresh_token': credential.refresh_token,
            'client_id': self.app_key,
            'client_secret': self.app_secret
        }, previous=credential)
        logger.info("Baidu access token refreshed successfully")
        return token

    def _request_token(self, params: Dict[str, str], previous: Optional[BaiduToken]) -> BaiduToken:
        try:
            response = self.session.get(
                f"{OAUTH_URL}token",
                params=params,
                headers={'User-Agent': USER_AGENT},
                timeout=REQUEST_TIMEOUT
            )
        except requests.RequestException as e:
            raise NetworkError(f"Baidu token request failed: {describe_request_error(e)}") from e

        try:
            data = response.json()
        except ValueError as e:
            raise AuthenticationError(f"Baidu token response is not JSON: {e}") from e

        if data.get('error') or not data.get('access_token'):
            reason = data.get('error_description') or data.get('error') or 'no access token returned'
            raise AuthenticationError(f"Failed to get Baidu access token: {reason}")

        expires_in = int(data.get('expires_in', 0))
        refresh_token = data.get('refresh_token') or (previous.refresh_token if previous else None)

        return BaiduToken(
            access_token=data['access_token'],
            refresh_token=refresh_token,
            expires_at=utcnow() + timedelta(seconds=expires_in - TOKEN_EXPIRY_MARGIN)
        )

    def _log_account(self, token: BaiduToken):
        """Verify a new token against the user info endpoint."""
        try:
            response = self.session.get(
                f"{BASE_URL}nas",
                params={'method': 'uinfo', 'access_token': token.access_token},
                headers={'User-Agent': USER_AGENT},
                timeout=REQUEST_TIMEOUT
            )
            info = response.json()
        except (requests.RequestException, ValueError) as e:
            raise AuthenticationError(f"Failed to verify Baidu authorization: {describe_request_error(e)}") from e

        if info.get('errno') != 0:
            raise AuthenticationError(f"Failed to get Baidu user info: errno {info.get('errno')}")

        logger.info(f"Baidu authorization succeeded for {info.get('baidu_name') or 'user'}")

        try:
            quota = self.session.get(
                QUOTA_URL,
                params={'access_token': token.access_token, 'checkfree': 1},
                headers={'User-Agent': USER_AGENT},
                timeout=REQUEST_TIMEOUT
            ).json()
        except (requests.RequestException, ValueError) as e:
            logger.debug(f"Could not read Baidu quota: {describe_request_error(e)}")
            return

        if quota.get('errno') == 0 and 'total' in quota and 'used' in quota:
            gib = 1024 ** 3
            logger.info(f"Baidu storage: {quota['used'] / gib:.2f} GB used of {quota['total'] / gib:.2f} GB")


class BaiduPanBackend(UploadBackend):
    """
    Uploads archives to Baidu Netdisk.
    """

    name = 'baidu'

    def __init__(self, credential_cache: BaiduTokenCache, session: Optional[requests.Session] = None):
        super().__init__(credential_cache)
        self.session = session or credential_cache.session

    def upload(self, local_path: str, remote_dir: str, credential: BaiduToken) -> str:
        """
        Upload a file with the sliced upload protocol.

        Returns:
            Remote path of the uploaded file
        """
        access_token = credential.access_token
        directory = normalize_remote_dir(remote_dir)
        filename = os.path.basename(local_path)
        remote_path = join_remote_path(directory, filename)
        file_size = os.path.getsize(local_path)

        logger.info(f"[baidu] Uploading {filename} ({file_size} bytes) to {remote_path}")

        self._ensure_directory(directory, access_token)

        block_list = block_md5_list(local_path)
        logger.debug(f"[baidu] {len(block_list)} blocks")

        # Precreate
        precreate = self._post(
            f"{BASE_URL}file",
            'precreate',
            params={'method': 'precreate', 'access_token': access_token},
            data={
                'path': remote_path,
                'size': str(file_size),
                'isdir': '0',
                'autoinit': '1',
                'rtype': RENAME_ON_CONFLICT,
                'block_list': json.dumps(block_list)
            }
        )
        self._check_errno(precreate, 'precreate')

        if precreate.get('return_type') == 2:
            logger.info(f"[baidu] Rapid upload matched existing content: {remote_path}")
            return remote_path

        upload_id = precreate.get('uploadid')
        if not upload_id:
            raise UploadError("Baidu precreate returned no upload ID")

        # Upload blocks
        with open(local_path, 'rb') as f:
            for index in range(len(block_list)):
                chunk = f.read(BLOCK_SIZE)
                logger.info(f"[baidu] Uploading chunk {index + 1}/{len(block_list)}")
                result = self._post(
                    PCS_UPLOAD_URL,
                    f"chunk {index}",
                    params={
                        'method': 'upload',
                        'access_token': access_token,
                        'type': 'tmpfile',
                        'path': remote_path,
                        'uploadid': upload_id,
                        'partseq': index
                    },
                    files={'file': ('file', chunk, 'application/octet-stream')},
                    timeout=CHUNK_TIMEOUT
                )
                if 'errno' in result or 'error_code' in result:
                    self._check_errno(result, f"chunk {index}")

        # Merge
        created = self._post(
            f"{BASE_URL}file",
            'create',
            params={'method': 'create', 'access_token': access_token},
            data={
                'path': remote_path,
                'size': str(file_size),
                'isdir': '0',
                'rtype': RENAME_ON_CONFLICT,
                'uploadid': upload_id,
                'block_list': json.dumps(block_list)
            }
        )
        self._check_errno(created, 'create')

        final_path = created.get('path') or remote_path
        logger.info(f"[baidu] File uploaded successfully to: {final_path}")
        return final_path

    def _ensure_directory(self, directory: str, access_token: str):
        """Create remote_dir (and parents); an existing directory is fine."""
        if directory == '/':
            return

        result = self._post(
            f"{BASE_URL}file",
            'create directory',
            params={'method': 'create', 'access_token': access_token},
            data={'path': directory, 'isdir': '1', 'size': '0', 'rtype': '0'}
        )
        errno = result.get('errno', 0)
        if errno == ERRNO_ALREADY_EXISTS:
            logger.debug(f"[baidu] Directory already exists: {directory}")
            return
        self._check_errno(result, 'create directory')

    def _post(self, url: str, action: str, timeout: int = REQUEST_TIMEOUT, **kwargs) -> Dict[str, Any]:
        try:
            response = self.session.post(
                url,
                headers={'User-Agent': USER_AGENT},
                timeout=timeout,
                **kwargs
            )
        except requests.RequestException as e:
            raise NetworkError(f"Baidu {action} request failed: {describe_request_error(e)}") from e

        if response.status_code == 401:
            raise AuthRejected(f"Baidu {action} rejected the access token (HTTP 401)")
        if response.status_code == 403:
            raise QuotaOrPermissionError(f"Baidu {action} forbidden (HTTP 403)")

        try:
            data = response.json()
        except ValueError:
            raise UploadError(f"Baidu {action} returned a non-JSON response (HTTP {response.status_code})")

        if not isinstance(data, dict):
            raise UploadError(f"Baidu {action} returned an unexpected response")
        return data

    def _check_errno(self, data: Dict[str, Any], action: str):
        errno = data.get('errno', data.get('error_code', 0))
        if errno == 0:
            return
        if errno in AUTH_ERRNOS:
            raise AuthRejected(f"Baidu {action} rejected the access token: errno {errno}")
        if errno in QUOTA_OR_PERMISSION_ERRNOS:
            raise QuotaOrPermissionError(f"Baidu {action} refused: errno {errno}")
        raise UploadError(f"Baidu {action} failed: errno {errno}")
