"""
Cloud189 (天翼云盘) backend.

Authentication is session based: a login through open.e.189.cn (password,
RSA-encrypted with the server's public key, or QR code scanned with the
mobile app) yields session cookies and a sessionKey. Both are cached on
disk and reused until they expire or are rejected; there is no refresh
token, so renewal is a fresh login.

Uploads:
1. resolve remote_dir to a folder ID, creating missing folders
2. createUploadFile (file MD5)
3. PUT the file to fileUploadUrl (skipped if the server already has the data)
4. commit via fileCommitUrl
"""

import os
import time
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional
from urllib.parse import parse_qs, urlparse

import requests

from panbackup.utils.crypto import RSAEncryptor, file_md5
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

WEB_URL = 'https://cloud.189.cn'
AUTH_URL = 'https://open.e.189.cn'
LOGIN_URL = f"{WEB_URL}/api/portal/loginUrl.action"
LOGIN_REDIRECT = f"{WEB_URL}/web/redirect.html?returnURL=/main.action"
USER_INFO_URL = f"{WEB_URL}/api/portal/v2/getUserBriefInfo.action"
LIST_FILES_URL = f"{WEB_URL}/api/open/file/listFiles.action"
CREATE_FOLDER_URL = f"{WEB_URL}/api/open/file/createFolder.action"
CREATE_UPLOAD_URL = f"{WEB_URL}/api/createUploadFile.action"

ROOT_FOLDER_ID = '-11'
PAGE_SIZE = 1000
REQUEST_TIMEOUT = 60
UPLOAD_TIMEOUT = 3600
SESSION_LIFETIME = timedelta(days=7)

QR_POLL_INTERVAL = 3  # seconds
QR_TIMEOUT = 300  # seconds
QR_STATUS_SUCCESS = 0
QR_STATUS_WAITING = -106
QR_STATUS_SCANNED = -11002
QR_STATUS_EXPIRED = -11001

AUTH_ERROR_CODES = {
    'InvalidSessionKey',
    'InvalidSession',
    'InvalidSessionId',
    'UserInvalidOpenToken',
    'InvalidAccessToken',
    'UserNotLogin'
}
QUOTA_OR_PERMISSION_CODES = {
    'InsufficientStorageSpace',
    'PermissionDenied',
    'FileTooLarge',
    'NoAuthority'
}

JSON_HEADERS = {
    'Accept': 'application/json;charset=UTF-8',
    'Referer': f"{WEB_URL}/web/main/"
}


@dataclass(frozen=True)
class Cloud189Session:
    """Cached login session."""

    account: str
    cookies: Dict[str, str]
    session_key: str
    expires_at: datetime


@dataclass(frozen=True)
class _LoginContext:
    app_id: str
    return_url: str
    param_id: str
    headers: Dict[str, str]


class Cloud189SessionCache(CredentialCache):
    """
    Session cache for one Cloud189 account.
    """

    name = 'cloud189'

    def __init__(
        self,
        store: CredentialStore,
        username: Optional[str] = None,
        password: Optional[str] = None,
        use_qr: bool = False,
        session_factory: Callable[[], requests.Session] = requests.Session,
        sleep: Callable[[float], None] = time.sleep,
        qr_timeout: int = QR_TIMEOUT
    ):
        """
        Initialize Cloud189 session cache.

        Args:
            store: Persistent credential store
            username: Account name (phone number or e-mail)
            password: Account password
            use_qr: Log in by QR code instead of password
            session_factory: Creates the HTTP session used for a login
            sleep: Sleep function used while polling QR state
            qr_timeout: Seconds to wait for the QR code to be confirmed
        """
        super().__init__(store)
        self.username = username
        self.password = password
        self.use_qr = use_qr
        self.session_factory = session_factory
        self.sleep = sleep
        self.qr_timeout = qr_timeout

    @property
    def account(self) -> str:
        if self.use_qr:
            return self.username or 'qr'
        return self.username or ''

    def _from_state(self, state: Dict[str, Any]) -> Cloud189Session:
        account = state.get('account')
        if account and account != self.account:
            raise ValueError("session belongs to a different account")

        expires_at = parse_timestamp(state.get('expires_at'))
        if expires_at is None:
            raise ValueError("missing or invalid expires_at")

        cookies = state.get('cookies')
        if not isinstance(cookies, dict):
            raise ValueError("missing cookies")

        return Cloud189Session(
            account=self.account,
            cookies={str(k): str(v) for k, v in cookies.items()},
            session_key=state['session_key'],
            expires_at=expires_at
        )

    def _to_state(self, credential: Cloud189Session) -> Dict[str, Any]:
        return {
            'account': credential.account,
            'cookies': credential.cookies,
            'session_key': credential.session_key,
            'expires_at': credential.expires_at.isoformat()
        }

    def _is_valid(self, credential: Cloud189Session) -> bool:
        return bool(credential.session_key) and utcnow() < credential.expires_at

    def _refresh(self, credential: Cloud189Session) -> Cloud189Session:
        # Sessions cannot be renewed in place
        return self._authenticate()

    def _authenticate(self) -> Cloud189Session:
        session = self.session_factory()
        context = self._start_login(session)

        if self.use_qr:
            redirect_url = self._login_with_qr(session, context)
        else:
            redirect_url = self._login_with_password(session, context)

        try:
            session.get(redirect_url, timeout=REQUEST_TIMEOUT)
            response = session.get(USER_INFO_URL, headers=JSON_HEADERS, timeout=REQUEST_TIMEOUT)
            info = response.json()
        except ValueError as e:
            raise AuthenticationError(f"Cloud189 user info is not JSON: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 login redirect failed: {describe_request_error(e)}") from e

        session_key = info.get('sessionKey')
        if not session_key:
            raise AuthenticationError(
                f"Cloud189 login did not return a session key (res_code {info.get('res_code')})"
            )

        logger.info("Cloud189 login succeeded")
        return Cloud189Session(
            account=self.account,
            cookies=requests.utils.dict_from_cookiejar(session.cookies),
            session_key=session_key,
            expires_at=utcnow() + SESSION_LIFETIME
        )

    def _start_login(self, session: requests.Session) -> _LoginContext:
        """Open the login page and fetch the login app configuration."""
        try:
            response = session.get(
                LOGIN_URL,
                params={'redirectURL': LOGIN_REDIRECT},
                timeout=REQUEST_TIMEOUT
            )
            query = parse_qs(urlparse(response.url).query)
            app_id = _first(query, 'appId')
            lt = _first(query, 'lt')
            req_id = _first(query, 'reqId')
            if not (app_id and lt and req_id):
                raise AuthenticationError("Cloud189 login page did not provide login parameters")

            headers = {
                'lt': lt,
                'reqId': req_id,
                'Referer': response.url,
                'Origin': AUTH_URL
            }
            conf = session.post(
                f"{AUTH_URL}/api/logbox/oauth2/appConf.do",
                data={'version': '2.0', 'appKey': app_id},
                headers=headers,
                timeout=REQUEST_TIMEOUT
            ).json()
        except ValueError as e:
            raise AuthenticationError(f"Cloud189 login configuration is not JSON: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 login setup failed: {describe_request_error(e)}") from e

        data = conf.get('data') or {}
        if not data.get('returnUrl') or not data.get('paramId'):
            raise AuthenticationError("Cloud189 login configuration is incomplete")

        return _LoginContext(
            app_id=app_id,
            return_url=data['returnUrl'],
            param_id=data['paramId'],
            headers=headers
        )

    def _login_with_password(self, session: requests.Session, context: _LoginContext) -> str:
        if not self.username or not self.password:
            raise AuthenticationError("Cloud189 username and password are required")

        try:
            conf = session.post(
                f"{AUTH_URL}/api/logbox/config/encryptConf.do",
                data={'appId': context.app_id},
                headers=context.headers,
                timeout=REQUEST_TIMEOUT
            ).json()
            key_data = conf.get('data') or {}
            encryptor = RSAEncryptor(key_data['pubKey'], prefix=key_data.get('pre', ''))
        except (KeyError, ValueError) as e:
            raise AuthenticationError(f"Cloud189 encryption config is invalid: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 encryption config request failed: {describe_request_error(e)}") from e

        form = {
            'version': 'v2.0',
            'apToken': '',
            'appKey': context.app_id,
            'accountType': '01',
            'userName': encryptor.encrypt_hex(self.username),
            'epd': encryptor.encrypt_hex(self.password),
            'captchaType': '',
            'validateCode': '',
            'smsValidateCode': '',
            'captchaToken': '',
            'returnUrl': context.return_url,
            'mailSuffix': '@189.cn',
            'dynamicCheck': 'FALSE',
            'clientType': '1',
            'cb_SaaSlogin': '',
            'isOauth2': 'false',
            'state': '',
            'paramId': context.param_id
        }

        try:
            result = session.post(
                f"{AUTH_URL}/api/logbox/oauth2/loginSubmit.do",
                data=form,
                headers=context.headers,
                timeout=REQUEST_TIMEOUT
            ).json()
        except ValueError as e:
            raise AuthenticationError(f"Cloud189 login response is not JSON: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 login request failed: {describe_request_error(e)}") from e

        if result.get('result') != 0 or not result.get('toUrl'):
            raise AuthenticationError(f"Cloud189 login failed: {result.get('msg') or result.get('result')}")
        return result['toUrl']

    def _login_with_qr(self, session: requests.Session, context: _LoginContext) -> str:
        try:
            uuid_data = session.post(
                f"{AUTH_URL}/api/logbox/oauth2/getUUID.do",
                data={'appId': context.app_id},
                headers=context.headers,
                timeout=REQUEST_TIMEOUT
            ).json()
        except ValueError as e:
            raise AuthenticationError(f"Cloud189 QR code response is not JSON: {e}") from e
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 QR code request failed: {describe_request_error(e)}") from e

        uuid = uuid_data.get('uuid')
        encryuuid = uuid_data.get('encryuuid')
        if not uuid or not encryuuid:
            raise AuthenticationError("Cloud189 did not return a QR code")

        image_url = (
            f"{AUTH_URL}/api/logbox/oauth2/image.do"
            f"?uuid={uuid_data.get('encodeuuid') or uuid}&REQID={context.headers['reqId']}"
        )
        logger.info(f"Scan this QR code with the Cloud189 app to log in: {image_url}")

        deadline = time.monotonic() + self.qr_timeout
        while time.monotonic() < deadline:
            now = datetime.now()
            try:
                state = session.post(
                    f"{AUTH_URL}/api/logbox/oauth2/qrcodeLoginState.do",
                    data={
                        'appId': context.app_id,
                        'clientType': '1',
                        'returnUrl': context.return_url,
                        'paramId': context.param_id,
                        'uuid': uuid,
                        'encryuuid': encryuuid,
                        'date': now.strftime('%Y-%m-%d%H:%M:%S'),
                        'timeStamp': str(int(now.timestamp() * 1000))
                    },
                    headers=context.headers,
                    timeout=REQUEST_TIMEOUT
                ).json()
            except ValueError as e:
                raise AuthenticationError(f"Cloud189 QR state response is not JSON: {e}") from e
            except requests.RequestException as e:
                raise NetworkError(f"Cloud189 QR state request failed: {describe_request_error(e)}") from e

            status = state.get('status')
            if status == QR_STATUS_SUCCESS and state.get('redirectUrl'):
                return state['redirectUrl']
            if status == QR_STATUS_EXPIRED:
                raise AuthenticationError("Cloud189 QR code expired before it was confirmed")
            if status == QR_STATUS_SCANNED:
                logger.debug("QR code scanned, waiting for confirmation")
            elif status != QR_STATUS_WAITING:
                raise AuthenticationError(f"Cloud189 QR login failed: status {status}")

            self.sleep(QR_POLL_INTERVAL)

        raise AuthenticationError("Timed out waiting for the Cloud189 QR code to be confirmed")


class Cloud189Backend(UploadBackend):
    """
    Uploads archives to Cloud189.
    """

    name = 'cloud189'

    def __init__(self, credential_cache: Cloud189SessionCache, session: Optional[requests.Session] = None):
        super().__init__(credential_cache)
        self.session = session or requests.Session()

    def upload(self, local_path: str, remote_dir: str, credential: Cloud189Session) -> str:
        """
        Upload a file into remote_dir.

        Returns:
            Remote path of the uploaded file
        """
        directory = normalize_remote_dir(remote_dir)
        filename = os.path.basename(local_path)
        remote_path = join_remote_path(directory, filename)
        file_size = os.path.getsize(local_path)

        logger.info(f"[cloud189] Uploading {filename} ({file_size} bytes) to {remote_path}")

        folder_id = self.ensure_folder(directory, credential)

        created = self._request_json('post', CREATE_UPLOAD_URL, 'create upload', credential, data={
            'parentFolderId': folder_id,
            'baseFileId': '',
            'fileName': filename,
            'size': str(file_size),
            'md5': file_md5(local_path),
            'lastWrite': '',
            'localPath': filename,
            'opertype': '1',
            'flag': '1',
            'resumePolicy': '1',
            'isLog': '0'
        })

        upload_file_id = created.get('uploadFileId')
        upload_url = created.get('fileUploadUrl')
        commit_url = created.get('fileCommitUrl')
        if not upload_file_id or not commit_url:
            raise UploadError("Cloud189 createUploadFile returned no upload target")

        transfer_headers = {
            'SessionKey': credential.session_key,
            'ResumePolicy': '1',
            'Edrive-UploadFileId': str(upload_file_id),
            'Edrive-UploadFileRange': f"0-{file_size}"
        }

        if str(created.get('fileDataExists', 0)) == '1':
            logger.info("[cloud189] Server already has the file data, skipping transfer")
        else:
            if not upload_url:
                raise UploadError("Cloud189 createUploadFile returned no upload URL")
            with open(local_path, 'rb') as f:
                self._send('put', upload_url, 'transfer', credential,
                           data=f, headers=transfer_headers, timeout=UPLOAD_TIMEOUT)

        self._send('post', commit_url, 'commit', credential, headers=transfer_headers, data={
            'uploadFileId': str(upload_file_id),
            'opertype': '1',
            'resumePolicy': '1',
            'isLog': '0'
        })

        logger.info(f"[cloud189] File uploaded successfully to: {remote_path}")
        return remote_path

    def ensure_folder(self, directory: str, credential: Cloud189Session) -> str:
        """
        Resolve a remote directory path to a folder ID, creating missing folders.

        Returns:
            Folder ID of the last path segment
        """
        folder_id = ROOT_FOLDER_ID
        for name in [part for part in directory.split('/') if part]:
            child_id = self._find_child_folder(folder_id, name, credential)
            if child_id is None:
                child_id = self._create_folder(folder_id, name, credential)
            folder_id = child_id
        return folder_id

    def _find_child_folder(self, parent_id: str, name: str, credential: Cloud189Session) -> Optional[str]:
        page = 1
        seen = 0
        while True:
            data = self._request_json('get', LIST_FILES_URL, 'list folder', credential, params={
                'folderId': parent_id,
                'pageNum': page,
                'pageSize': PAGE_SIZE,
                'mediaType': 0,
                'iconOption': 5,
                'orderBy': 'lastOpTime',
                'descending': 'true'
            })
            listing = data.get('fileListAO') or {}
            folders = listing.get('folderList') or []
            files = listing.get('fileList') or []

            for folder in folders:
                if folder.get('name') == name:
                    return str(folder['id'])

            seen += len(folders) + len(files)
            total = int(listing.get('count') or 0)
            if (not folders and not files) or seen >= total:
                return None
            page += 1

    def _create_folder(self, parent_id: str, name: str, credential: Cloud189Session) -> str:
        logger.info(f"[cloud189] Creating folder: {name}")
        try:
            data = self._request_json('post', CREATE_FOLDER_URL, 'create folder', credential, data={
                'parentFolderId': parent_id,
                'folderName': name
            })
        except (AuthRejected, QuotaOrPermissionError, NetworkError):
            raise
        except UploadError:
            # Another entry may have created it concurrently
            existing = self._find_child_folder(parent_id, name, credential)
            if existing is None:
                raise
            return existing

        folder_id = data.get('id')
        if folder_id is None:
            raise UploadError(f"Cloud189 did not return an ID for folder {name}")
        return str(folder_id)

    def _send(self, method: str, url: str, action: str, credential: Cloud189Session,
              scan_body: bool = True, **kwargs) -> requests.Response:
        kwargs.setdefault('timeout', REQUEST_TIMEOUT)
        try:
            response = self.session.request(method, url, cookies=credential.cookies, **kwargs)
        except requests.RequestException as e:
            raise NetworkError(f"Cloud189 {action} request failed: {describe_request_error(e)}") from e

        if response.status_code == 401:
            raise AuthRejected(f"Cloud189 {action} rejected the session (HTTP 401)")
        if response.status_code == 403:
            raise QuotaOrPermissionError(f"Cloud189 {action} forbidden (HTTP 403)")

        # Transfer and commit answer in XML; look for error codes in the raw body
        if scan_body:
            body = response.text or ''
            for code in AUTH_ERROR_CODES:
                if code in body:
                    raise AuthRejected(f"Cloud189 {action} rejected the session: {code}")
            for code in QUOTA_OR_PERMISSION_CODES:
                if code in body:
                    raise QuotaOrPermissionError(f"Cloud189 {action} refused: {code}")

        if response.status_code >= 400:
            raise UploadError(f"Cloud189 {action} failed (HTTP {response.status_code})")
        return response

    def _request_json(self, method: str, url: str, action: str, credential: Cloud189Session, **kwargs) -> Dict[str, Any]:
        headers = dict(JSON_HEADERS)
        headers['SessionKey'] = credential.session_key
        headers.update(kwargs.pop('headers', {}))

        response = self._send(method, url, action, credential, scan_body=False, headers=headers, **kwargs)
        try:
            data = response.json()
        except ValueError:
            if 'login' in (response.url or '').lower():
                raise AuthRejected(f"Cloud189 {action} redirected to login")
            raise UploadError(f"Cloud189 {action} returned a non-JSON response")

        if not isinstance(data, dict):
            raise UploadError(f"Cloud189 {action} returned an unexpected response")

        code = data.get('errorCode') or data.get('res_code', 0)
        if code in (0, '0', None, ''):
            return data

        code = str(code)
        message = data.get('res_message') or data.get('errorMsg') or code
        if code in AUTH_ERROR_CODES:
            raise AuthRejected(f"Cloud189 {action} rejected the session: {code}")
        if code in QUOTA_OR_PERMISSION_CODES:
            raise QuotaOrPermissionError(f"Cloud189 {action} refused: {code}")
        raise UploadError(f"Cloud189 {action} failed: {message}")


def _first(query: Dict[str, Any], key: str) -> Optional[str]:
    values = query.get(key)
    return values[0] if values else None
