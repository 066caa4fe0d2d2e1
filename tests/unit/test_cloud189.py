"""
Unit tests for the Cloud189 backend (panbackup/backup/cloud189.py).

HTTP is mocked by replacing the requests session with a MagicMock.
"""

import hashlib
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest
import requests
from cryptography.hazmat.primitives.asymmetric import padding
from freezegun import freeze_time

from panbackup.backup.cloud189 import (
    CREATE_FOLDER_URL,
    CREATE_UPLOAD_URL,
    LIST_FILES_URL,
    ROOT_FOLDER_ID,
    USER_INFO_URL,
    Cloud189Backend,
    Cloud189Session,
    Cloud189SessionCache
)
from panbackup.backup.credentials import AuthenticationError
from panbackup.backup.storage import AuthRejected, NetworkError, QuotaOrPermissionError, UploadError


NOW = datetime(2024, 1, 15, 12, 0, 0, tzinfo=timezone.utc)
LOGIN_PAGE = (
    "https://open.e.189.cn/api/logbox/separate/web/index.html"
    "?appId=cloud&lt=LT123&reqId=REQ1"
)
CALLBACK_URL = "https://cloud.189.cn/api/portal/callbackUnify.action?code=abc"


@pytest.fixture
def login_session(mock_session):
    mock_session.cookies.set('COOKIE_LOGIN_USER', 'cookie-value')
    return mock_session


@pytest.fixture
def make_cache(credential_store, login_session):
    """Build a Cloud189SessionCache whose logins use the mocked session."""
    def factory(**kwargs):
        kwargs.setdefault('username', 'user@189.cn')
        kwargs.setdefault('password', 'pw')
        kwargs.setdefault('sleep', MagicMock())
        return Cloud189SessionCache(credential_store, session_factory=lambda: login_session, **kwargs)
    return factory


@pytest.fixture
def cloud_session():
    return Cloud189Session(
        account='user@189.cn',
        cookies={'COOKIE_LOGIN_USER': 'cookie-value'},
        session_key='SK1',
        expires_at=NOW + timedelta(days=7)
    )


def login_start_responses(make_response):
    page = make_response(None, url=LOGIN_PAGE)
    conf = make_response({'result': '0', 'data': {'returnUrl': 'https://m.cloud.189.cn/back', 'paramId': 'P1'}})
    return page, conf


@freeze_time("2024-01-15 12:00:00")
class TestCloud189SessionCache:
    """Test Cloud189SessionCache login flows."""

    def test_password_login(self, make_cache, login_session, make_response, credential_store,
                            rsa_private_key, rsa_public_key_body):
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [
            page,
            make_response(None),
            make_response({'res_code': 0, 'sessionKey': 'SK1'}),
        ]
        login_session.post.side_effect = [
            conf,
            make_response({'result': 0, 'data': {'pubKey': rsa_public_key_body, 'pre': '{NRP}'}}),
            make_response({'result': 0, 'toUrl': CALLBACK_URL}),
        ]

        session = make_cache().get_valid_credential()

        assert session.session_key == 'SK1'
        assert session.cookies == {'COOKIE_LOGIN_USER': 'cookie-value'}
        assert session.expires_at == NOW + timedelta(days=7)

        form = login_session.post.call_args_list[2][1]['data']
        assert form['paramId'] == 'P1'
        assert form['userName'].startswith('{NRP}')
        encrypted_user = bytes.fromhex(form['userName'][len('{NRP}'):])
        assert rsa_private_key.decrypt(encrypted_user, padding.PKCS1v15()) == b'user@189.cn'
        assert 'pw' not in form.values()

        redirect_call, info_call = login_session.get.call_args_list[1:]
        assert redirect_call[0][0] == CALLBACK_URL
        assert info_call[0][0] == USER_INFO_URL

        state = credential_store.load()
        assert state['account'] == 'user@189.cn'
        assert state['session_key'] == 'SK1'

    def test_password_login_rejected(self, make_cache, login_session, make_response, rsa_public_key_body):
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [page]
        login_session.post.side_effect = [
            conf,
            make_response({'result': 0, 'data': {'pubKey': rsa_public_key_body, 'pre': '{NRP}'}}),
            make_response({'result': -2, 'msg': 'wrong password'}),
        ]

        with pytest.raises(AuthenticationError, match="wrong password"):
            make_cache().get_valid_credential()

    def test_login_page_without_parameters(self, make_cache, login_session, make_response):
        login_session.get.return_value = make_response(None, url='https://cloud.189.cn/web/main/')

        with pytest.raises(AuthenticationError, match="login parameters"):
            make_cache().get_valid_credential()

    def test_login_network_error(self, make_cache, login_session):
        login_session.get.side_effect = requests.ConnectionError("offline")

        with pytest.raises(NetworkError):
            make_cache().get_valid_credential()

    def test_qr_login(self, make_cache, login_session, make_response):
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [
            page,
            make_response(None),
            make_response({'res_code': 0, 'sessionKey': 'SK-QR'}),
        ]
        login_session.post.side_effect = [
            conf,
            make_response({'uuid': 'U1', 'encryuuid': 'E1', 'encodeuuid': 'EU1'}),
            make_response({'status': -106}),
            make_response({'status': -11002}),
            make_response({'status': 0, 'redirectUrl': CALLBACK_URL}),
        ]
        sleep = MagicMock()

        session = make_cache(username=None, password=None, use_qr=True, sleep=sleep).get_valid_credential()

        assert session.session_key == 'SK-QR'
        assert sleep.call_count == 2
        poll = login_session.post.call_args_list[2][1]['data']
        assert poll['uuid'] == 'U1'
        assert poll['encryuuid'] == 'E1'

    def test_qr_code_expired(self, make_cache, login_session, make_response):
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [page]
        login_session.post.side_effect = [
            conf,
            make_response({'uuid': 'U1', 'encryuuid': 'E1'}),
            make_response({'status': -11001}),
        ]

        with pytest.raises(AuthenticationError, match="expired"):
            make_cache(use_qr=True).get_valid_credential()

    def test_qr_login_times_out(self, make_cache, login_session, make_response):
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [page]
        login_session.post.side_effect = [
            conf,
            make_response({'uuid': 'U1', 'encryuuid': 'E1'}),
        ]

        with pytest.raises(AuthenticationError, match="Timed out"):
            make_cache(use_qr=True, qr_timeout=0).get_valid_credential()

    def test_cached_session_reused(self, make_cache, login_session, credential_store):
        credential_store.save({
            'account': 'user@189.cn',
            'cookies': {'a': 'b'},
            'session_key': 'CACHED',
            'expires_at': (NOW + timedelta(days=1)).isoformat()
        })

        assert make_cache().get_valid_credential().session_key == 'CACHED'
        login_session.get.assert_not_called()

    def test_session_for_other_account_ignored(self, make_cache, login_session, make_response,
                                               credential_store, rsa_public_key_body):
        credential_store.save({
            'account': 'someone-else',
            'cookies': {},
            'session_key': 'FOREIGN',
            'expires_at': (NOW + timedelta(days=1)).isoformat()
        })
        page, conf = login_start_responses(make_response)
        login_session.get.side_effect = [
            page,
            make_response(None),
            make_response({'res_code': 0, 'sessionKey': 'SK1'}),
        ]
        login_session.post.side_effect = [
            conf,
            make_response({'result': 0, 'data': {'pubKey': rsa_public_key_body}}),
            make_response({'result': 0, 'toUrl': CALLBACK_URL}),
        ]

        assert make_cache().get_valid_credential().session_key == 'SK1'

    def test_invalidate_clears_session(self, make_cache, credential_store):
        credential_store.save({
            'account': 'user@189.cn',
            'cookies': {},
            'session_key': 'CACHED',
            'expires_at': (NOW + timedelta(days=1)).isoformat()
        })
        cache = make_cache()
        session = cache.get_valid_credential()

        cache.invalidate(session)

        assert credential_store.load() is None


class TestCloud189Backend:
    """Test Cloud189Backend upload."""

    def listing(self, folders=(), files=(), count=None):
        folders = list(folders)
        files = list(files)
        return {
            'res_code': 0,
            'fileListAO': {
                'count': len(folders) + len(files) if count is None else count,
                'folderList': folders,
                'fileList': files
            }
        }

    def test_upload_creates_missing_folder(self, mock_session, make_response, sample_archive, cloud_session):
        mock_session.request.side_effect = [
            make_response(self.listing(folders=[{'id': 100, 'name': 'apps'}])),
            make_response(self.listing()),
            make_response({'res_code': 0, 'id': 200, 'name': 'backup'}),
            make_response({
                'res_code': 0,
                'uploadFileId': 'UF1',
                'fileUploadUrl': 'https://upload.cloud.189.cn/put',
                'fileCommitUrl': 'https://upload.cloud.189.cn/commit',
                'fileDataExists': 0
            }),
            make_response(None, text='<?xml version="1.0"?><result>ok</result>'),
            make_response(None, text='<?xml version="1.0"?><file><id>1</id></file>'),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        remote = backend.upload(str(sample_archive), '/apps/backup', cloud_session)

        assert remote == '/apps/backup/data-20240115.tar.zst'
        calls = mock_session.request.call_args_list

        assert calls[0][0] == ('get', LIST_FILES_URL)
        assert calls[0][1]['params']['folderId'] == ROOT_FOLDER_ID
        assert calls[1][1]['params']['folderId'] == '100'
        assert calls[2][0] == ('post', CREATE_FOLDER_URL)
        assert calls[2][1]['data'] == {'parentFolderId': '100', 'folderName': 'backup'}

        create = calls[3]
        assert create[0] == ('post', CREATE_UPLOAD_URL)
        assert create[1]['data']['parentFolderId'] == '200'
        assert create[1]['data']['md5'] == hashlib.md5(b'x' * 1024).hexdigest()
        assert create[1]['headers']['SessionKey'] == 'SK1'
        assert create[1]['cookies'] == {'COOKIE_LOGIN_USER': 'cookie-value'}

        put = calls[4]
        assert put[0] == ('put', 'https://upload.cloud.189.cn/put')
        assert put[1]['headers']['Edrive-UploadFileId'] == 'UF1'
        assert put[1]['headers']['Edrive-UploadFileRange'] == '0-1024'

        assert calls[5][0] == ('post', 'https://upload.cloud.189.cn/commit')

    def test_existing_data_skips_transfer(self, mock_session, make_response, sample_archive, cloud_session):
        mock_session.request.side_effect = [
            make_response({
                'res_code': 0,
                'uploadFileId': 'UF1',
                'fileUploadUrl': 'https://upload.cloud.189.cn/put',
                'fileCommitUrl': 'https://upload.cloud.189.cn/commit',
                'fileDataExists': 1
            }),
            make_response(None, text='<file><id>1</id></file>'),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        backend.upload(str(sample_archive), '/', cloud_session)

        methods = [call[0][0] for call in mock_session.request.call_args_list]
        assert methods == ['post', 'post']

    def test_folder_found_on_second_page(self, mock_session, make_response, cloud_session):
        filler = [{'id': i, 'name': f"file-{i}"} for i in range(1000)]
        mock_session.request.side_effect = [
            make_response(self.listing(files=filler, count=1001)),
            make_response(self.listing(folders=[{'id': 7, 'name': 'apps'}], count=1001)),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        assert backend.ensure_folder('/apps', cloud_session) == '7'
        assert mock_session.request.call_args_list[1][1]['params']['pageNum'] == 2

    def test_create_folder_race_resolved_by_relisting(self, mock_session, make_response, cloud_session):
        mock_session.request.side_effect = [
            make_response(self.listing()),
            make_response({'res_code': 'FileAlreadyExists', 'res_message': 'exists'}),
            make_response(self.listing(folders=[{'id': 9, 'name': 'apps'}])),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        assert backend.ensure_folder('/apps', cloud_session) == '9'

    def test_invalid_session_code(self, mock_session, make_response, cloud_session):
        mock_session.request.return_value = make_response({'errorCode': 'InvalidSessionKey'})
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        with pytest.raises(AuthRejected):
            backend.ensure_folder('/apps', cloud_session)

    def test_http_401(self, mock_session, make_response, cloud_session):
        mock_session.request.return_value = make_response(None, status_code=401)
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        with pytest.raises(AuthRejected):
            backend.ensure_folder('/apps', cloud_session)

    def test_commit_quota_error(self, mock_session, make_response, sample_archive, cloud_session):
        mock_session.request.side_effect = [
            make_response({
                'res_code': 0,
                'uploadFileId': 'UF1',
                'fileUploadUrl': 'https://upload.cloud.189.cn/put',
                'fileCommitUrl': 'https://upload.cloud.189.cn/commit'
            }),
            make_response(None, text='<result>ok</result>'),
            make_response(None, status_code=400, text='<error><code>InsufficientStorageSpace</code></error>'),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        with pytest.raises(QuotaOrPermissionError):
            backend.upload(str(sample_archive), '/', cloud_session)

    def test_transfer_server_error(self, mock_session, make_response, sample_archive, cloud_session):
        mock_session.request.side_effect = [
            make_response({
                'res_code': 0,
                'uploadFileId': 'UF1',
                'fileUploadUrl': 'https://upload.cloud.189.cn/put',
                'fileCommitUrl': 'https://upload.cloud.189.cn/commit'
            }),
            make_response(None, status_code=500, text='<error>internal</error>'),
        ]
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        with pytest.raises(UploadError, match="HTTP 500"):
            backend.upload(str(sample_archive), '/', cloud_session)

    def test_network_error(self, mock_session, cloud_session):
        mock_session.request.side_effect = requests.ConnectionError("reset")
        backend = Cloud189Backend(MagicMock(), session=mock_session)

        with pytest.raises(NetworkError):
            backend.ensure_folder('/apps', cloud_session)
