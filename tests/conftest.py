"""
Shared pytest fixtures for panbackup tests.

This module provides fixtures for:
- Temporary source trees and archives
- Configuration files
- In-memory credential caches and fake upload backends
- Mock HTTP responses and a mocked scheduler
"""

import os
import json
import tarfile
from datetime import date
from unittest.mock import MagicMock, patch

import pytest
import requests

from panbackup.backup.credentials import CredentialCache, CredentialStore
from panbackup.backup.storage import UploadBackend


RUN_DATE = date(2024, 1, 15)


class FakeCredentialCache(CredentialCache):
    """
    Credential cache whose credentials are plain strings 'token-N'.

    Every authentication issues the next token and is counted.
    """

    name = 'fake'

    def __init__(self, store):
        super().__init__(store)
        self.authentications = 0
        self.refreshes = 0

    def _from_state(self, state):
        return state['token']

    def _to_state(self, credential):
        return {'token': credential}

    def _is_valid(self, credential):
        return not credential.startswith('expired')

    def _authenticate(self):
        self.authentications += 1
        return f"token-{self.authentications}"

    def _refresh(self, credential):
        self.refreshes += 1
        return f"refreshed-{self.refreshes}"


class FakeBackend(UploadBackend):
    """
    Backend that records uploads and raises queued errors.

    Args:
        name: Backend name
        errors: Exceptions raised by successive upload() calls (None = succeed)
    """

    def __init__(self, credential_cache, name='fake', errors=None):
        super().__init__(credential_cache)
        self.name = name
        self.errors = list(errors or [])
        self.uploads = []

    def upload(self, local_path, remote_dir, credential):
        self.uploads.append((local_path, remote_dir, credential))
        if self.errors:
            error = self.errors.pop(0)
            if error is not None:
                raise error
        return f"{remote_dir.rstrip('/')}/{os.path.basename(local_path)}"


@pytest.fixture
def run_date():
    """Fixed run date: 2024-01-15."""
    return RUN_DATE


@pytest.fixture
def temp_files(tmp_path):
    """
    Create temporary test files and directories.

    Creates:
    - data/test_file1.txt
    - data/test_file2.log
    - data/nested/test_file3.txt
    """
    data_dir = tmp_path / 'data'
    data_dir.mkdir()
    (data_dir / 'test_file1.txt').write_text('Test content 1')
    (data_dir / 'test_file2.log').write_text('Test log content')

    nested_dir = data_dir / 'nested'
    nested_dir.mkdir()
    (nested_dir / 'test_file3.txt').write_text('Nested test content')

    return data_dir


@pytest.fixture
def archive_dir(tmp_path):
    """Directory where test archives are written."""
    directory = tmp_path / 'archives'
    directory.mkdir()
    return directory


@pytest.fixture
def sample_archive(tmp_path):
    """
    Create a small file standing in for a built archive.
    """
    archive_path = tmp_path / 'data-20240115.tar.zst'
    archive_path.write_bytes(b'x' * 1024)
    return archive_path


@pytest.fixture
def credential_store(tmp_path):
    """CredentialStore backed by a file in tmp_path."""
    return CredentialStore(str(tmp_path / 'creds' / 'state.json'))


@pytest.fixture
def fake_cache(credential_store):
    """FakeCredentialCache using the temporary store."""
    return FakeCredentialCache(credential_store)


@pytest.fixture
def fake_backend_factory(tmp_path):
    """
    Build FakeBackends, each with its own credential store.
    """
    def factory(name='fake', errors=None):
        cache = FakeCredentialCache(CredentialStore(str(tmp_path / 'creds' / f"{name}.json")))
        return FakeBackend(cache, name=name, errors=errors)
    return factory


@pytest.fixture
def write_config(tmp_path):
    """
    Write a TOML configuration and return its path.

    Usage: write_config('[app]\\n...')
    """
    def writer(content, name='backup.toml'):
        path = tmp_path / name
        path.write_text(content, encoding='utf-8')
        return str(path)
    return writer


@pytest.fixture
def make_response():
    """
    Build MagicMock HTTP responses.

    Usage: make_response({'errno': 0}, status_code=200, url='...', text='...')
    """
    def factory(payload=None, status_code=200, url='', text=None):
        response = MagicMock()
        response.status_code = status_code
        response.url = url
        if isinstance(payload, Exception):
            response.json.side_effect = payload
        else:
            response.json.return_value = payload
        if text is None:
            text = json.dumps(payload) if payload is not None and not isinstance(payload, Exception) else ''
        response.text = text
        return response
    return factory


@pytest.fixture
def mock_session():
    """MagicMock standing in for requests.Session."""
    session = MagicMock(spec=requests.Session)
    session.cookies = requests.cookies.RequestsCookieJar()
    return session


@pytest.fixture
def read_archive_names():
    """Return member names of a .tar.zst archive."""
    import zstandard

    def reader(archive_path):
        with open(archive_path, 'rb') as raw:
            with zstandard.ZstdDecompressor().stream_reader(raw) as stream:
                with tarfile.open(fileobj=stream, mode='r|') as tar:
                    return sorted(member.name for member in tar)
    return reader


@pytest.fixture(scope='function')
def mock_scheduler():
    """
    Mock APScheduler for testing scheduler functionality.
    """
    with patch('panbackup.scheduler.BlockingScheduler') as mock_sched:
        scheduler_instance = MagicMock()
        mock_sched.return_value = scheduler_instance

        scheduler_instance.running = False
        scheduler_instance.get_jobs.return_value = []

        yield scheduler_instance


@pytest.fixture(scope='session')
def rsa_private_key():
    """2048-bit RSA key pair; tests use its public half as a server key."""
    from cryptography.hazmat.primitives.asymmetric import rsa
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture(scope='session')
def rsa_public_key_body(rsa_private_key):
    """Base64 DER body of the public key, as Cloud189 serves it."""
    from cryptography.hazmat.primitives import serialization
    pem = rsa_private_key.public_key().public_bytes(
        serialization.Encoding.PEM,
        serialization.PublicFormat.SubjectPublicKeyInfo
    ).decode()
    return ''.join(line for line in pem.splitlines() if not line.startswith('-----'))
