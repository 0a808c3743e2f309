"""Tests for the local and S3 storage backends."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError

from deployguard.errors import ConfigurationError, ObjectExistsError, StorageError
from deployguard.storage import LocalStorage, S3Storage, get_storage_backend


def client_error(code):
    return ClientError({'Error': {'Code': code, 'Message': code}}, 'PutObject')


class TestLocalStorage:

    @pytest.fixture
    def storage(self, tmp_path):
        return LocalStorage({'state_dir': str(tmp_path)})

    def test_create_then_read(self, storage, tmp_path):
        location = storage.create('snapshots/staging/a.yaml', 'content')

        assert location == str(tmp_path / 'snapshots' / 'staging' / 'a.yaml')
        assert storage.read('snapshots/staging/a.yaml') == 'content'
        assert storage.exists('snapshots/staging/a.yaml')

    def test_write_replaces(self, storage):
        storage.write('snapshots/staging/INDEX.yaml', 'one')
        storage.write('snapshots/staging/INDEX.yaml', 'two')

        assert storage.read('snapshots/staging/INDEX.yaml') == 'two'

    def test_read_missing(self, storage):
        with pytest.raises(StorageError):
            storage.read('records/staging/nope.yaml')

    def test_list_keys(self, storage):
        storage.create('records/staging/b.yaml', '')
        storage.create('records/staging/a.yaml', '')
        storage.create('records/production/c.yaml', '')

        assert storage.list_keys('records/staging/') == ['records/staging/a.yaml', 'records/staging/b.yaml']
        assert storage.list_keys('snapshots/') == []


class TestS3Storage:

    @pytest.fixture
    def client(self):
        return MagicMock()

    @pytest.fixture
    def storage(self, client):
        return S3Storage({'bucket_name': 'state-bucket', 'prefix': 'dg/'}, client=client)

    def test_create_is_conditional(self, storage, client):
        location = storage.create('snapshots/staging/a.yaml', 'body')

        client.put_object.assert_called_once_with(
            Bucket='state-bucket', Key='dg/snapshots/staging/a.yaml', Body=b'body', IfNoneMatch='*'
        )
        assert location == 's3://state-bucket/dg/snapshots/staging/a.yaml'

    def test_create_existing_key(self, storage, client):
        client.put_object.side_effect = client_error('PreconditionFailed')

        with pytest.raises(ObjectExistsError):
            storage.create('snapshots/staging/a.yaml', 'body')

    def test_other_client_error(self, storage, client):
        client.put_object.side_effect = client_error('AccessDenied')

        with pytest.raises(StorageError, match="AccessDenied") as excinfo:
            storage.create('snapshots/staging/a.yaml', 'body')
        assert not isinstance(excinfo.value, ObjectExistsError)

    def test_read(self, storage, client):
        client.get_object.return_value = {'Body': MagicMock(read=lambda: b'hello')}

        assert storage.read('records/staging/r.yaml') == 'hello'

    def test_exists(self, storage, client):
        client.head_object.side_effect = client_error('404')

        assert storage.exists('records/staging/r.yaml') is False

    def test_list_keys_strips_prefix(self, storage, client):
        client.get_paginator.return_value.paginate.return_value = [
            {'Contents': [{'Key': 'dg/records/staging/b.yaml'}, {'Key': 'dg/records/staging/a.yaml'}]},
            {},
        ]

        assert storage.list_keys('records/staging/') == ['records/staging/a.yaml', 'records/staging/b.yaml']

    def test_missing_credentials(self, monkeypatch):
        monkeypatch.delenv('AWS_ACCESS_KEY_ID', raising=False)
        monkeypatch.delenv('AWS_SECRET_ACCESS_KEY', raising=False)

        with pytest.raises(ConfigurationError, match="AWS_ACCESS_KEY_ID"):
            S3Storage({'bucket_name': 'state-bucket'})


def test_backend_factory(tmp_path):
    backend = get_storage_backend({'deployment': {'storage_backend': 'local', 'state_dir': str(tmp_path)}})

    assert isinstance(backend, LocalStorage)
    with pytest.raises(ConfigurationError):
        get_storage_backend({'deployment': {'storage_backend': 'ftp'}})
