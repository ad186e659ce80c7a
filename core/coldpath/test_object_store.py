"""
Object store backend tests. No network: S3 calls go through botocore's Stubber.
"""

import errno
import io

import boto3
import pytest
from botocore.response import StreamingBody
from botocore.stub import Stubber

from coldpath.object_store import (
    LocalObjectStore,
    ObjectNotFoundError,
    PermanentStoreError,
    S3ObjectStore,
    TransientStoreError,
    classify_os_error,
)

BUCKET = 'metrics-test'


@pytest.fixture
def s3():
    client = boto3.client(
        's3',
        region_name='us-east-1',
        aws_access_key_id='test',
        aws_secret_access_key='test',
    )
    with Stubber(client) as stubber:
        yield S3ObjectStore(BUCKET, client=client), stubber
        stubber.assert_no_pending_responses()


def test_local_put_get_list(tmp_path):
    store = LocalObjectStore(tmp_path / 'objects')
    store.put('metrics/a/1.parquet', b'one')
    store.put('metrics/b/2.parquet', b'two')
    store.put('other/3.parquet', b'three')
    # Same key twice is an overwrite, not a second object
    store.put('metrics/a/1.parquet', b'one')
    (tmp_path / 'objects' / 'metrics' / 'a' / '.1.parquet.x.tmp').write_bytes(b'partial')

    assert store.get('metrics/b/2.parquet') == b'two'
    assert [o.path for o in store.list('metrics/')] == ['metrics/a/1.parquet', 'metrics/b/2.parquet']
    assert store.exists('metrics/a/1.parquet')

    store.delete('metrics/a/1.parquet')
    store.delete('metrics/a/1.parquet')
    assert not store.exists('metrics/a/1.parquet')


def test_local_errors(tmp_path):
    store = LocalObjectStore(tmp_path)
    with pytest.raises(ObjectNotFoundError):
        store.get('missing.parquet')
    with pytest.raises(PermanentStoreError):
        store.put('../escape.parquet', b'x')
    store.check()


def test_os_error_classification():
    assert isinstance(classify_os_error(OSError(errno.ENOSPC, 'full'), 'put', 'p'), PermanentStoreError)
    assert isinstance(classify_os_error(OSError(errno.EACCES, 'denied'), 'put', 'p'), PermanentStoreError)
    assert isinstance(classify_os_error(OSError(errno.EIO, 'io'), 'put', 'p'), TransientStoreError)
    assert isinstance(classify_os_error(FileNotFoundError(errno.ENOENT, 'gone'), 'get', 'p'), ObjectNotFoundError)


def test_s3_put_and_get(s3):
    store, stubber = s3
    stubber.add_response('put_object', {}, {
        'Bucket': BUCKET, 'Key': 'm/a.parquet', 'Body': b'data', 'ContentType': 'application/octet-stream',
    })
    stubber.add_response('get_object', {'Body': StreamingBody(io.BytesIO(b'data'), 4)},
                         {'Bucket': BUCKET, 'Key': 'm/a.parquet'})

    store.put('m/a.parquet', b'data')
    assert store.get('m/a.parquet') == b'data'


@pytest.mark.parametrize('code,status,expected', [
    ('SlowDown', 503, TransientStoreError),
    ('InternalError', 500, TransientStoreError),
    ('AccessDenied', 403, PermanentStoreError),
    ('NoSuchBucket', 404, PermanentStoreError),
])
def test_s3_put_error_classification(s3, code, status, expected):
    store, stubber = s3
    stubber.add_client_error('put_object', service_error_code=code, http_status_code=status)
    with pytest.raises(expected):
        store.put('m/a.parquet', b'data')


def test_s3_exists(s3):
    store, stubber = s3
    stubber.add_response('head_object', {'ContentLength': 4}, {'Bucket': BUCKET, 'Key': 'm/a.parquet'})
    stubber.add_client_error('head_object', service_error_code='404', http_status_code=404)

    assert store.exists('m/a.parquet')
    assert not store.exists('m/b.parquet')


def test_s3_list_follows_continuation(s3):
    store, stubber = s3
    stubber.add_response('list_objects_v2', {
        'Contents': [{'Key': 'm/a.parquet', 'Size': 3}],
        'IsTruncated': True,
        'NextContinuationToken': 'page-2',
    }, {'Bucket': BUCKET, 'Prefix': 'm/'})
    stubber.add_response('list_objects_v2', {
        'Contents': [{'Key': 'm/b.parquet', 'Size': 4}, {'Key': 'm/c.parquet.tmp', 'Size': 1}],
        'IsTruncated': False,
    }, {'Bucket': BUCKET, 'Prefix': 'm/', 'ContinuationToken': 'page-2'})

    objects = store.list('m/')
    assert [(o.path, o.size) for o in objects] == [('m/a.parquet', 3), ('m/b.parquet', 4)]


def test_s3_check_missing_bucket(s3):
    store, stubber = s3
    stubber.add_client_error('head_bucket', service_error_code='404', http_status_code=404)
    with pytest.raises(PermanentStoreError):
        store.check()
