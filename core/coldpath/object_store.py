"""
Object storage backends.

Every backend exposes put/get/list (plus exists/delete/check) over
slash-separated object paths and raises errors from one taxonomy:
TransientStoreError is worth retrying, PermanentStoreError needs an operator.
"""

import errno
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectionClosedError,
    ConnectTimeoutError,
    EndpointConnectionError,
    NoCredentialsError,
    PartialCredentialsError,
    ReadTimeoutError,
)

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    'SlowDown', 'Throttling', 'ThrottlingException', 'RequestTimeout', 'RequestTimeTooSkewed',
    'InternalError', 'ServiceUnavailable', 'RequestLimitExceeded', 'TooManyRequests',
    '500', '502', '503', '504',
}
PERMANENT_ERROR_CODES = {
    'AccessDenied', 'InvalidAccessKeyId', 'SignatureDoesNotMatch', 'NoSuchBucket',
    'InvalidBucketName', 'AllAccessDisabled', 'AccountProblem', 'InvalidRequest',
    '400', '401', '403',
}
NOT_FOUND_CODES = {'NoSuchKey', '404', 'NotFound'}
PERMANENT_ERRNOS = {errno.ENOSPC, errno.EACCES, errno.EPERM, errno.EROFS}


class ObjectStoreError(Exception):
    pass


class TransientStoreError(ObjectStoreError):
    """Network, throttling or timeout; retry with backoff."""


class PermanentStoreError(ObjectStoreError):
    """Auth, missing bucket, disk full; retrying will not help."""


class ObjectNotFoundError(ObjectStoreError):
    pass


@dataclass(frozen=True)
class ObjectInfo:
    path: str
    size: int


class ObjectStore:
    """Minimal object storage contract."""

    name = 'store'

    def put(self, path: str, data: bytes):
        raise NotImplementedError

    def get(self, path: str) -> bytes:
        raise NotImplementedError

    def list(self, prefix: str = '') -> List[ObjectInfo]:
        raise NotImplementedError

    def exists(self, path: str) -> bool:
        raise NotImplementedError

    def delete(self, path: str):
        raise NotImplementedError

    def check(self):
        """Raise an ObjectStoreError if the backend is unusable."""


def classify_client_error(e: ClientError, action: str, path: str) -> ObjectStoreError:
    code = str(e.response.get('Error', {}).get('Code', ''))
    status = str(e.response.get('ResponseMetadata', {}).get('HTTPStatusCode', ''))
    msg = f"{action} {path}: {code or status} {e}"
    if code in NOT_FOUND_CODES:
        return ObjectNotFoundError(msg)
    if code in TRANSIENT_ERROR_CODES or status.startswith('5'):
        return TransientStoreError(msg)
    if code in PERMANENT_ERROR_CODES or status.startswith('4'):
        return PermanentStoreError(msg)
    return TransientStoreError(msg)


class S3ObjectStore(ObjectStore):
    """S3-compatible backend (AWS, MinIO, R2...)."""

    name = 's3'

    def __init__(
        self,
        bucket: str,
        endpoint_url: Optional[str] = None,
        access_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        region: Optional[str] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 30.0,
        client=None,
    ):
        self.bucket = bucket
        if client is None:
            # Retries are owned by the uploader, so botocore gets a single attempt.
            config = Config(
                max_pool_connections=50,
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={'max_attempts': 1, 'mode': 'standard'},
            )
            client = boto3.client(
                's3',
                endpoint_url=endpoint_url,
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region,
                config=config
            )
        self.s3_client = client

    def _call(self, action: str, path: str, fn, **kwargs):
        try:
            return fn(**kwargs)
        except ClientError as e:
            raise classify_client_error(e, action, path) from e
        except (NoCredentialsError, PartialCredentialsError) as e:
            raise PermanentStoreError(f"{action} {path}: {e}") from e
        except (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, ConnectionClosedError) as e:
            raise TransientStoreError(f"{action} {path}: {e}") from e
        except BotoCoreError as e:
            raise TransientStoreError(f"{action} {path}: {e}") from e

    def put(self, path: str, data: bytes):
        self._call(
            'put', path, self.s3_client.put_object,
            Bucket=self.bucket, Key=path, Body=data, ContentType='application/octet-stream',
        )

    def get(self, path: str) -> bytes:
        resp = self._call('get', path, self.s3_client.get_object, Bucket=self.bucket, Key=path)
        return resp['Body'].read()

    def list(self, prefix: str = '') -> List[ObjectInfo]:
        objects = []
        token = None
        while True:
            kwargs = {'Bucket': self.bucket, 'Prefix': prefix}
            if token:
                kwargs['ContinuationToken'] = token
            page = self._call('list', prefix, self.s3_client.list_objects_v2, **kwargs)
            for obj in page.get('Contents', []):
                key = obj['Key']
                if key.endswith('.tmp') or key.split('/')[-1].startswith('._'):
                    continue
                objects.append(ObjectInfo(path=key, size=obj.get('Size', 0)))
            if not page.get('IsTruncated'):
                break
            token = page.get('NextContinuationToken')
        return objects

    def exists(self, path: str) -> bool:
        try:
            self._call('head', path, self.s3_client.head_object, Bucket=self.bucket, Key=path)
            return True
        except ObjectNotFoundError:
            return False

    def delete(self, path: str):
        self._call('delete', path, self.s3_client.delete_object, Bucket=self.bucket, Key=path)

    def check(self):
        try:
            self._call('head_bucket', self.bucket, self.s3_client.head_bucket, Bucket=self.bucket)
        except ObjectNotFoundError as e:
            raise PermanentStoreError(f"bucket {self.bucket} not found") from e


def classify_os_error(e: OSError, action: str, path: str) -> ObjectStoreError:
    msg = f"{action} {path}: {e}"
    if isinstance(e, FileNotFoundError):
        return ObjectNotFoundError(msg)
    if e.errno in PERMANENT_ERRNOS:
        return PermanentStoreError(msg)
    return TransientStoreError(msg)


class LocalObjectStore(ObjectStore):
    """Filesystem backend; each object path maps to a file under ``root``."""

    name = 'local'

    def __init__(self, root):
        self.root = Path(root)

    def _resolve(self, path: str) -> Path:
        rel = Path(path)
        if rel.is_absolute() or '..' in rel.parts:
            raise PermanentStoreError(f"invalid object path: {path}")
        return self.root / rel

    def put(self, path: str, data: bytes):
        target = self._resolve(path)
        tmp_name = None
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            # Write to .tmp first, then promote atomically
            fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.", suffix='.tmp')
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_name, target)
            tmp_name = None
        except OSError as e:
            raise classify_os_error(e, 'put', path) from e
        finally:
            if tmp_name and os.path.exists(tmp_name):
                os.unlink(tmp_name)

    def get(self, path: str) -> bytes:
        try:
            return self._resolve(path).read_bytes()
        except OSError as e:
            raise classify_os_error(e, 'get', path) from e

    def list(self, prefix: str = '') -> List[ObjectInfo]:
        if not self.root.exists():
            return []
        objects = []
        for p in sorted(self.root.rglob('*')):
            if not p.is_file() or p.name.startswith('.'):
                continue
            rel = p.relative_to(self.root).as_posix()
            if rel.startswith(prefix):
                objects.append(ObjectInfo(path=rel, size=p.stat().st_size))
        return objects

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def delete(self, path: str):
        try:
            self._resolve(path).unlink()
        except FileNotFoundError:
            return
        except OSError as e:
            raise classify_os_error(e, 'delete', path) from e

    def check(self):
        try:
            self.root.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise classify_os_error(e, 'check', str(self.root)) from e
        if not os.access(self.root, os.W_OK):
            raise PermanentStoreError(f"object root {self.root} is not writable")
