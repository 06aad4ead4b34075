"""
Remote Backup Transfer

Copies a published archive and its checksum sidecar off the device.
Transfer failures never invalidate the local archive; the backup job logs
them and the next scheduled run tries again.

Endpoint formats:
    sftp   user@host:/remote/backups/cinepi5   (credential: SSH private key)
    s3     bucket/prefix                        (credential: INI key file)
    minio  https://minio.local:9000/bucket/prefix
"""

from __future__ import annotations

import configparser
import logging
import subprocess
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, Optional, Tuple
from urllib.parse import urlparse

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from common.config import RemoteTarget
from common.decorators import retry
from common.exceptions import InvalidConfigError, MissingConfigError, UploadError

from .records import ArchiveRecord

logger = logging.getLogger(__name__)


class RemoteUploader(ABC):
    """Uploads one archive plus its sidecar."""

    def __init__(self, target: RemoteTarget):
        self.target = target

    @property
    def destination(self) -> str:
        return f"{self.target.protocol}://{self.target.endpoint}"

    @abstractmethod
    def upload(self, record: ArchiveRecord) -> None:
        """
        Upload ``record`` and its checksum sidecar.

        Raises:
            UploadError: On any transfer failure.
        """


class SftpUploader(RemoteUploader):
    """Batch-mode ``sftp`` upload using a private key file."""

    TIMEOUT = 600

    def __init__(self, target: RemoteTarget):
        super().__init__(target)
        if ":" not in target.endpoint or "@" not in target.endpoint.split(":", 1)[0]:
            raise InvalidConfigError(
                "remote.endpoint", target.endpoint, "expected user@host:/path for sftp"
            )
        self.host, self.remote_path = target.endpoint.split(":", 1)

    @retry(max_attempts=3, delay=5.0, exceptions=(UploadError,))
    def upload(self, record: ArchiveRecord) -> None:
        key = self.target.credential_file
        if key is None or not Path(key).is_file():
            raise UploadError(self.destination, f"SFTP private key not found at {key}",
                              recoverable=False)

        batch = (
            f"put {record.path} {self.remote_path}/{record.name}\n"
            f"put {record.checksum_path} {self.remote_path}/{record.checksum_path.name}\n"
        )
        logger.info(f"Uploading {record.name} via SFTP to {self.host}")
        try:
            result = subprocess.run(
                [
                    "sftp", "-b", "-",
                    "-i", str(key),
                    "-oBatchMode=yes",
                    "-oStrictHostKeyChecking=accept-new",
                    self.host,
                ],
                input=batch,
                capture_output=True,
                text=True,
                timeout=self.TIMEOUT,
            )
        except subprocess.TimeoutExpired as e:
            raise UploadError(self.destination, "sftp timed out", cause=e) from e
        except FileNotFoundError as e:
            raise UploadError(self.destination, "sftp client not installed", cause=e) from e

        if result.returncode != 0:
            raise UploadError(self.destination, result.stderr.strip() or "sftp failed")
        logger.info("SFTP upload successful.")


def _read_key_file(path: Optional[Path]) -> Dict[str, str]:
    """Read aws_access_key_id / aws_secret_access_key from an INI file."""
    if path is None:
        return {}
    parser = configparser.ConfigParser()
    if not parser.read(path):
        raise MissingConfigError(f"remote.credential_file ({path})")
    section = parser["default"] if parser.has_section("default") else parser.defaults()
    keys = {}
    for name in ("aws_access_key_id", "aws_secret_access_key", "region_name"):
        if name in section:
            keys[name] = section[name]
    return keys


class S3Uploader(RemoteUploader):
    """S3 or MinIO upload through boto3."""

    def __init__(self, target: RemoteTarget, client=None):
        super().__init__(target)
        endpoint_url, self.bucket, self.prefix = self._parse_endpoint(target)
        if client is None:
            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                **_read_key_file(target.credential_file),
            )
        self._s3 = client

    @staticmethod
    def _parse_endpoint(target: RemoteTarget) -> Tuple[Optional[str], str, str]:
        if target.protocol == "minio":
            parsed = urlparse(target.endpoint)
            if not parsed.scheme or not parsed.netloc:
                raise InvalidConfigError(
                    "remote.endpoint", target.endpoint, "expected https://host:port/bucket/prefix"
                )
            endpoint_url = f"{parsed.scheme}://{parsed.netloc}"
            path = parsed.path.strip("/")
        else:
            endpoint_url = None
            path = target.endpoint.strip("/")

        bucket, _, prefix = path.partition("/")
        if not bucket:
            raise InvalidConfigError("remote.endpoint", target.endpoint, "missing bucket name")
        return endpoint_url, bucket, prefix

    def _key(self, name: str) -> str:
        return f"{self.prefix}/{name}" if self.prefix else name

    @retry(max_attempts=3, delay=5.0, exceptions=(UploadError,))
    def upload(self, record: ArchiveRecord) -> None:
        logger.info(f"Uploading {record.name} to {self.target.protocol} bucket {self.bucket}")
        try:
            self._s3.upload_file(str(record.path), self.bucket, self._key(record.name))
            self._s3.upload_file(
                str(record.checksum_path), self.bucket, self._key(record.checksum_path.name)
            )
        except (BotoCoreError, ClientError, OSError) as e:
            raise UploadError(self.destination, str(e), cause=e) from e
        logger.info("Object storage upload successful.")


def make_uploader(target: RemoteTarget) -> RemoteUploader:
    """Build the uploader for a validated remote target."""
    target.validate()
    if target.protocol == "sftp":
        return SftpUploader(target)
    return S3Uploader(target)
