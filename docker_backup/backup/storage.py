"""
Storage handlers for encrypted backup archives.

Supports:
- LocalStorage: Store in a local directory
- S3Storage: Upload to AWS S3
- SFTPStorage: Upload to a remote server over SFTP

All destinations use a flat layout, {base}/{filename}, so the archive
filename alone identifies the service and date for listing and retention.
"""

import logging
import os
import shutil
import stat
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

import boto3
import paramiko
from botocore.exceptions import BotoCoreError, ClientError
from paramiko import AutoAddPolicy, SSHClient

from ..models import ARCHIVE_SUFFIX


logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Raised when storage operation fails."""
    pass


def _discard(local_path: str):
    """Remove the staged copy of an archive that is already stored."""
    try:
        os.remove(local_path)
    except OSError as e:
        logger.warning(f"Stored archive but could not remove staged copy {local_path}: {e}")


def _matches_service(filename: str, service: Optional[str]) -> bool:
    if not filename.endswith(ARCHIVE_SUFFIX):
        return False
    return service is None or filename.startswith(f'{service}-')


class LocalStorage:
    """
    Handler for storing backups in a local directory.
    """

    def __init__(self, base_path: str):
        """
        Initialize local storage handler.

        Args:
            base_path: Directory holding the archives
        """
        self.base_path = Path(base_path)

        try:
            self.base_path.mkdir(parents=True, exist_ok=True)
        except Exception as e:
            raise StorageError(f"Failed to create local storage directory: {e}")

    @property
    def description(self) -> str:
        return str(self.base_path)

    def store(self, source_path: str) -> str:
        """
        Move an archive into local storage.

        Args:
            source_path: Path to the encrypted archive in staging

        Returns:
            Filename of the stored archive

        Raises:
            StorageError: If storage fails
        """
        if not os.path.exists(source_path):
            raise StorageError(f"Source file not found: {source_path}")

        filename = os.path.basename(source_path)
        dest_path = self.base_path / filename
        partial_path = self.base_path / f'{filename}.partial'

        try:
            shutil.copy2(source_path, partial_path)
            os.replace(partial_path, dest_path)
            os.remove(source_path)
            return filename
        except PermissionError as e:
            raise StorageError(f"Permission denied writing to {dest_path}: {e}")
        except Exception as e:
            if partial_path.exists():
                partial_path.unlink()
            raise StorageError(f"Failed to store locally: {e}")

    def delete(self, filename: str):
        """
        Delete an archive from local storage.

        Raises:
            StorageError: If deletion fails
        """
        full_path = self.base_path / filename

        try:
            if full_path.exists():
                full_path.unlink()
        except PermissionError as e:
            raise StorageError(f"Permission denied deleting {full_path}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete local file: {e}")

    def list_files(self, service: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List archives, optionally only those of one service.

        Returns:
            List of dicts with 'name', 'modified', and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        if not self.base_path.exists():
            return []

        try:
            files = []
            for file_path in self.base_path.iterdir():
                if file_path.is_file() and _matches_service(file_path.name, service):
                    file_stat = file_path.stat()
                    files.append({
                        'name': file_path.name,
                        'modified': datetime.fromtimestamp(file_stat.st_mtime),
                        'size': file_stat.st_size
                    })
            return sorted(files, key=lambda f: f['name'])

        except Exception as e:
            raise StorageError(f"Failed to list local files: {e}")

    def download(self, filename: str, dest_path: str) -> str:
        """
        Copy an archive out of storage.

        Raises:
            StorageError: If the archive does not exist
        """
        source = self.base_path / filename
        if not source.is_file():
            raise StorageError(f"Archive not found: {filename}")
        try:
            shutil.copy2(source, dest_path)
        except Exception as e:
            raise StorageError(f"Failed to copy {filename}: {e}")
        return dest_path

    def close(self):
        pass


class S3Storage:
    """
    Handler for uploading backups to AWS S3.

    Objects are stored as {prefix}{filename}.
    """

    def __init__(self, bucket_name: str, prefix: str = '', region: str = 'us-east-1',
                 access_key: Optional[str] = None, secret_key: Optional[str] = None):
        """
        Initialize S3 storage handler.

        Args:
            bucket_name: S3 bucket name
            prefix: Key prefix (e.g. "backups/")
            region: AWS region (default: us-east-1)
            access_key: AWS access key ID (default credential chain when omitted)
            secret_key: AWS secret access key
        """
        self.bucket_name = bucket_name
        self.prefix = prefix
        self.region = region

        try:
            self.s3_client = boto3.client(
                's3',
                aws_access_key_id=access_key,
                aws_secret_access_key=secret_key,
                region_name=region
            )
        except Exception as e:
            raise StorageError(f"Failed to initialize S3 client: {e}")

    @property
    def description(self) -> str:
        return f's3://{self.bucket_name}/{self.prefix}'

    def _key(self, filename: str) -> str:
        return f'{self.prefix}{filename}'

    def store(self, local_path: str) -> str:
        """
        Upload archive to S3 and remove the local copy.

        Returns:
            Filename of the stored archive

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        filename = os.path.basename(local_path)
        s3_key = self._key(filename)

        try:
            file_size = os.path.getsize(local_path)

            # Use multipart upload for files larger than 100MB
            if file_size > 100 * 1024 * 1024:
                self._multipart_upload(local_path, s3_key)
            else:
                self._simple_upload(local_path, s3_key)

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 upload failed ({error_code}): {e}")
        except BotoCoreError as e:
            raise StorageError(f"S3 upload failed: {e}")
        except Exception as e:
            raise StorageError(f"Failed to upload to S3: {e}")

        _discard(local_path)
        return filename

    def _simple_upload(self, local_path: str, s3_key: str):
        with open(local_path, 'rb') as f:
            self.s3_client.put_object(
                Bucket=self.bucket_name,
                Key=s3_key,
                Body=f
            )

    def _multipart_upload(self, local_path: str, s3_key: str):
        """
        Upload large file using multipart upload in 10MB parts.
        """
        chunk_size = 10 * 1024 * 1024

        response = self.s3_client.create_multipart_upload(
            Bucket=self.bucket_name,
            Key=s3_key
        )
        upload_id = response['UploadId']

        parts = []

        try:
            with open(local_path, 'rb') as f:
                part_number = 1

                while True:
                    data = f.read(chunk_size)
                    if not data:
                        break

                    response = self.s3_client.upload_part(
                        Bucket=self.bucket_name,
                        Key=s3_key,
                        PartNumber=part_number,
                        UploadId=upload_id,
                        Body=data
                    )

                    parts.append({
                        'PartNumber': part_number,
                        'ETag': response['ETag']
                    })

                    part_number += 1

            self.s3_client.complete_multipart_upload(
                Bucket=self.bucket_name,
                Key=s3_key,
                UploadId=upload_id,
                MultipartUpload={'Parts': parts}
            )

        except Exception:
            try:
                self.s3_client.abort_multipart_upload(
                    Bucket=self.bucket_name,
                    Key=s3_key,
                    UploadId=upload_id
                )
            except (ClientError, BotoCoreError) as abort_error:
                logger.warning(f"Failed to abort multipart upload of {s3_key}: {abort_error}")
            raise

    def delete(self, filename: str):
        """
        Delete an archive from S3.

        Raises:
            StorageError: If deletion fails
        """
        try:
            self.s3_client.delete_object(
                Bucket=self.bucket_name,
                Key=self._key(filename)
            )
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 delete failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to delete from S3: {e}")

    def list_files(self, service: Optional[str] = None) -> List[Dict[str, Any]]:
        """
        List archives stored under the prefix.

        Returns:
            List of dicts with 'name', 'modified', and 'size' keys

        Raises:
            StorageError: If listing fails
        """
        list_prefix = self._key(f'{service}-' if service else '')
        try:
            files = []
            paginator = self.s3_client.get_paginator('list_objects_v2')

            for page in paginator.paginate(Bucket=self.bucket_name, Prefix=list_prefix):
                for obj in page.get('Contents', []):
                    name = obj['Key'][len(self.prefix):]
                    # Objects in deeper "directories" are not ours
                    if '/' in name or not _matches_service(name, service):
                        continue
                    files.append({
                        'name': name,
                        'modified': obj['LastModified'],
                        'size': obj['Size']
                    })

            return sorted(files, key=lambda f: f['name'])

        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 list failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to list S3 objects: {e}")

    def download(self, filename: str, dest_path: str) -> str:
        """
        Download an archive from S3.

        Raises:
            StorageError: If the download fails
        """
        try:
            self.s3_client.download_file(self.bucket_name, self._key(filename), dest_path)
        except ClientError as e:
            error_code = e.response.get('Error', {}).get('Code', 'Unknown')
            raise StorageError(f"S3 download failed ({error_code}): {e}")
        except Exception as e:
            raise StorageError(f"Failed to download from S3: {e}")
        return dest_path

    def close(self):
        pass


class SFTPStorage:
    """
    Handler for storing backups on a remote server over SFTP.

    Uploads go to a .partial file first and are renamed when complete.
    """

    def __init__(self, host: str, username: str, remote_path: str, private_key: str, port: int = 22):
        self.host = host
        self.username = username
        self.remote_path = remote_path.rstrip('/') or '/'
        self.private_key_path = private_key
        self.port = port

        self.ssh_client = None
        self.sftp_client = None

    @property
    def description(self) -> str:
        return f'{self.username}@{self.host}:{self.remote_path}'

    def _connect(self):
        if self.sftp_client is not None:
            return

        try:
            client = SSHClient()
            client.load_system_host_keys()
            client.set_missing_host_key_policy(AutoAddPolicy())
            client.connect(
                hostname=self.host,
                port=self.port,
                username=self.username,
                key_filename=str(Path(self.private_key_path).expanduser()),
                timeout=30
            )
            self.ssh_client = client
            self.sftp_client = client.open_sftp()
        except paramiko.AuthenticationException as e:
            raise StorageError(f"SSH authentication failed for {self.host}: {e}")
        except Exception as e:
            raise StorageError(f"Failed to connect to {self.host}: {e}")

    def _remote(self, filename: str) -> str:
        return f'{self.remote_path}/{filename}'

    def _makedirs(self):
        current = ''
        for part in self.remote_path.split('/'):
            if not part:
                continue
            current = f'{current}/{part}'
            try:
                self.sftp_client.stat(current)
            except FileNotFoundError:
                self.sftp_client.mkdir(current)

    def store(self, local_path: str) -> str:
        """
        Upload archive and remove the local copy.

        Raises:
            StorageError: If upload fails
        """
        if not os.path.exists(local_path):
            raise StorageError(f"Local file not found: {local_path}")

        self._connect()
        filename = os.path.basename(local_path)
        partial = self._remote(f'{filename}.partial')

        try:
            self._makedirs()
            self.sftp_client.put(local_path, partial)
            self.sftp_client.posix_rename(partial, self._remote(filename))
        except Exception as e:
            raise StorageError(f"SFTP upload to {self.host} failed: {e}")

        _discard(local_path)
        return filename

    def delete(self, filename: str):
        self._connect()
        try:
            self.sftp_client.remove(self._remote(filename))
        except FileNotFoundError:
            pass
        except Exception as e:
            raise StorageError(f"SFTP delete failed for {filename}: {e}")

    def list_files(self, service: Optional[str] = None) -> List[Dict[str, Any]]:
        self._connect()
        try:
            entries = self.sftp_client.listdir_attr(self.remote_path)
        except FileNotFoundError:
            return []
        except Exception as e:
            raise StorageError(f"SFTP list failed on {self.host}: {e}")

        files = []
        for entry in entries:
            if stat.S_ISREG(entry.st_mode or 0) and _matches_service(entry.filename, service):
                files.append({
                    'name': entry.filename,
                    'modified': datetime.fromtimestamp(entry.st_mtime or 0),
                    'size': entry.st_size or 0
                })
        return sorted(files, key=lambda f: f['name'])

    def download(self, filename: str, dest_path: str) -> str:
        self._connect()
        try:
            self.sftp_client.get(self._remote(filename), dest_path)
        except FileNotFoundError:
            raise StorageError(f"Archive not found: {filename}")
        except Exception as e:
            raise StorageError(f"SFTP download failed for {filename}: {e}")
        return dest_path

    def close(self):
        if self.sftp_client:
            self.sftp_client.close()
            self.sftp_client = None
        if self.ssh_client:
            self.ssh_client.close()
            self.ssh_client = None


def create_storage(config):
    """
    Build the storage handler for the configured destination.

    Args:
        config: GlobalConfig

    Raises:
        ValueError: If the destination is invalid
    """
    if config.destination == 'local':
        return LocalStorage(config.backup_dir)
    elif config.destination == 's3':
        return S3Storage(
            bucket_name=config.s3_bucket,
            prefix=config.s3_prefix,
            region=config.aws_region,
            access_key=config.aws_access_key_id,
            secret_key=config.aws_secret_access_key,
        )
    elif config.destination == 'sftp':
        return SFTPStorage(
            host=config.remote_host,
            username=config.remote_user,
            remote_path=config.remote_path,
            private_key=config.ssh_key,
            port=config.remote_port,
        )
    else:
        raise ValueError(f"Invalid destination: {config.destination}")
