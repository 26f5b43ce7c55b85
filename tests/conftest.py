"""
Shared pytest fixtures for docker-backup tests.

This module provides fixtures for:
- Global configuration pointing at temporary directories
- A scripted fake source host recording every command
- A fake age cipher copying files instead of encrypting
- Mock fixtures for external services (S3, SSH)
- Temporary service directories
"""

import os
import shutil
import shlex
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest
import boto3
from moto import mock_aws

from docker_backup.backup.sources import CommandError, CommandResult
from docker_backup.config import GlobalConfig


class FakeSource:
    """
    Source double: commands are matched against scripted responses.

    A response matches when its prefix equals the start of the command, or
    when its predicate returns True. Unmatched commands succeed with empty
    output. Files are read from the `files` dict first, then from disk.
    `mkdir -p` and stdout redirection act on the local filesystem.
    """

    source_type = 'fake'

    def __init__(self, services=None, files=None):
        self.services = list(services or [])
        self.files = dict(files or {})
        self.calls = []
        self.removed = []
        self.responses = []
        self.closed = False

    def on(self, match, stdout='', returncode=0, stderr='', error=None):
        self.responses.append((match, stdout, returncode, stderr, error))
        return self

    def _find(self, args):
        for match, stdout, returncode, stderr, error in self.responses:
            if callable(match):
                if match(args):
                    return stdout, returncode, stderr, error
            elif tuple(args[:len(match)]) == tuple(match):
                return stdout, returncode, stderr, error
        return '', 0, '', None

    def run(self, args, cwd=None, stdout_path=None, stdin_path=None, timeout=None, check=True):
        args = list(args)
        self.calls.append({'args': args, 'cwd': cwd, 'stdout_path': stdout_path, 'stdin_path': stdin_path})
        stdout, returncode, stderr, error = self._find(args)
        if error is not None:
            raise error

        if args[:2] == ['mkdir', '-p'] and returncode == 0:
            os.makedirs(args[2], exist_ok=True)

        if stdout_path:
            parent = os.path.dirname(stdout_path)
            if parent and os.path.isdir(parent):
                Path(stdout_path).write_text(stdout)
            stdout = ''

        result = CommandResult(args, returncode, stdout, stderr)
        if check and returncode != 0:
            raise CommandError(f"Command failed ({returncode}): {shlex.join(args)}: {stderr}",
                               returncode=returncode, stderr=stderr)
        return result

    def commands(self):
        return [call['args'] for call in self.calls]

    def ran(self, *prefix):
        return [c for c in self.commands() if tuple(c[:len(prefix)]) == prefix]

    def read_text(self, path):
        if path in self.files:
            return self.files[path]
        if os.path.isfile(path):
            return Path(path).read_text()
        return None

    def discover_services(self, source_dir):
        return list(self.services)

    def acquire(self, service_dir, staging_dir, exclude_patterns=()):
        return service_dir

    def file_size(self, path):
        return os.path.getsize(path) if os.path.exists(path) else 0

    def remove(self, path):
        self.removed.append(path)
        if os.path.isdir(path):
            shutil.rmtree(path)
        elif os.path.exists(path):
            os.remove(path)

    def cleanup(self):
        self.closed = True


class FakeCipher:
    """age stand-in that copies the input to the output."""

    def __init__(self):
        self.encrypted = []
        self.decrypted = []

    def encrypt_file(self, input_path, output_path):
        shutil.copyfile(input_path, output_path)
        self.encrypted.append(output_path)
        return output_path

    def decrypt_file(self, input_path, output_path):
        shutil.copyfile(input_path, output_path)
        self.decrypted.append(output_path)
        return output_path


@pytest.fixture
def global_config(tmp_path):
    """
    GlobalConfig with every directory under tmp_path and local destination.
    """
    (tmp_path / 'services').mkdir()
    return GlobalConfig(
        source_dir=str(tmp_path / 'services'),
        backup_dir=str(tmp_path / 'backups'),
        age_recipient='age1testrecipient',
        staging_dir=str(tmp_path / 'staging'),
        lock_file=str(tmp_path / 'docker-backup.lock'),
        age_key_file=str(tmp_path / 'key.txt'),
    )


@pytest.fixture
def fake_source():
    """Scripted source with no services."""
    return FakeSource()


@pytest.fixture
def fake_cipher():
    return FakeCipher()


@pytest.fixture
def service_dir(global_config):
    """
    Create a service directory 'blog' with a compose file and some data.

    Creates:
    - docker-compose.yml
    - data/posts.txt
    - logs/app.log (excluded by tests using EXCLUDE=*.log)
    """
    path = Path(global_config.source_dir) / 'blog'
    (path / 'data').mkdir(parents=True)
    (path / 'logs').mkdir()
    (path / 'docker-compose.yml').write_text('services:\n  web:\n    image: nginx\n')
    (path / 'data' / 'posts.txt').write_text('hello world')
    (path / 'logs' / 'app.log').write_text('noise')
    return path


@pytest.fixture
def mock_s3():
    """
    Mock AWS S3 service using moto.

    Creates a test bucket 'test-bucket' in us-east-1 region.
    """
    with mock_aws():
        s3 = boto3.resource('s3', region_name='us-east-1')
        s3.create_bucket(Bucket='test-bucket')
        yield s3


@pytest.fixture
def mock_ssh_client():
    """
    Mock paramiko SSHClient used by the SSH source.

    Returns the mocked class; its return_value is the client instance.
    """
    with patch('docker_backup.backup.sources.SSHClient') as mock_ssh:
        mock_sftp = MagicMock()
        mock_ssh.return_value.open_sftp.return_value = mock_sftp
        mock_ssh.return_value.connect.return_value = None
        yield mock_ssh


@pytest.fixture
def ssh_key(tmp_path):
    key = tmp_path / 'id_ed25519'
    key.write_text('fake key')
    return key


@pytest.fixture
def make_source():
    """Factory for FakeSource with services and files."""
    return FakeSource
