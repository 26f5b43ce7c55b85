"""
Source handlers: the machine the docker-compose services live on.

Supports:
- LocalSource: services on this machine, commands run via subprocess
- SSHSource: services on a production host, commands and file transfer
  over SSH/SFTP (pull model)

Both expose the same small surface used by the pipeline: run a command,
read a text file, discover service directories, acquire a service
directory for archiving and remove leftovers.
"""

import logging
import os
import shlex
import shutil
import socket
import stat
import subprocess
import time
from fnmatch import fnmatch
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import paramiko
from paramiko import AutoAddPolicy, SSHClient


logger = logging.getLogger(__name__)

COMPOSE_FILENAMES = ('docker-compose.yml', 'docker-compose.yaml', 'compose.yml', 'compose.yaml')


class SourceError(Exception):
    """Raised when the source host cannot be reached or read."""
    pass


class CommandError(SourceError):
    """Raised when a command fails, times out or cannot be started."""

    def __init__(self, message: str, returncode: Optional[int] = None, stderr: str = ''):
        super().__init__(message)
        self.returncode = returncode
        self.stderr = stderr


class CommandResult:
    """Outcome of a finished command."""

    def __init__(self, args: Sequence[str], returncode: int, stdout: str = '', stderr: str = ''):
        self.args = list(args)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def __repr__(self):
        return f'<CommandResult rc={self.returncode} cmd={shlex.join(self.args)!r}>'


def should_exclude(relative_path: str, patterns: Sequence[str]) -> bool:
    """
    Check if a path should be excluded based on exclude patterns.

    Args:
        relative_path: Path relative to the service directory
        patterns: Glob patterns (e.g. *.log, cache, **/node_modules)

    Returns:
        True if path matches any exclude pattern, False otherwise
    """
    if not patterns:
        return False

    name = os.path.basename(relative_path.rstrip('/'))
    for pattern in patterns:
        pattern = pattern.rstrip('/')
        # Match against relative path or just the name, like tar --exclude
        if fnmatch(relative_path, pattern) or fnmatch(name, pattern):
            return True
        if pattern.startswith('**/') and fnmatch(name, pattern[3:]):
            return True
    return False


def _check(result: CommandResult, check: bool) -> CommandResult:
    if check and not result.ok:
        stderr = result.stderr.strip()
        raise CommandError(
            f"Command failed ({result.returncode}): {shlex.join(result.args)}: {stderr}",
            returncode=result.returncode,
            stderr=stderr,
        )
    return result


def _drain(channel, timeout: Optional[float] = None) -> Tuple[bytes, bytes]:
    """
    Collect stdout and stderr of a remote command until it exits.

    Both streams are read as data arrives so that neither one fills the
    channel window and stalls the command.

    Raises:
        socket.timeout: If the command is still running after timeout seconds
    """
    out: List[bytes] = []
    err: List[bytes] = []
    deadline = time.monotonic() + timeout if timeout else None
    while True:
        received = False
        if channel.recv_ready():
            out.append(channel.recv(65536))
            received = True
        if channel.recv_stderr_ready():
            err.append(channel.recv_stderr(65536))
            received = True
        if received:
            continue
        if channel.exit_status_ready():
            break
        if deadline is not None and time.monotonic() > deadline:
            raise socket.timeout()
        time.sleep(0.05)
    return b''.join(out), b''.join(err)


class LocalSource:
    """
    Handler for services on the local machine.
    """

    source_type = 'local'

    def __init__(self, timeout: Optional[float] = None):
        """
        Initialize local source handler.

        Args:
            timeout: Default timeout in seconds for commands (None waits forever)
        """
        self.timeout = timeout

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        stdout_path: Optional[str] = None,
        stdin_path: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command and wait for it to finish.

        Args:
            args: Command and arguments
            cwd: Working directory
            stdout_path: Write standard output to this file instead of capturing it
            stdin_path: Feed this file to standard input
            timeout: Seconds before the command is killed (defaults to the source timeout)
            check: Raise CommandError on a non-zero exit status

        Returns:
            CommandResult

        Raises:
            CommandError: If the command cannot start, times out, or fails with check=True
        """
        timeout = timeout if timeout is not None else self.timeout
        stdout_file = None
        stdin_file = None
        try:
            stdout_file = open(stdout_path, 'wb') if stdout_path else None
            stdin_file = open(stdin_path, 'rb') if stdin_path else None
            completed = subprocess.run(
                list(args),
                cwd=cwd,
                stdin=stdin_file if stdin_file else subprocess.DEVNULL,
                stdout=stdout_file if stdout_file else subprocess.PIPE,
                stderr=subprocess.PIPE,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            raise CommandError(f"Command timed out after {timeout}s: {shlex.join(args)}")
        except OSError as e:
            raise CommandError(f"Failed to run {shlex.join(args)}: {e}")
        finally:
            if stdout_file:
                stdout_file.close()
            if stdin_file:
                stdin_file.close()

        result = CommandResult(
            args,
            completed.returncode,
            (completed.stdout or b'').decode('utf-8', errors='replace'),
            (completed.stderr or b'').decode('utf-8', errors='replace'),
        )
        return _check(result, check)

    def read_text(self, path: str) -> Optional[str]:
        """Return the content of a text file, or None if it does not exist."""
        try:
            with open(path, 'r') as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SourceError(f"Failed to read {path}: {e}")

    def discover_services(self, source_dir: str) -> List[str]:
        """
        Find service directories (those holding a compose file) one level below source_dir.

        Raises:
            SourceError: If source_dir does not exist
        """
        root = Path(source_dir)
        if not root.is_dir():
            raise SourceError(f"Source directory does not exist: {source_dir}")

        services = set()
        for compose_name in COMPOSE_FILENAMES:
            for compose_file in root.glob(f'*/{compose_name}'):
                services.add(str(compose_file.parent))
        return sorted(services)

    def acquire(self, service_dir: str, staging_dir: str, exclude_patterns: Sequence[str] = ()) -> str:
        """
        Make the service directory available for archiving.

        Local services are archived in place; exclusions are applied while
        archiving.

        Returns:
            Local path of the directory to archive

        Raises:
            SourceError: If the directory does not exist
        """
        path = Path(service_dir).expanduser()
        if not path.is_dir():
            raise SourceError(f"Path does not exist: {service_dir}")
        return str(path)

    def file_size(self, path: str) -> int:
        try:
            return os.path.getsize(path)
        except OSError:
            return 0

    def remove(self, path: str):
        """Remove a file or directory tree; missing paths are ignored."""
        try:
            if os.path.isdir(path) and not os.path.islink(path):
                shutil.rmtree(path)
            elif os.path.lexists(path):
                os.remove(path)
        except OSError as e:
            raise SourceError(f"Failed to remove {path}: {e}")

    def cleanup(self):
        """Cleanup any resources. Local source has no persistent connections."""
        pass


class SSHSource:
    """
    Handler for services on a remote production host via SSH/SFTP.

    Commands run through the remote shell; service directories are
    downloaded to the staging area for archiving.
    """

    source_type = 'ssh'

    def __init__(self, config: Dict[str, Any]):
        """
        Initialize SSH source handler.

        Args:
            config: SSH configuration dict with keys:
                - host: SSH hostname or IP
                - port: SSH port (default 22)
                - username: SSH username
                - password: SSH password (optional if using key)
                - private_key: Path to private key file (optional)
                - timeout: Default command timeout in seconds (optional)
        """
        self.host = config.get('host') or config.get('hostname')
        self.port = config.get('port', 22)
        self.username = config.get('username')
        self.password = config.get('password')
        self.private_key_path = config.get('private_key')
        self.timeout = config.get('timeout')

        self.ssh_client = None
        self.sftp_client = None

    def _connect(self):
        """
        Establish SSH connection.

        Raises:
            SourceError: If connection fails
        """
        if self.ssh_client is not None:
            return

        try:
            client = SSHClient()
            client.load_system_host_keys()
            client.set_missing_host_key_policy(AutoAddPolicy())

            connect_kwargs = {
                'hostname': self.host,
                'port': self.port,
                'username': self.username,
                'timeout': 30
            }

            if self.password:
                connect_kwargs['password'] = self.password
            elif self.private_key_path:
                key_path = Path(self.private_key_path).expanduser()
                if not key_path.exists():
                    raise SourceError(f"Private key not found: {self.private_key_path}")
                connect_kwargs['key_filename'] = str(key_path)
            else:
                raise SourceError("Either password or private_key must be provided")

            client.connect(**connect_kwargs)
            self.ssh_client = client
            self.sftp_client = client.open_sftp()
            logger.debug(f"Connected to {self.username}@{self.host}:{self.port}")

        except SourceError:
            raise
        except paramiko.AuthenticationException as e:
            raise SourceError(f"SSH authentication failed: {e}")
        except paramiko.SSHException as e:
            raise SourceError(f"SSH connection failed: {e}")
        except Exception as e:
            raise SourceError(f"Failed to connect to {self.host}: {e}")

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        stdout_path: Optional[str] = None,
        stdin_path: Optional[str] = None,
        timeout: Optional[float] = None,
        check: bool = True,
    ) -> CommandResult:
        """
        Run a command on the production host and wait for it to finish.

        stdout_path and cwd refer to paths on the production host; stdin_path
        is a local file streamed to the remote command.

        Raises:
            CommandError: If the command times out, or fails with check=True
        """
        self._connect()
        timeout = timeout if timeout is not None else self.timeout

        command = shlex.join(args)
        if stdout_path:
            command = f'{command} > {shlex.quote(stdout_path)}'
        if cwd:
            command = f'cd {shlex.quote(cwd)} && {command}'

        try:
            stdin, stdout, stderr = self.ssh_client.exec_command(command, timeout=timeout)
            if stdin_path:
                with open(stdin_path, 'rb') as f:
                    for chunk in iter(lambda: f.read(65536), b''):
                        stdin.write(chunk)
                stdin.channel.shutdown_write()
            out, err = _drain(stdout.channel, timeout)
            returncode = stdout.channel.recv_exit_status()
        except socket.timeout:
            raise CommandError(f"Command timed out after {timeout}s on {self.host}: {command}")
        except paramiko.SSHException as e:
            raise CommandError(f"SSH command failed on {self.host}: {e}")
        except OSError as e:
            raise CommandError(f"Failed to run {command} on {self.host}: {e}")

        out = out.decode('utf-8', errors='replace')
        err = err.decode('utf-8', errors='replace')

        return _check(CommandResult(args, returncode, out, err), check)

    def read_text(self, path: str) -> Optional[str]:
        """Return the content of a remote text file, or None if it does not exist."""
        self._connect()
        try:
            with self.sftp_client.open(path, 'r') as f:
                return f.read().decode('utf-8', errors='replace')
        except FileNotFoundError:
            return None
        except OSError as e:
            raise SourceError(f"Failed to read remote file {path}: {e}")

    def discover_services(self, source_dir: str) -> List[str]:
        """
        Find service directories on the production host.

        Uses find so the remote login shell does not matter.
        """
        name_args: List[str] = []
        for compose_name in COMPOSE_FILENAMES:
            if name_args:
                name_args.append('-o')
            name_args.extend(['-name', compose_name])

        try:
            result = self.run(['find', source_dir, '-mindepth', '2', '-maxdepth', '2', '('] + name_args + [')'])
        except CommandError as e:
            raise SourceError(f"Failed to list services on {self.host}: {e}")

        services = {line.rsplit('/', 1)[0] for line in result.stdout.splitlines() if line.strip()}
        return sorted(services)

    def _download_file(self, remote_path: str, local_path: str):
        try:
            self.sftp_client.get(remote_path, local_path)
        except FileNotFoundError:
            raise SourceError(f"Remote file not found: {remote_path}")
        except PermissionError:
            raise SourceError(f"Permission denied accessing remote file: {remote_path}")
        except Exception as e:
            raise SourceError(f"Failed to download {remote_path}: {e}")

    def _download_directory(self, remote_path: str, local_path: str, relative: str, exclude_patterns: Sequence[str]):
        """
        Recursively download a directory via SFTP, skipping excluded entries.
        """
        Path(local_path).mkdir(parents=True, exist_ok=True)

        try:
            entries = self.sftp_client.listdir_attr(remote_path)
        except FileNotFoundError:
            raise SourceError(f"Remote directory not found: {remote_path}")
        except PermissionError:
            raise SourceError(f"Permission denied accessing remote directory: {remote_path}")
        except (OSError, paramiko.SSHException) as e:
            raise SourceError(f"Failed to list remote directory {remote_path}: {e}")

        for item in entries:
            item_relative = f'{relative}/{item.filename}' if relative else item.filename
            if should_exclude(item_relative, exclude_patterns):
                continue

            remote_item = f"{remote_path.rstrip('/')}/{item.filename}"
            local_item = os.path.join(local_path, item.filename)

            if stat.S_ISDIR(item.st_mode or 0):
                self._download_directory(remote_item, local_item, item_relative, exclude_patterns)
            elif stat.S_ISLNK(item.st_mode or 0):
                logger.debug(f"Skipping symlink {remote_item}")
            else:
                self._download_file(remote_item, local_item)

    def acquire(self, service_dir: str, staging_dir: str, exclude_patterns: Sequence[str] = ()) -> str:
        """
        Download the service directory into the staging directory.

        Returns:
            Local path of the downloaded copy

        Raises:
            SourceError: If connection or download fails
        """
        self._connect()
        basename = os.path.basename(service_dir.rstrip('/'))
        local_path = os.path.join(staging_dir, basename)

        try:
            attrs = self.sftp_client.stat(service_dir)
        except FileNotFoundError:
            raise SourceError(f"Remote path not found: {service_dir}")
        except (OSError, paramiko.SSHException) as e:
            raise SourceError(f"Failed to stat {service_dir} on {self.host}: {e}")
        if not stat.S_ISDIR(attrs.st_mode or 0):
            raise SourceError(f"Remote path is not a directory: {service_dir}")

        self._download_directory(service_dir, local_path, '', exclude_patterns)
        return local_path

    def file_size(self, path: str) -> int:
        self._connect()
        try:
            return self.sftp_client.stat(path).st_size or 0
        except OSError:
            return 0

    def remove(self, path: str):
        """Remove a remote file or directory tree."""
        try:
            self.run(['rm', '-rf', path])
        except CommandError as e:
            raise SourceError(f"Failed to remove {path} on {self.host}: {e}")

    def cleanup(self):
        """Close SSH/SFTP connections."""
        if self.sftp_client:
            try:
                self.sftp_client.close()
            except Exception as e:
                logger.debug(f"Error closing SFTP session: {e}")
            self.sftp_client = None

        if self.ssh_client:
            try:
                self.ssh_client.close()
            except Exception as e:
                logger.debug(f"Error closing SSH connection: {e}")
            self.ssh_client = None


def create_source(source_type: str, config: Dict[str, Any]):
    """
    Factory function to create appropriate source handler.

    Args:
        source_type: 'local' or 'ssh'
        config: Configuration dict for the source

    Returns:
        LocalSource or SSHSource instance

    Raises:
        ValueError: If source_type is invalid
    """
    if source_type == 'local':
        return LocalSource(timeout=config.get('timeout'))
    elif source_type == 'ssh':
        return SSHSource(config)
    else:
        raise ValueError(f"Invalid source type: {source_type}")


def source_from_config(config) -> Any:
    """Build the source handler described by a GlobalConfig."""
    return create_source(config.source_type, {
        'host': config.production_host,
        'port': config.production_port,
        'username': config.production_user,
        'private_key': config.ssh_key,
        'timeout': config.command_timeout,
    })
