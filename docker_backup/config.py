"""
Configuration loading and decoding.

Two kinds of files are read, both made of shell style KEY=value lines:
- the global config (docker-backup.conf) describing where services live,
  where archives go and how long they are kept
- one optional .backup.conf per service directory describing how that
  service is backed up (mode, excludes, hooks, databases)

Both are decoded into immutable objects which are passed explicitly to the
components that need them.
"""

import io
import logging
import os
from dataclasses import dataclass
from typing import Dict, List, Mapping, Optional, Tuple

from dotenv import dotenv_values

from .models import BackupMode, DatabaseDefinition, ServiceDefinition


logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = '/opt/docker-backup/docker-backup.conf'
SERVICE_CONFIG_NAME = '.backup.conf'

REQUIRED_KEYS = ('SOURCE_DIR', 'BACKUP_DIR', 'AGE_RECIPIENT')
SSH_REQUIRED_KEYS = ('PRODUCTION_USER', 'SSH_KEY')
DESTINATIONS = ('local', 's3', 'sftp')
WEBHOOK_TYPES = ('discord', 'slack', 'telegram')


class ConfigError(Exception):
    """Raised when a required setting is missing or invalid."""
    pass


@dataclass(frozen=True)
class GlobalConfig:
    """Settings shared by every service of a run"""

    source_dir: str
    backup_dir: str
    age_recipient: str

    # Production host (pull model); empty host means services are local
    production_host: Optional[str] = None
    production_user: Optional[str] = None
    production_port: int = 22
    ssh_key: Optional[str] = None

    staging_dir: str = '/var/tmp/docker-backup-staging'
    retain_daily: int = 7
    retain_weekly: int = 4
    retain_monthly: int = 3
    compression_level: int = 3
    archive_timestamp: bool = False
    age_key_file: Optional[str] = None
    container_runtime: str = 'docker'
    command_timeout: Optional[float] = None
    lock_file: Optional[str] = None
    log_file: Optional[str] = None
    log_level: str = 'INFO'

    # Destination
    destination: str = 'local'
    s3_bucket: Optional[str] = None
    s3_prefix: str = ''
    aws_region: str = 'us-east-1'
    aws_access_key_id: Optional[str] = None
    aws_secret_access_key: Optional[str] = None
    remote_host: Optional[str] = None
    remote_user: Optional[str] = None
    remote_path: Optional[str] = None
    remote_port: int = 22

    # Notifications
    webhook_url: Optional[str] = None
    webhook_type: str = 'discord'
    telegram_chat_id: Optional[str] = None

    @property
    def source_type(self) -> str:
        return 'ssh' if self.production_host else 'local'

    @property
    def effective_lock_file(self) -> str:
        return self.lock_file or os.path.join(self.staging_dir, 'docker-backup.lock')


def parse_values(text: str) -> Dict[str, str]:
    """
    Parse KEY=value text into a dict.

    Keys without a value are dropped so that "DB_2_CONTAINER=" behaves like
    an absent key.
    """
    values = dotenv_values(stream=io.StringIO(text))
    return {key: value for key, value in values.items() if value is not None}


def load_global_config(path: str = DEFAULT_CONFIG_PATH) -> GlobalConfig:
    """
    Load and validate the global configuration file.

    Args:
        path: Path to docker-backup.conf

    Returns:
        GlobalConfig instance

    Raises:
        ConfigError: If the file is missing or a required setting is absent
    """
    if not os.path.isfile(path):
        raise ConfigError(f"Global config not found: {path}")

    try:
        with open(path, 'r') as f:
            values = parse_values(f.read())
    except OSError as e:
        raise ConfigError(f"Failed to read global config {path}: {e}")

    config = decode_global_config(values)
    logger.info(f"Loaded global config: {path}")
    return config


def decode_global_config(values: Mapping[str, str]) -> GlobalConfig:
    """
    Decode global settings, applying defaults for optional keys.

    Raises:
        ConfigError: If required settings are missing or values are invalid
    """
    required = list(REQUIRED_KEYS)
    if values.get('PRODUCTION_HOST'):
        required.extend(SSH_REQUIRED_KEYS)

    missing = [key for key in required if not values.get(key)]
    if missing:
        raise ConfigError(f"Missing required config variables: {' '.join(missing)}")

    destination = values.get('DESTINATION', 'local').strip().lower() or 'local'
    if destination not in DESTINATIONS:
        raise ConfigError(f"Invalid DESTINATION '{destination}'. Valid options: {list(DESTINATIONS)}")
    if destination == 's3' and not values.get('S3_BUCKET'):
        raise ConfigError("S3_BUCKET is required when DESTINATION=s3")
    if destination == 'sftp':
        missing = [k for k in ('REMOTE_HOST', 'REMOTE_USER', 'REMOTE_PATH', 'SSH_KEY') if not values.get(k)]
        if missing:
            raise ConfigError(f"Missing required config variables for DESTINATION=sftp: {' '.join(missing)}")

    webhook_url = values.get('WEBHOOK_URL') or None
    webhook_type = (values.get('WEBHOOK_TYPE') or 'discord').strip().lower()
    if webhook_url and webhook_type not in WEBHOOK_TYPES:
        raise ConfigError(f"Invalid WEBHOOK_TYPE '{webhook_type}'. Valid options: {list(WEBHOOK_TYPES)}")
    if webhook_url and webhook_type == 'telegram' and not values.get('TELEGRAM_CHAT_ID'):
        raise ConfigError("TELEGRAM_CHAT_ID is required when WEBHOOK_TYPE=telegram")

    timeout = _parse_int(values, 'COMMAND_TIMEOUT', 0)

    return GlobalConfig(
        source_dir=values['SOURCE_DIR'],
        backup_dir=values['BACKUP_DIR'],
        age_recipient=values['AGE_RECIPIENT'],
        production_host=values.get('PRODUCTION_HOST') or None,
        production_user=values.get('PRODUCTION_USER') or None,
        production_port=_parse_int(values, 'PRODUCTION_PORT', 22),
        ssh_key=values.get('SSH_KEY') or None,
        staging_dir=values.get('STAGING_DIR') or '/var/tmp/docker-backup-staging',
        retain_daily=_parse_int(values, 'RETAIN_DAILY', 7),
        retain_weekly=_parse_int(values, 'RETAIN_WEEKLY', 4),
        retain_monthly=_parse_int(values, 'RETAIN_MONTHLY', 3),
        compression_level=_parse_int(values, 'COMPRESSION_LEVEL', 3),
        archive_timestamp=_parse_bool(values.get('ARCHIVE_TIMESTAMP')),
        age_key_file=values.get('AGE_KEY_FILE') or None,
        container_runtime=values.get('CONTAINER_RUNTIME') or 'docker',
        command_timeout=float(timeout) if timeout else None,
        lock_file=values.get('LOCK_FILE') or None,
        log_file=values.get('LOG_FILE') or None,
        log_level=(values.get('LOG_LEVEL') or 'INFO').upper(),
        destination=destination,
        s3_bucket=values.get('S3_BUCKET') or None,
        s3_prefix=values.get('S3_PREFIX', ''),
        aws_region=values.get('AWS_REGION') or 'us-east-1',
        aws_access_key_id=values.get('AWS_ACCESS_KEY_ID') or None,
        aws_secret_access_key=values.get('AWS_SECRET_ACCESS_KEY') or None,
        remote_host=values.get('REMOTE_HOST') or None,
        remote_user=values.get('REMOTE_USER') or None,
        remote_path=values.get('REMOTE_PATH') or None,
        remote_port=_parse_int(values, 'REMOTE_PORT', 22),
        webhook_url=webhook_url,
        webhook_type=webhook_type,
        telegram_chat_id=values.get('TELEGRAM_CHAT_ID') or None,
    )


def decode_service_config(name: str, location: str, values: Mapping[str, str]) -> ServiceDefinition:
    """
    Decode the per-service settings of one .backup.conf.

    Args:
        name: Service name (directory basename)
        location: Service directory on the source host
        values: Parsed KEY=value pairs (empty when the service has no config)

    Returns:
        ServiceDefinition with defaults applied
    """
    raw_mode = (values.get('BACKUP_MODE') or 'hot').strip()
    try:
        mode = BackupMode(raw_mode)
    except ValueError:
        logger.warning(f"Invalid BACKUP_MODE='{raw_mode}' for {name}, defaulting to 'hot'")
        mode = BackupMode.HOT

    return ServiceDefinition(
        name=name,
        location=location,
        mode=mode,
        exclude=tuple(split_list(values.get('EXCLUDE', ''))),
        pre_hook=(values.get('PRE_BACKUP_HOOK') or '').strip() or None,
        post_hook=(values.get('POST_BACKUP_HOOK') or '').strip() or None,
        databases=decode_database_definitions(values, service=name),
    )


def decode_database_definitions(values: Mapping[str, str], service: str = '') -> Tuple[DatabaseDefinition, ...]:
    """
    Decode the numbered DB_<i>_CONTAINER / _TYPE / _NAMES blocks.

    Numbering must be contiguous from 1: discovery stops at the first index
    without a CONTAINER. A definition without a TYPE is skipped with a
    warning but does not end discovery.
    """
    definitions: List[DatabaseDefinition] = []
    index = 1
    while True:
        container = (values.get(f'DB_{index}_CONTAINER') or '').strip()
        if not container:
            break

        db_type = (values.get(f'DB_{index}_TYPE') or '').strip().lower()
        if not db_type:
            logger.warning(f"DB_{index}_TYPE not set for container {container}, skipping")
            index += 1
            continue

        raw_names = (values.get(f'DB_{index}_NAMES') or '').strip()
        if raw_names == 'all':
            definition = DatabaseDefinition(index, container, db_type, (), True)
        else:
            definition = DatabaseDefinition(index, container, db_type, tuple(split_list(raw_names)), False)
        definitions.append(definition)
        index += 1

    stray = sorted(_numbered_indices(values) - set(range(1, index)))
    if stray:
        logger.warning(
            f"Ignoring DB definition(s) {stray} for {service or 'service'}: "
            f"DB_<n>_* blocks must be numbered contiguously from 1 (DB_{index}_CONTAINER is missing)"
        )

    return tuple(definitions)


def load_service_config(source, service_dir: str) -> ServiceDefinition:
    """
    Read <service_dir>/.backup.conf through a source and decode it.

    Missing config means all defaults (hot mode, no databases).
    """
    name = os.path.basename(service_dir.rstrip('/'))
    text = source.read_text(f"{service_dir.rstrip('/')}/{SERVICE_CONFIG_NAME}")
    if text:
        logger.info(f"Loaded config: {service_dir}/{SERVICE_CONFIG_NAME}")
        values = parse_values(text)
    else:
        logger.info(f"No {SERVICE_CONFIG_NAME} for {name}, using defaults")
        values = {}
    return decode_service_config(name, service_dir, values)


def split_list(raw: str) -> List[str]:
    """Split a comma separated value, dropping blanks."""
    if not raw:
        return []
    return [item.strip() for item in raw.split(',') if item.strip()]


def _numbered_indices(values: Mapping[str, str]) -> set:
    indices = set()
    for key in values:
        parts = key.split('_')
        if len(parts) >= 3 and parts[0] == 'DB' and parts[1].isdigit() and key.endswith('_CONTAINER'):
            indices.add(int(parts[1]))
    return indices


def _parse_int(values: Mapping[str, str], key: str, default: int) -> int:
    raw = values.get(key)
    if raw is None or raw.strip() == '':
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigError(f"Invalid {key} value: {raw!r}. It must be an integer.")
    if value < 0:
        raise ConfigError(f"Invalid {key} value: {raw!r}. It must not be negative.")
    return value


def _parse_bool(raw: Optional[str]) -> bool:
    return (raw or '').strip().lower() in ('1', 'true', 'yes', 'on')
