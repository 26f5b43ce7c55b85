"""
Unit tests for configuration decoding (docker_backup/config.py).

Tests global settings validation, per-service settings and the numbered
database definition blocks.
"""

import logging

import pytest

from docker_backup.config import (
    ConfigError,
    decode_database_definitions,
    decode_global_config,
    decode_service_config,
    load_global_config,
    load_service_config,
    parse_values,
    split_list,
)
from docker_backup.models import BackupMode


REQUIRED = {
    'SOURCE_DIR': '/opt/docker',
    'BACKUP_DIR': '/srv/backups',
    'AGE_RECIPIENT': 'age1abc',
}


class TestParseValues:
    """Test KEY=value parsing."""

    def test_parse_shell_style_assignments(self):
        text = (
            '# comment\n'
            'SOURCE_DIR=/opt/docker\n'
            'EXCLUDE="*.log, cache"\n'
            "PRE_BACKUP_HOOK='echo hi'\n"
        )
        values = parse_values(text)

        assert values['SOURCE_DIR'] == '/opt/docker'
        assert values['EXCLUDE'] == '*.log, cache'
        assert values['PRE_BACKUP_HOOK'] == 'echo hi'

    def test_split_list_drops_blanks(self):
        assert split_list(' a, b ,,c ') == ['a', 'b', 'c']
        assert split_list('') == []


class TestGlobalConfig:
    """Test global config decoding."""

    def test_defaults_applied(self):
        config = decode_global_config(REQUIRED)

        assert config.retain_daily == 7
        assert config.retain_weekly == 4
        assert config.retain_monthly == 3
        assert config.compression_level == 3
        assert config.staging_dir == '/var/tmp/docker-backup-staging'
        assert config.destination == 'local'
        assert config.source_type == 'local'
        assert config.command_timeout is None
        assert config.effective_lock_file == '/var/tmp/docker-backup-staging/docker-backup.lock'
        assert config.webhook_url is None

    def test_missing_required_keys(self):
        with pytest.raises(ConfigError, match='SOURCE_DIR'):
            decode_global_config({'BACKUP_DIR': '/srv', 'AGE_RECIPIENT': 'age1'})

    def test_ssh_source_requires_user_and_key(self):
        values = dict(REQUIRED, PRODUCTION_HOST='prod.example.com')

        with pytest.raises(ConfigError, match='PRODUCTION_USER SSH_KEY'):
            decode_global_config(values)

    def test_ssh_source(self):
        values = dict(REQUIRED, PRODUCTION_HOST='prod', PRODUCTION_USER='backup',
                      SSH_KEY='/root/.ssh/id', PRODUCTION_PORT='2222')
        config = decode_global_config(values)

        assert config.source_type == 'ssh'
        assert config.production_port == 2222

    def test_invalid_destination(self):
        with pytest.raises(ConfigError, match='Invalid DESTINATION'):
            decode_global_config(dict(REQUIRED, DESTINATION='ftp'))

    def test_s3_destination_requires_bucket(self):
        with pytest.raises(ConfigError, match='S3_BUCKET'):
            decode_global_config(dict(REQUIRED, DESTINATION='s3'))

    def test_sftp_destination_requires_remote(self):
        with pytest.raises(ConfigError, match='REMOTE_HOST'):
            decode_global_config(dict(REQUIRED, DESTINATION='sftp'))

    def test_webhook_settings(self):
        config = decode_global_config(dict(REQUIRED, WEBHOOK_URL='https://hooks.slack.com/x', WEBHOOK_TYPE='Slack'))

        assert config.webhook_url == 'https://hooks.slack.com/x'
        assert config.webhook_type == 'slack'

    def test_webhook_type_defaults_to_discord(self):
        assert decode_global_config(dict(REQUIRED, WEBHOOK_URL='https://discord.com/api/webhooks/1')).webhook_type == \
            'discord'

    def test_invalid_webhook_type(self):
        with pytest.raises(ConfigError, match='Invalid WEBHOOK_TYPE'):
            decode_global_config(dict(REQUIRED, WEBHOOK_URL='https://x', WEBHOOK_TYPE='teams'))

    def test_telegram_requires_chat_id(self):
        with pytest.raises(ConfigError, match='TELEGRAM_CHAT_ID'):
            decode_global_config(dict(REQUIRED, WEBHOOK_URL='123:abc', WEBHOOK_TYPE='telegram'))

    def test_invalid_integer(self):
        with pytest.raises(ConfigError, match='RETAIN_DAILY'):
            decode_global_config(dict(REQUIRED, RETAIN_DAILY='seven'))

    def test_negative_integer(self):
        with pytest.raises(ConfigError, match='must not be negative'):
            decode_global_config(dict(REQUIRED, RETAIN_WEEKLY='-1'))

    def test_command_timeout(self):
        assert decode_global_config(dict(REQUIRED, COMMAND_TIMEOUT='30')).command_timeout == 30.0
        assert decode_global_config(dict(REQUIRED, COMMAND_TIMEOUT='0')).command_timeout is None

    def test_archive_timestamp_flag(self):
        assert decode_global_config(dict(REQUIRED, ARCHIVE_TIMESTAMP='true')).archive_timestamp is True
        assert decode_global_config(dict(REQUIRED, ARCHIVE_TIMESTAMP='no')).archive_timestamp is False

    def test_load_from_file(self, tmp_path):
        path = tmp_path / 'docker-backup.conf'
        path.write_text('SOURCE_DIR=/opt/docker\nBACKUP_DIR=/srv\nAGE_RECIPIENT=age1x\nRETAIN_DAILY=14\n')

        config = load_global_config(str(path))

        assert config.retain_daily == 14

    def test_load_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match='not found'):
            load_global_config(str(tmp_path / 'missing.conf'))


class TestServiceConfig:
    """Test per-service config decoding."""

    def test_defaults(self):
        service = decode_service_config('blog', '/opt/docker/blog', {})

        assert service.mode is BackupMode.HOT
        assert service.exclude == ()
        assert service.pre_hook is None
        assert service.databases == ()
        assert service.dump_dir == '/opt/docker/blog/_dumps'

    def test_stop_start_mode_and_hooks(self):
        service = decode_service_config('blog', '/opt/docker/blog', {
            'BACKUP_MODE': 'stop-start',
            'EXCLUDE': '*.log,cache',
            'PRE_BACKUP_HOOK': ' ./pre.sh ',
            'POST_BACKUP_HOOK': '',
        })

        assert service.mode is BackupMode.STOP_START
        assert service.exclude == ('*.log', 'cache')
        assert service.pre_hook == './pre.sh'
        assert service.post_hook is None

    def test_invalid_mode_defaults_to_hot(self, caplog):
        with caplog.at_level(logging.WARNING):
            service = decode_service_config('blog', '/opt/docker/blog', {'BACKUP_MODE': 'cold'})

        assert service.mode is BackupMode.HOT
        assert "Invalid BACKUP_MODE='cold'" in caplog.text

    def test_load_through_source(self, make_source):
        source = make_source(files={'/opt/docker/blog/.backup.conf': 'BACKUP_MODE=stop-start\n'})

        service = load_service_config(source, '/opt/docker/blog')

        assert service.name == 'blog'
        assert service.mode is BackupMode.STOP_START

    def test_load_without_config_file(self, make_source):
        service = load_service_config(make_source(), '/opt/docker/wiki/')

        assert service.name == 'wiki'
        assert service.location == '/opt/docker/wiki/'
        assert service.mode is BackupMode.HOT


class TestDatabaseDefinitions:
    """Test numbered DB_<n>_* blocks."""

    def test_explicit_names_and_all(self):
        definitions = decode_database_definitions({
            'DB_1_CONTAINER': 'app-pg',
            'DB_1_TYPE': 'postgres',
            'DB_1_NAMES': 'all',
            'DB_2_CONTAINER': 'app-db',
            'DB_2_TYPE': 'mariadb',
            'DB_2_NAMES': 'shop, crm',
        })

        assert len(definitions) == 2
        assert definitions[0].all_databases is True
        assert definitions[0].names == ()
        assert definitions[1].db_type == 'mariadb'
        assert definitions[1].names == ('shop', 'crm')

    def test_gap_stops_discovery(self, caplog):
        with caplog.at_level(logging.WARNING):
            definitions = decode_database_definitions({
                'DB_1_CONTAINER': 'one',
                'DB_1_TYPE': 'postgres',
                'DB_1_NAMES': 'a',
                'DB_3_CONTAINER': 'three',
                'DB_3_TYPE': 'postgres',
                'DB_3_NAMES': 'c',
            }, service='blog')

        assert [d.container for d in definitions] == ['one']
        assert 'Ignoring DB definition(s) [3]' in caplog.text

    def test_missing_type_skipped_but_discovery_continues(self, caplog):
        with caplog.at_level(logging.WARNING):
            definitions = decode_database_definitions({
                'DB_1_CONTAINER': 'untyped',
                'DB_1_NAMES': 'a',
                'DB_2_CONTAINER': 'typed',
                'DB_2_TYPE': 'mysql',
                'DB_2_NAMES': 'b',
            })

        assert [d.index for d in definitions] == [2]
        assert 'DB_1_TYPE not set' in caplog.text

    def test_empty_container_ends_discovery(self):
        definitions = decode_database_definitions(parse_values(
            'DB_1_CONTAINER=\nDB_1_TYPE=postgres\n'
        ))

        assert definitions == ()
