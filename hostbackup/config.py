import os
import tempfile
from dataclasses import dataclass
from typing import Optional, Tuple, Union


# Retention override meaning "keep every generation"
UNLIMITED = 'unlimited'

# Relative key and plugin directories are anchored here, not at the cwd
PACKAGE_DIR = os.path.dirname(os.path.abspath(__file__))


class ConfigError(ValueError):
    """Raised when a setting has an unusable value."""
    pass


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == 'true'


def parse_retention(value: Union[int, str, None]) -> Optional[int]:
    """
    Normalize a retention setting.

    Args:
        value: Generation count, 'false'/'unlimited'/'' or None for no retention

    Returns:
        Highest rank to keep, or None to keep everything

    Raises:
        ConfigError: If the value is not a non-negative integer
    """
    if value is None:
        return None
    if isinstance(value, str):
        text = value.strip().lower()
        if text in ('false', UNLIMITED, ''):
            return None
        try:
            value = int(text)
        except ValueError:
            raise ConfigError(f"Invalid backup retention: {value!r}")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ConfigError(f"Invalid backup retention: {value!r} (must be 0 or more)")
    return value


def anchor_path(path: str) -> str:
    """Resolve a relative directory against the package directory."""
    path = os.path.expanduser(path)
    if os.path.isabs(path):
        return path
    return os.path.join(PACKAGE_DIR, path)


class Config:
    """Built-in defaults, each overridable from the environment"""

    # Sources (':' separated; wildcards may match nothing on a given host)
    BACKUP_DIRS = tuple(
        p for p in os.environ.get('BACKUP_DIRS', '/etc:/home/*:/var/www/*').split(':') if p
    )

    # Output
    BACKUP_OUT = os.environ.get('BACKUP_OUT') or '/tmp/backups'
    DATE_FORMAT = os.environ.get('BACKUP_DATE_FORMAT') or '%A'

    # Retention ('false' or 'unlimited' keeps every generation; parsed by resolve_configuration)
    RETENTION = os.environ.get('BACKUP_RETENTION', '7')

    # Compression
    COMPRESSION = _env_bool('BACKUP_COMPRESSION', 'true')
    COMPRESSION_METHOD = os.environ.get('BACKUP_COMPRESSION_METHOD') or 'gz'

    # Encryption
    ENCRYPTION = _env_bool('BACKUP_ENCRYPTION', 'true')
    ENCRYPTION_ASCII = _env_bool('BACKUP_ENCRYPTION_ASCII', 'true')
    ENCRYPTION_KEYDIR = anchor_path(os.environ.get('BACKUP_ENCRYPTION_KEYDIR') or 'pubkey')
    ENCRYPTION_STRICT = _env_bool('BACKUP_ENCRYPTION_STRICT', 'false')

    # Plugins
    APPLICATION = _env_bool('BACKUP_APPLICATION', 'true')
    REMOTE = _env_bool('BACKUP_REMOTE', 'true')
    POST_BACKUP = _env_bool('BACKUP_POST_BACKUP', 'true')
    PLUGIN_DIR = anchor_path(os.environ.get('BACKUP_PLUGIN_DIR') or 'plugins')

    # Scratch space and run log
    TEMP_DIR = os.environ.get('BACKUP_TEMP_DIR') or tempfile.gettempdir()
    LOG_FILE = os.environ.get('BACKUP_LOG_FILE') or '/tmp/hostbackup.log'


@dataclass(frozen=True)
class RunConfiguration:
    """Immutable settings for a single backup run."""

    source_patterns: Tuple[str, ...]
    output_root: str
    date_format: str = '%A'
    retention: Optional[int] = 7
    compression: bool = True
    compression_method: str = 'gz'
    encryption: bool = True
    ascii_armor: bool = True
    key_dir: str = Config.ENCRYPTION_KEYDIR
    strict_encryption: bool = False
    application: bool = True
    remote: bool = True
    post_backup: bool = True
    plugin_dir: str = Config.PLUGIN_DIR
    temp_dir: str = Config.TEMP_DIR
    log_file: str = Config.LOG_FILE
    color: bool = True

    def __post_init__(self):
        if self.retention is not None:
            parse_retention(self.retention)

    @property
    def unlimited_retention(self) -> bool:
        return self.retention is None


def resolve_configuration(defaults=Config, **overrides) -> RunConfiguration:
    """
    Merge built-in defaults with command-line overrides.

    Args:
        defaults: Class or object carrying the default attributes (see Config)
        **overrides: RunConfiguration fields to override; None values are ignored,
            retention=UNLIMITED disables retention

    Returns:
        RunConfiguration for the run

    Raises:
        TypeError: If an override names an unknown field
        ConfigError: If the retention is not a non-negative integer
    """
    values = {
        'source_patterns': tuple(defaults.BACKUP_DIRS),
        'output_root': defaults.BACKUP_OUT,
        'date_format': defaults.DATE_FORMAT.lstrip('+'),
        'retention': parse_retention(defaults.RETENTION),
        'compression': defaults.COMPRESSION,
        'compression_method': defaults.COMPRESSION_METHOD,
        'encryption': defaults.ENCRYPTION,
        'ascii_armor': defaults.ENCRYPTION_ASCII,
        'key_dir': defaults.ENCRYPTION_KEYDIR,
        'strict_encryption': defaults.ENCRYPTION_STRICT,
        'application': defaults.APPLICATION,
        'remote': defaults.REMOTE,
        'post_backup': defaults.POST_BACKUP,
        'plugin_dir': defaults.PLUGIN_DIR,
        'temp_dir': defaults.TEMP_DIR,
        'log_file': defaults.LOG_FILE,
    }

    for key, value in overrides.items():
        if key not in RunConfiguration.__dataclass_fields__:
            raise TypeError(f"Unknown configuration field: {key}")
        if key == 'retention' and value is not None:
            values[key] = parse_retention(value)
        elif value is not None:
            values[key] = value

    if 'source_patterns' in overrides and overrides['source_patterns'] is not None:
        values['source_patterns'] = tuple(overrides['source_patterns'])

    values['key_dir'] = anchor_path(values['key_dir'])

    return RunConfiguration(**values)
