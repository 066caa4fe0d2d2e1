"""
Configuration loading for panbackup.

The configuration is a TOML file with an [app] table and one [[backups]]
table per backup entry. Environment variables override the Cloud189
credentials:

- CLOUD189_USERNAME
- CLOUD189_PASSWORD
- CLOUD189_USE_QR (1 = true)
"""

import os
import tomllib
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, ValidationError, model_validator


DEFAULT_CONFIG_PATH = 'backup.toml'
DEFAULT_BAIDU_CONFIG = os.path.join('~', '.baidu', 'baidu_pan_config.json')
DEFAULT_CLOUD189_CONFIG = os.path.join('~', '.cloud189', 'session.json')

TRUTHY_ENV_VALUES = ('1',)


class ConfigError(Exception):
    """Raised when the configuration cannot be loaded or is invalid."""
    pass


def _blank(value: Optional[str]) -> bool:
    return value is None or not value.strip()


class AppSettings(BaseModel):
    """Application-wide settings ([app] table)."""

    model_config = ConfigDict(frozen=True, extra='ignore', populate_by_name=True)

    baidu_enabled: bool = False
    baidu_app_key: Optional[str] = Field(
        None, validation_alias=AliasChoices('baidu_app_key', 'app_key')
    )
    baidu_app_secret: Optional[str] = Field(
        None, validation_alias=AliasChoices('baidu_app_secret', 'app_secret')
    )
    baidu_config: str = DEFAULT_BAIDU_CONFIG

    cloud189_enabled: bool = False
    cloud189_username: Optional[str] = None
    cloud189_password: Optional[str] = None
    cloud189_use_qr: bool = False
    cloud189_config: str = DEFAULT_CLOUD189_CONFIG

    archive_dir: str = '.'
    max_workers: int = Field(1, ge=1)
    schedule: Optional[str] = None

    @model_validator(mode='before')
    @classmethod
    def _default_baidu_enabled(cls, data: Any) -> Any:
        # Configs written before multi-backend support only carry app_key/app_secret
        if isinstance(data, dict) and data.get('baidu_enabled') is None:
            data = dict(data)
            data['baidu_enabled'] = bool(
                (data.get('baidu_app_key') or data.get('app_key'))
                and (data.get('baidu_app_secret') or data.get('app_secret'))
            )
        return data

    @model_validator(mode='after')
    def _validate_backends(self) -> 'AppSettings':
        if self.baidu_enabled:
            if _blank(self.baidu_app_key) or _blank(self.baidu_app_secret):
                raise ValueError(
                    "Baidu is enabled but baidu_app_key/baidu_app_secret "
                    "(or legacy app_key/app_secret) are missing"
                )
        if self.cloud189_enabled and not self.cloud189_use_qr:
            if _blank(self.cloud189_username) or _blank(self.cloud189_password):
                raise ValueError(
                    "Cloud189 is enabled but neither cloud189_use_qr nor "
                    "cloud189_username/cloud189_password are set"
                )
        return self

    @property
    def baidu_config_path(self) -> Path:
        return Path(self.baidu_config).expanduser()

    @property
    def cloud189_config_path(self) -> Path:
        return Path(self.cloud189_config).expanduser()

    @property
    def archive_dir_path(self) -> Path:
        return Path(self.archive_dir).expanduser()


class BackupItem(BaseModel):
    """One configured backup target ([[backups]] table)."""

    model_config = ConfigDict(frozen=True, extra='ignore')

    source_dir: Optional[str] = None
    source_path: Optional[str] = None
    command: Optional[str] = None
    command_workdir: Optional[str] = None
    keep_command_source: bool = True
    remote_dir: str
    archive_name: str = 'backup'
    keep_archive: bool = False

    @model_validator(mode='after')
    def _validate_source(self) -> 'BackupItem':
        if _blank(self.source_path) and _blank(self.source_dir):
            raise ValueError("Missing source_path/source_dir in backup item")
        return self

    @property
    def source(self) -> str:
        """Configured source, preferring source_path over source_dir."""
        if not _blank(self.source_path):
            return self.source_path.strip()
        return self.source_dir.strip()


class BackupConfig(BaseModel):
    """Top-level configuration."""

    model_config = ConfigDict(frozen=True, extra='ignore')

    app: AppSettings = Field(default_factory=AppSettings)
    backups: List[BackupItem]

    @model_validator(mode='after')
    def _validate_backups(self) -> 'BackupConfig':
        if not self.backups:
            raise ValueError("No backups configured")
        return self


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """
    Apply environment variable overrides to raw configuration data.

    Args:
        data: Parsed TOML document
        environ: Environment mapping (defaults to os.environ)

    Returns:
        New dict with the [app] table updated
    """
    if environ is None:
        environ = os.environ

    app = dict(data.get('app') or {})

    if environ.get('CLOUD189_USERNAME'):
        app['cloud189_username'] = environ['CLOUD189_USERNAME']
    if environ.get('CLOUD189_PASSWORD'):
        app['cloud189_password'] = environ['CLOUD189_PASSWORD']
    if 'CLOUD189_USE_QR' in environ:
        app['cloud189_use_qr'] = environ['CLOUD189_USE_QR'].strip() in TRUTHY_ENV_VALUES

    result = dict(data)
    result['app'] = app
    return result


def load_config(path: str, environ: Optional[Mapping[str, str]] = None) -> BackupConfig:
    """
    Load and validate a configuration file.

    Args:
        path: Path to the TOML configuration
        environ: Environment mapping for overrides (defaults to os.environ)

    Returns:
        Validated BackupConfig

    Raises:
        ConfigError: If the file is missing, unparseable or invalid
    """
    try:
        with open(path, 'rb') as handle:
            data = tomllib.load(handle)
    except FileNotFoundError:
        raise ConfigError(f"Config file not found: {path}")
    except OSError as e:
        raise ConfigError(f"Failed to read config file {path}: {e}")
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"Failed to parse config file {path}: {e}")

    data = apply_env_overrides(data, environ)

    try:
        return BackupConfig.model_validate(data)
    except ValidationError as e:
        raise ConfigError(_format_validation_error(e)) from e


def _format_validation_error(error: ValidationError) -> str:
    # Only field locations and messages; input values may be secrets
    parts = []
    for item in error.errors(include_input=False, include_url=False):
        location = '.'.join(str(part) for part in item.get('loc', ()))
        message = item.get('msg', 'invalid value')
        parts.append(f"{location}: {message}" if location else message)
    return "Invalid configuration: " + '; '.join(parts)
