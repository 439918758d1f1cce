"""Configuration loader for secretstore-toolkit."""
import os
import logging
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Mapping, Optional
import yaml

from .preferences import get_preference

logger = logging.getLogger(__name__)

DEFAULT_BACKEND = "aws-secretsmanager"
DEFAULT_RETRIES = 3

# Environment overrides, applied on top of the config file
ENV_BACKEND = "SECRETSTORE_BACKEND"
ENV_RETRIES = "SECRETSTORE_RETRIES"
ENV_KMS_KEY_ALIAS = "SECRETSTORE_KMS_KEY_ALIAS"
ENV_REGION = "SECRETSTORE_REGION"
ENV_FILE_PATH = "SECRETSTORE_FILE_PATH"
ENV_GCP_PROJECT = "GCP_PROJECT"


class ConfigError(Exception):
    """Configuration error exception."""
    pass


@dataclass(frozen=True)
class StoreConfig:
    """
    Everything the factory needs to build a Store.

    Attributes:
        backend: Registered backend name
        retries: Retry count applied to every backend call
        key_alias: Encryption key override (KMS alias, Cloud KMS key, or file key reference)
        region: AWS region
        endpoint: Endpoint URL override (e.g. a local emulator)
        project_id: GCP project ID
        credentials_path: GCP service account JSON file
        file_path: Path of the encrypted secrets file
        actor: Identity recorded as writer; resolved by the backend when unset
        backoff: Exponential backoff multiplier in seconds between retries
    """
    backend: str = DEFAULT_BACKEND
    retries: int = DEFAULT_RETRIES
    key_alias: Optional[str] = None
    region: Optional[str] = None
    endpoint: Optional[str] = None
    project_id: Optional[str] = None
    credentials_path: Optional[str] = None
    file_path: Optional[str] = None
    actor: Optional[str] = None
    backoff: float = 0.5


def default_config_path() -> Path:
    return Path.home() / ".config" / "secretstore-toolkit" / "config.yml"


def _get_config_path() -> Optional[str]:
    """
    Get config file path using XDG Base Directory standard.

    Priority order:
    1. User preference (stored in ~/.config/secretstore-toolkit/preferences.json)
    2. Default location: ~/.config/secretstore-toolkit/config.yml

    Returns:
        Absolute path to config file, or None if no config file exists
    """
    # 1. Check user preference
    config_path_pref = get_preference("config_path")
    if config_path_pref:
        config_path = Path(config_path_pref)
        if config_path.exists():
            logger.info(f"Using config from preference: {config_path}")
            return str(config_path)
        else:
            logger.warning(f"Config path from preference doesn't exist: {config_path}")

    # 2. Check default location
    default_config = default_config_path()
    if default_config.exists():
        logger.info(f"Using default config location: {default_config}")
        return str(default_config)

    logger.debug("No config file found, using defaults and environment")
    return None


def _read_config_file(config_path: str) -> Dict[str, Any]:
    try:
        with open(config_path, 'r') as f:
            config = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigError(f"Failed to parse YAML config at {config_path}: {e}")
    except Exception as e:
        raise ConfigError(f"Failed to read config file at {config_path}: {e}")

    if not config:
        raise ConfigError(f"Config file at {config_path} is empty")
    if not isinstance(config, dict):
        raise ConfigError(f"Config file at {config_path} must contain a mapping")
    return config


def _parse_retries(value: Any, source: str) -> int:
    try:
        retries = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"Invalid retries value from {source}: {value!r} (expected a non-negative integer)")
    if retries < 0:
        raise ConfigError(f"Invalid retries value from {source}: {retries} (must be >= 0)")
    return retries


def _section(config: Dict[str, Any], name: str, config_path: str) -> Dict[str, Any]:
    section = config.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' in config at {config_path} must be a mapping")
    return section


def _from_file(config: Dict[str, Any], config_path: str, default_backend: str) -> StoreConfig:
    aws = _section(config, "aws", config_path)
    gcp = _section(config, "gcp", config_path)
    local_file = _section(config, "file", config_path)
    auth = _section(config, "authentication", config_path)

    credentials_path = None
    if auth:
        if auth.get("type") != "service_account":
            raise ConfigError(
                f"Unsupported authentication type: {auth.get('type')}\n"
                f"Only 'service_account' is supported."
            )
        if 'service_account_path' not in auth:
            raise ConfigError(
                "Missing 'authentication.service_account_path' in config\n"
                "Please specify the absolute path to your service account JSON file."
            )
        credentials_path = auth['service_account_path']
        if not os.path.isfile(credentials_path):
            raise ConfigError(
                f"Service account file not found at: {credentials_path}\n"
                f"Please ensure the file exists or update the path in {config_path}"
            )

    retries = DEFAULT_RETRIES
    if 'retries' in config:
        retries = _parse_retries(config['retries'], config_path)

    return StoreConfig(
        backend=config.get("backend", default_backend),
        retries=retries,
        key_alias=config.get("key_alias"),
        region=aws.get("region"),
        endpoint=aws.get("endpoint_url"),
        project_id=gcp.get("project_id"),
        credentials_path=credentials_path,
        file_path=local_file.get("path"),
        actor=config.get("actor"),
    )


def apply_environment(config: StoreConfig, environ: Optional[Mapping[str, str]] = None) -> StoreConfig:
    """Return config with environment overrides applied."""
    environ = os.environ if environ is None else environ
    overrides: Dict[str, Any] = {}

    if environ.get(ENV_BACKEND):
        overrides["backend"] = environ[ENV_BACKEND]
    if environ.get(ENV_RETRIES):
        overrides["retries"] = _parse_retries(environ[ENV_RETRIES], ENV_RETRIES)
    if environ.get(ENV_KMS_KEY_ALIAS):
        overrides["key_alias"] = environ[ENV_KMS_KEY_ALIAS]
    if environ.get(ENV_REGION):
        overrides["region"] = environ[ENV_REGION]
    if environ.get(ENV_GCP_PROJECT):
        overrides["project_id"] = environ[ENV_GCP_PROJECT]
    if environ.get(ENV_FILE_PATH):
        overrides["file_path"] = environ[ENV_FILE_PATH]

    for field in overrides:
        logger.debug(f"Using {field} from environment")
    return replace(config, **overrides)


def load_config(environ: Optional[Mapping[str, str]] = None) -> StoreConfig:
    """
    Load configuration from the YAML config file and the environment.

    Config file format (every key optional):
        backend: aws-secretsmanager | gcp-secretmanager | file
        retries: 3
        key_alias: my-key
        actor: deploy-bot
        aws: {region: us-west-2, endpoint_url: http://localhost:4566}
        gcp: {project_id: my-project}
        authentication: {type: service_account, service_account_path: /path/sa.json}
        file: {path: ~/.local/share/secretstore-toolkit/secrets.json}

    Returns:
        StoreConfig with environment overrides applied

    Raises:
        ConfigError: If the config file is invalid
    """
    # Get config path dynamically each time (not cached at module level)
    config_path = _get_config_path()

    default_backend = get_preference("backend") or DEFAULT_BACKEND
    config = StoreConfig(backend=default_backend)
    if config_path:
        config = _from_file(_read_config_file(config_path), config_path, default_backend)
        logger.info(f"Configuration loaded successfully from {config_path}")

    config = apply_environment(config, environ)
    logger.debug(f"Using backend: {config.backend}")
    logger.debug(f"Using retries: {config.retries}")
    return config
