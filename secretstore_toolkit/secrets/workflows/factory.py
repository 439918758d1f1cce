"""Factory that builds a ready Store from a StoreConfig."""
import logging
from pathlib import Path
from typing import Callable, Dict, List

from ..backends.aws_secretsmanager import AWSSecretsManagerStore
from ..backends.encrypted_file import EncryptedFileStore, load_master_password, normalize_key_ref
from ..backends.gcp_secretmanager import GCPSecretManagerStore
from ..domains.config_loader import ConfigError, StoreConfig
from ..domains.store import Store

logger = logging.getLogger(__name__)

DEFAULT_FILE_PATH = Path.home() / ".local" / "share" / "secretstore-toolkit" / "secrets.json"

StoreBuilder = Callable[[StoreConfig], Store]

# Registry of backend name -> builder
_BACKEND_REGISTRY: Dict[str, StoreBuilder] = {}


def register_backend(name: str) -> Callable[[StoreBuilder], StoreBuilder]:
    """
    Decorator to register a Store builder under a backend name.

    Usage:
        @register_backend("my-backend")
        def _build_my_backend(config: StoreConfig) -> Store:
            ...
    """
    def decorator(builder: StoreBuilder) -> StoreBuilder:
        if name in _BACKEND_REGISTRY:
            logger.warning(f"Overwriting existing backend: {name}")
        _BACKEND_REGISTRY[name] = builder
        logger.debug(f"Registered backend: {name}")
        return builder
    return decorator


def get_registered_backends() -> List[str]:
    """Return the names of all registered backends."""
    return sorted(_BACKEND_REGISTRY)


@register_backend(AWSSecretsManagerStore.name)
def _build_aws_secretsmanager(config: StoreConfig) -> Store:
    return AWSSecretsManagerStore(
        retries=config.retries,
        region=config.region,
        endpoint=config.endpoint,
        key_alias=config.key_alias,
        actor=config.actor,
        backoff=config.backoff,
    )


@register_backend(GCPSecretManagerStore.name)
def _build_gcp_secretmanager(config: StoreConfig) -> Store:
    if not config.project_id:
        raise ConfigError(
            "Project ID not found for the GCP Secret Manager backend.\n"
            "Set the GCP_PROJECT environment variable or configure gcp.project_id in the config file."
        )
    return GCPSecretManagerStore(
        project_id=config.project_id,
        retries=config.retries,
        key_alias=config.key_alias,
        credentials_path=config.credentials_path,
        actor=config.actor,
        backoff=config.backoff,
    )


@register_backend(EncryptedFileStore.name)
def _build_encrypted_file(config: StoreConfig) -> Store:
    file_path = Path(config.file_path).expanduser() if config.file_path else DEFAULT_FILE_PATH
    key_ref = normalize_key_ref(config.key_alias)
    logger.debug(f"Using secrets file {file_path} with key reference {key_ref}")
    return EncryptedFileStore(
        file_path=file_path,
        master_password=load_master_password(key_ref),
        retries=config.retries,
        actor=config.actor,
        backoff=config.backoff,
    )


def create_store(config: StoreConfig) -> Store:
    """
    Create the Store selected by config.backend.

    Raises:
        ConfigError: If the backend is unknown or its settings are incomplete
    """
    if config.backend not in _BACKEND_REGISTRY:
        raise ConfigError(
            f"Unknown backend: '{config.backend}'. "
            f"Available: {', '.join(get_registered_backends())}"
        )
    if config.retries < 0:
        raise ConfigError(f"retries must be >= 0, got {config.retries}")

    store = _BACKEND_REGISTRY[config.backend](config)
    logger.info(f"Created {config.backend} store (retries={config.retries})")
    return store
