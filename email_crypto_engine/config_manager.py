# ============================================================================
# email_crypto_engine/config_manager.py
# ============================================================================
"""
Configuration management for the email crypto engine.
Supports environment variable configuration for service deployments.
"""

import logging
import os
from dataclasses import dataclass, field
from typing import Optional, Tuple

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class BackendConfiguration:
    """Crypto backend selection and storage locations."""
    pgp_driver: str = "gnupg"
    smime_driver: str = "cryptography"
    pgp_homedir: str = os.path.join("plugins", "enigma", "home")
    smime_homedir: str = os.path.join("plugins", "enigma", "smime")
    gpg_binary: str = "gpg"


@dataclass(frozen=True)
class PasswordConfiguration:
    """Passphrase handling settings."""
    password_time_minutes: int = 5  # 0 keeps passwords for the whole session
    passwordless: bool = False

    @property
    def ttl_seconds(self) -> int:
        return self.password_time_minutes * 60


@dataclass(frozen=True)
class ProcessingConfiguration:
    """Inbound and outbound message processing settings."""
    enable_signatures: bool = True
    enable_decryption: bool = True
    line_length: int = 72
    signing_key_cache_ttl: int = 0  # seconds, 0 caches for the engine lifetime


@dataclass(frozen=True)
class KeyDiscoveryConfiguration:
    """Web-Of-Anti-Trust DNS key discovery settings."""
    woat_enabled: bool = False
    woat_domains: Tuple[str, ...] = ()  # empty means every domain
    dns_timeout: float = 5.0


@dataclass(frozen=True)
class LoggingConfiguration:
    """Logging configuration settings."""
    level: str = "INFO"
    format: str = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


@dataclass(frozen=True)
class EngineConfiguration:
    """Complete engine configuration combining all sub-configurations."""
    backend: BackendConfiguration = field(default_factory=BackendConfiguration)
    passwords: PasswordConfiguration = field(default_factory=PasswordConfiguration)
    processing: ProcessingConfiguration = field(default_factory=ProcessingConfiguration)
    key_discovery: KeyDiscoveryConfiguration = field(default_factory=KeyDiscoveryConfiguration)
    logging: LoggingConfiguration = field(default_factory=LoggingConfiguration)

    def validate(self) -> None:
        """Validate configuration values and raise specific errors for invalid settings."""
        errors = []

        if self.passwords.password_time_minutes < 0:
            errors.append("password_time_minutes cannot be negative")
        if self.processing.line_length <= 0:
            errors.append("line_length must be positive")
        if self.processing.signing_key_cache_ttl < 0:
            errors.append("signing_key_cache_ttl cannot be negative")
        if self.key_discovery.dns_timeout <= 0:
            errors.append("dns_timeout must be positive")
        if self.logging.level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            errors.append(f"unknown log level {self.logging.level}")

        if errors:
            raise ConfigurationError(
                f"Configuration validation failed: {'; '.join(errors)}",
                {"errors": errors}
            )


def get_config_from_env() -> EngineConfiguration:
    """Load configuration from ENIGMA_* environment variables."""

    backend_config = BackendConfiguration(
        pgp_driver=os.getenv("ENIGMA_PGP_DRIVER", "gnupg"),
        smime_driver=os.getenv("ENIGMA_SMIME_DRIVER", "cryptography"),
        pgp_homedir=os.getenv("ENIGMA_PGP_HOMEDIR", BackendConfiguration.pgp_homedir),
        smime_homedir=os.getenv("ENIGMA_SMIME_HOMEDIR", BackendConfiguration.smime_homedir),
        gpg_binary=os.getenv("ENIGMA_GPG_BINARY", "gpg")
    )

    password_config = PasswordConfiguration(
        password_time_minutes=_get_int_env("ENIGMA_PASSWORD_TIME", 5),
        passwordless=_get_bool_env("ENIGMA_PASSWORDLESS", False)
    )

    processing_config = ProcessingConfiguration(
        enable_signatures=_get_bool_env("ENIGMA_SIGNATURES", True),
        enable_decryption=_get_bool_env("ENIGMA_DECRYPTION", True),
        line_length=_get_int_env("ENIGMA_LINE_LENGTH", 72),
        signing_key_cache_ttl=_get_int_env("ENIGMA_KEY_CACHE_TTL", 0)
    )

    discovery_config = KeyDiscoveryConfiguration(
        woat_enabled=_get_bool_env("ENIGMA_WOAT", False),
        woat_domains=_get_list_env("ENIGMA_WOAT_DOMAINS"),
        dns_timeout=_get_float_env("ENIGMA_DNS_TIMEOUT", 5.0)
    )

    logging_config = LoggingConfiguration(
        level=os.getenv("ENIGMA_LOG_LEVEL", "INFO").upper()
    )

    config = EngineConfiguration(
        backend=backend_config,
        passwords=password_config,
        processing=processing_config,
        key_discovery=discovery_config,
        logging=logging_config
    )

    config.validate()

    return config


def get_default_config() -> EngineConfiguration:
    """Get default configuration with factory defaults."""
    config = EngineConfiguration()
    config.validate()
    return config


def configure_logging(config: Optional[EngineConfiguration] = None) -> None:
    """Apply the logging section of the configuration to the root logger."""
    config = config or get_default_config()
    logging.basicConfig(level=config.logging.level, format=config.logging.format)
    logging.getLogger("gnupg").setLevel(logging.WARNING)


def _get_bool_env(key: str, default: bool) -> bool:
    """Get boolean value from environment variable."""
    value = os.getenv(key, "").lower()
    if value in ("true", "1", "yes", "on"):
        return True
    elif value in ("false", "0", "no", "off"):
        return False
    else:
        return default


def _get_int_env(key: str, default: int) -> int:
    """Get integer value from environment variable."""
    try:
        return int(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _get_float_env(key: str, default: float) -> float:
    """Get float value from environment variable."""
    try:
        return float(os.getenv(key, str(default)))
    except (ValueError, TypeError):
        return default


def _get_list_env(key: str) -> Tuple[str, ...]:
    """Get a comma separated list from environment variable."""
    value = os.getenv(key, "")
    return tuple(item.strip().lower() for item in value.split(",") if item.strip())
