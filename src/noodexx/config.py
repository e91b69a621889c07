"""Configuration helpers for the noodexx application."""

from __future__ import annotations

from copy import deepcopy
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
import json
import logging
import os
from pathlib import Path
from typing import Any, Final

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

PROVIDER_OLLAMA: Final[str] = "ollama"
PROVIDER_OPENAI: Final[str] = "openai"
PROVIDER_ANTHROPIC: Final[str] = "anthropic"

_DEFAULT_OLLAMA_ENDPOINT: Final[str] = "http://localhost:11434"
_DEFAULT_OLLAMA_EMBED_MODEL: Final[str] = "nomic-embed-text"
_DEFAULT_OLLAMA_CHAT_MODEL: Final[str] = "llama3.2"
_DEFAULT_LOG_LEVEL: Final[str] = "info"
_DEFAULT_LOG_FILE: Final[str] = "debug.log"
_DEFAULT_LOG_MAX_SIZE_MB: Final[int] = 10
_DEFAULT_LOG_MAX_BACKUPS: Final[int] = 3
_DEFAULT_MAX_FILE_SIZE_MB: Final[int] = 10
_DEFAULT_ALLOWED_EXTENSIONS: Final[tuple[str, ...]] = (".txt", ".md", ".pdf", ".html")
_DEFAULT_SERVER_PORT: Final[int] = 8080
_DEFAULT_BIND_ADDRESS: Final[str] = "127.0.0.1"
_DEFAULT_DATA_DIR: Final[str] = "data"
_VALID_LOG_LEVELS: Final[frozenset[str]] = frozenset({"debug", "info", "warn", "error"})
_LOCAL_ENDPOINT_PREFIXES: Final[tuple[str, ...]] = ("http://localhost", "http://127.0.0.1")


class ConfigError(ValueError):
    """Raised when the configuration file cannot be read, parsed or written."""


class ConfigValidationError(ConfigError):
    """Raised when a configuration value violates a field requirement."""


class CloudRAGPolicy(str, Enum):
    """Whether retrieved documents may be sent to a cloud provider."""

    NO_RAG = "no_rag"
    ALLOW_RAG = "allow_rag"


def _env_optional_bool(name: str) -> bool | None:
    """Read an optional boolean environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = _parse_bool_text(raw)
    if value is None:
        msg = f"Environment variable {name} must be a boolean value (true/false)."
        raise ConfigValidationError(msg)
    return value


def _parse_bool_text(raw: str) -> bool | None:
    value = raw.strip().lower()
    if value in {"1", "true", "yes", "on"}:
        return True
    if value in {"0", "false", "no", "off"}:
        return False
    return None


def _coerce_bool(raw: Any, default: bool, field_name: str) -> bool:
    """Read a boolean config field, accepting JSON booleans and true/false strings."""

    if raw is None:
        return default
    if isinstance(raw, bool):
        return raw
    if isinstance(raw, str):
        value = _parse_bool_text(raw)
        if value is not None:
            return value
    raise ConfigValidationError(f"{field_name} must be a boolean value (true/false)")


def _env_optional_int(name: str) -> int | None:
    """Read an optional integer environment variable."""

    raw = os.getenv(name)
    if raw is None:
        return None
    value = raw.strip()
    if not value:
        return None
    try:
        return int(value)
    except ValueError as exc:
        raise ConfigValidationError(f"Environment variable {name} must be an integer") from exc


def _env_str(name: str) -> str | None:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return None
    return raw.strip()


@dataclass(slots=True)
class ProviderSlotConfig:
    """Backend selection plus every credential/model field a backend may need."""

    type: str
    ollama_endpoint: str = ""
    ollama_embed_model: str = ""
    ollama_chat_model: str = ""
    openai_key: str = ""
    openai_embed_model: str = ""
    openai_chat_model: str = ""
    anthropic_key: str = ""
    anthropic_embed_model: str = ""
    anthropic_chat_model: str = ""

    def __post_init__(self) -> None:
        self.type = (self.type or "").strip().lower()

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ProviderSlotConfig | None":
        """Build a slot from its JSON form; an empty type means "not configured"."""

        if not data:
            return None
        provider_type = str(data.get("type") or "").strip()
        if not provider_type:
            return None
        known = {name for name in cls.__dataclass_fields__}
        values = {key: str(value or "") for key, value in data.items() if key in known}
        values["type"] = provider_type
        return cls(**values)

    def to_dict(self) -> dict[str, str]:
        return asdict(self)

    def masked(self) -> dict[str, str]:
        """Return the slot as a dict with API keys redacted."""

        data = self.to_dict()
        for key in ("openai_key", "anthropic_key"):
            if data[key]:
                data[key] = "********"
        return data


def _empty_slot_dict() -> dict[str, str]:
    return {name: "" for name in ProviderSlotConfig.__dataclass_fields__}


def default_local_provider() -> ProviderSlotConfig:
    return ProviderSlotConfig(
        type=PROVIDER_OLLAMA,
        ollama_endpoint=_DEFAULT_OLLAMA_ENDPOINT,
        ollama_embed_model=_DEFAULT_OLLAMA_EMBED_MODEL,
        ollama_chat_model=_DEFAULT_OLLAMA_CHAT_MODEL,
    )


@dataclass(slots=True)
class PrivacyPolicy:
    """Privacy toggle state and the document-sharing policy for cloud providers."""

    default_to_local: bool = True
    cloud_rag_policy: CloudRAGPolicy = CloudRAGPolicy.NO_RAG


@dataclass(slots=True)
class LoggingConfig:
    level: str = _DEFAULT_LOG_LEVEL
    debug_enabled: bool = True
    file: str = _DEFAULT_LOG_FILE
    max_size_mb: int = _DEFAULT_LOG_MAX_SIZE_MB
    max_backups: int = _DEFAULT_LOG_MAX_BACKUPS


@dataclass(slots=True)
class GuardrailsConfig:
    max_file_size_mb: int = _DEFAULT_MAX_FILE_SIZE_MB
    allowed_extensions: list[str] = field(default_factory=lambda: list(_DEFAULT_ALLOWED_EXTENSIONS))


@dataclass(slots=True)
class ServerConfig:
    port: int = _DEFAULT_SERVER_PORT
    bind_address: str = _DEFAULT_BIND_ADDRESS


@dataclass(slots=True)
class MetricsConfig:
    enabled: bool = True
    prometheus_enabled: bool = False


@dataclass(slots=True)
class AppConfig:
    """Application configuration persisted as JSON."""

    local_provider: ProviderSlotConfig | None = None
    cloud_provider: ProviderSlotConfig | None = None
    privacy: PrivacyPolicy = field(default_factory=PrivacyPolicy)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    guardrails: GuardrailsConfig = field(default_factory=GuardrailsConfig)
    server: ServerConfig = field(default_factory=ServerConfig)
    metrics: MetricsConfig = field(default_factory=MetricsConfig)
    data_dir: str = _DEFAULT_DATA_DIR

    @classmethod
    def load(cls, path: str | Path, *, apply_env: bool = True) -> "AppConfig":
        """Load configuration from ``path``, creating it with defaults when missing.

        Legacy single-provider files are migrated, environment overrides are
        applied and the result is validated before being returned.
        """

        path = Path(path)
        if path.exists():
            try:
                raw = json.loads(path.read_text(encoding="utf-8"))
            except OSError as exc:
                raise ConfigError(f"failed to read config file: {exc}") from exc
            except json.JSONDecodeError as exc:
                raise ConfigError(f"failed to parse config file: {exc}") from exc
            if not isinstance(raw, dict):
                raise ConfigError("failed to parse config file: top-level value must be an object")
            config = cls.from_dict(raw)
        else:
            config = cls(local_provider=default_local_provider())
            config.save(path)
            logger.info("config.created path=%s", path)

        if apply_env:
            config.apply_env_overrides()
        try:
            config.validate()
        except ConfigValidationError as exc:
            raise ConfigValidationError(f"invalid configuration: {exc}") from exc
        return config

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> "AppConfig":
        local = ProviderSlotConfig.from_dict(raw.get("local_provider"))
        cloud = ProviderSlotConfig.from_dict(raw.get("cloud_provider"))

        legacy = ProviderSlotConfig.from_dict(raw.get("provider"))
        if local is None and cloud is None and legacy is not None:
            if legacy.type == PROVIDER_OLLAMA:
                local = legacy
            else:
                cloud = legacy
            logger.info("config.migrated legacy_provider=%s", legacy.type)
        if local is None:
            local = default_local_provider()

        privacy_raw = raw.get("privacy") or {}
        policy_raw = str(privacy_raw.get("cloud_rag_policy") or CloudRAGPolicy.NO_RAG.value)
        privacy = PrivacyPolicy(
            default_to_local=_coerce_bool(privacy_raw.get("default_to_local"), True, "privacy.default_to_local"),
            cloud_rag_policy=parse_rag_policy(policy_raw),
        )

        logging_raw = raw.get("logging") or {}
        guardrails_raw = raw.get("guardrails") or {}
        server_raw = raw.get("server") or {}
        metrics_raw = raw.get("metrics") or {}
        return cls(
            local_provider=local,
            cloud_provider=cloud,
            privacy=privacy,
            logging=LoggingConfig(
                level=str(logging_raw.get("level", _DEFAULT_LOG_LEVEL)),
                debug_enabled=_coerce_bool(logging_raw.get("debug_enabled"), True, "logging.debug_enabled"),
                file=str(logging_raw.get("file", _DEFAULT_LOG_FILE)),
                max_size_mb=int(logging_raw.get("max_size_mb", _DEFAULT_LOG_MAX_SIZE_MB)),
                max_backups=int(logging_raw.get("max_backups", _DEFAULT_LOG_MAX_BACKUPS)),
            ),
            guardrails=GuardrailsConfig(
                max_file_size_mb=int(guardrails_raw.get("max_file_size_mb", _DEFAULT_MAX_FILE_SIZE_MB)),
                allowed_extensions=list(
                    guardrails_raw.get("allowed_extensions") or _DEFAULT_ALLOWED_EXTENSIONS
                ),
            ),
            server=ServerConfig(
                port=int(server_raw.get("port", _DEFAULT_SERVER_PORT)),
                bind_address=str(server_raw.get("bind_address", _DEFAULT_BIND_ADDRESS)),
            ),
            metrics=MetricsConfig(
                enabled=_coerce_bool(metrics_raw.get("enabled"), True, "metrics.enabled"),
                prometheus_enabled=_coerce_bool(
                    metrics_raw.get("prometheus_enabled"), False, "metrics.prometheus_enabled"
                ),
            ),
            data_dir=str(raw.get("data_dir") or _DEFAULT_DATA_DIR),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "local_provider": self.local_provider.to_dict() if self.local_provider else _empty_slot_dict(),
            "cloud_provider": self.cloud_provider.to_dict() if self.cloud_provider else _empty_slot_dict(),
            "privacy": {
                "default_to_local": self.privacy.default_to_local,
                "cloud_rag_policy": self.privacy.cloud_rag_policy.value,
            },
            "logging": asdict(self.logging),
            "guardrails": asdict(self.guardrails),
            "server": asdict(self.server),
            "metrics": asdict(self.metrics),
            "data_dir": self.data_dir,
        }

    def save(self, path: str | Path) -> None:
        """Write the configuration to ``path`` readable by the owner only."""

        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(self.to_dict(), indent=2), encoding="utf-8")
            os.chmod(path, 0o600)
        except OSError as exc:
            raise ConfigError(f"failed to write config file: {exc}") from exc

    def clone(self) -> "AppConfig":
        """Return an independent deep copy suitable for editing."""

        return deepcopy(self)

    def apply_env_overrides(self) -> None:
        """Apply ``NOODEXX_*`` environment overrides in place."""

        local_overrides = {
            "ollama_endpoint": _env_str("NOODEXX_OLLAMA_ENDPOINT"),
            "ollama_embed_model": _env_str("NOODEXX_OLLAMA_EMBED_MODEL"),
            "ollama_chat_model": _env_str("NOODEXX_OLLAMA_CHAT_MODEL"),
        }
        local_values = {key: value for key, value in local_overrides.items() if value is not None}
        if local_values:
            base = self.local_provider or default_local_provider()
            self.local_provider = replace(base, **local_values)

        cloud_type = _env_str("NOODEXX_CLOUD_PROVIDER")
        cloud_overrides = {
            "openai_key": _env_str("NOODEXX_OPENAI_KEY"),
            "openai_embed_model": _env_str("NOODEXX_OPENAI_EMBED_MODEL"),
            "openai_chat_model": _env_str("NOODEXX_OPENAI_CHAT_MODEL"),
            "anthropic_key": _env_str("NOODEXX_ANTHROPIC_KEY"),
            "anthropic_chat_model": _env_str("NOODEXX_ANTHROPIC_CHAT_MODEL"),
        }
        cloud_values = {key: value for key, value in cloud_overrides.items() if value is not None}
        if cloud_type is not None:
            base = self.cloud_provider or ProviderSlotConfig(type=cloud_type)
            self.cloud_provider = replace(base, type=cloud_type, **cloud_values)
        elif cloud_values and self.cloud_provider is not None:
            self.cloud_provider = replace(self.cloud_provider, **cloud_values)

        level = _env_str("NOODEXX_LOG_LEVEL")
        if level is not None:
            self.logging.level = level.lower()
        debug_enabled = _env_optional_bool("NOODEXX_DEBUG_ENABLED")
        if debug_enabled is not None:
            self.logging.debug_enabled = debug_enabled
        log_file = _env_str("NOODEXX_LOG_FILE")
        if log_file is not None:
            self.logging.file = log_file
        port = _env_optional_int("NOODEXX_SERVER_PORT")
        if port is not None:
            self.server.port = port
        bind_address = _env_str("NOODEXX_SERVER_BIND_ADDRESS")
        if bind_address is not None:
            self.server.bind_address = bind_address
        data_dir = _env_str("NOODEXX_DATA_DIR")
        if data_dir is not None:
            self.data_dir = data_dir

    def validate(self) -> None:
        """Raise :class:`ConfigValidationError` naming the first invalid field."""

        try:
            validate_local(self.local_provider)
        except ConfigValidationError as exc:
            raise ConfigValidationError(f"Local provider validation failed: {exc}") from exc
        try:
            validate_cloud(self.cloud_provider)
        except ConfigValidationError as exc:
            raise ConfigValidationError(f"Cloud provider validation failed: {exc}") from exc
        if self.logging.level not in _VALID_LOG_LEVELS:
            msg = f"invalid log level: {self.logging.level} (must be debug, info, warn, or error)"
            raise ConfigValidationError(msg)
        if not 1 <= self.server.port <= 65535:
            raise ConfigValidationError(f"invalid server port: {self.server.port}")
        if self.guardrails.max_file_size_mb <= 0:
            raise ConfigValidationError("guardrails max_file_size_mb must be positive")

    @property
    def data_path(self) -> Path:
        return Path(self.data_dir).expanduser().resolve()


def parse_rag_policy(value: str) -> CloudRAGPolicy:
    """Parse a RAG policy string, raising a descriptive validation error."""

    try:
        return CloudRAGPolicy(value)
    except ValueError as exc:
        msg = f"invalid RAG policy: {value} (must be 'no_rag' or 'allow_rag')"
        raise ConfigValidationError(msg) from exc


def validate_local(slot: ProviderSlotConfig | None) -> None:
    """Validate the local (privacy-preserving) provider slot.

    An unconfigured slot is valid. A configured slot must be an Ollama
    instance reachable on a loopback address with both models set.
    """

    if slot is None or not slot.type:
        return
    if slot.type != PROVIDER_OLLAMA:
        raise ConfigValidationError("local provider must be Ollama")
    endpoint = slot.ollama_endpoint.strip()
    if not endpoint:
        raise ConfigValidationError("Ollama endpoint is required")
    if not endpoint.startswith(_LOCAL_ENDPOINT_PREFIXES):
        raise ConfigValidationError("local provider must use localhost endpoint")
    if not slot.ollama_embed_model.strip() or not slot.ollama_chat_model.strip():
        raise ConfigValidationError("Ollama models are required")


def validate_cloud(slot: ProviderSlotConfig | None) -> None:
    """Validate the cloud provider slot (OpenAI or Anthropic)."""

    if slot is None or not slot.type:
        return
    if slot.type == PROVIDER_OPENAI:
        if not slot.openai_key.strip():
            raise ConfigValidationError("OpenAI API key is required")
        if not slot.openai_embed_model.strip() or not slot.openai_chat_model.strip():
            raise ConfigValidationError("OpenAI models are required")
        return
    if slot.type == PROVIDER_ANTHROPIC:
        if not slot.anthropic_key.strip():
            raise ConfigValidationError("Anthropic API key is required")
        if not slot.anthropic_chat_model.strip():
            raise ConfigValidationError("Anthropic chat model is required")
        return
    raise ConfigValidationError(f"invalid cloud provider type: {slot.type}")


__all__ = [
    "AppConfig",
    "CloudRAGPolicy",
    "ConfigError",
    "ConfigValidationError",
    "GuardrailsConfig",
    "LoggingConfig",
    "MetricsConfig",
    "PrivacyPolicy",
    "ProviderSlotConfig",
    "ServerConfig",
    "default_local_provider",
    "parse_rag_policy",
    "validate_cloud",
    "validate_local",
]
