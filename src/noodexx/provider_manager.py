"""Local/cloud provider routing driven by the privacy toggle."""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from .config import PROVIDER_ANTHROPIC, PROVIDER_OPENAI, AppConfig, ProviderSlotConfig
from .llm import ProviderAdapter, create_provider
from .observability import MetricsRecorder

ProviderFactory = Callable[[ProviderSlotConfig], ProviderAdapter]

LOCAL_PROVIDER_REQUIRED = "A local provider is required. Please refer to documentation on configuration."
NO_PROVIDER_AFTER_RELOAD = "at least one provider (local or cloud) must be configured after reload"


class ProviderManagerError(RuntimeError):
    """Base class for provider routing failures."""


class ProviderInitializationError(ProviderManagerError):
    """Raised when the manager cannot be constructed with a usable local provider."""


class ProviderReloadError(ProviderManagerError):
    """Raised when a reload would leave the application without any provider."""


class ProviderNotConfiguredError(ProviderManagerError):
    """Raised when the slot selected by the privacy toggle has no adapter."""


@dataclass(frozen=True, slots=True)
class ProviderSelection:
    """Adapter, mode flag and display name read under one lock acquisition."""

    provider: ProviderAdapter
    is_local: bool
    name: str


class DualProviderManager:
    """Hold a local and a cloud adapter and route requests to one of them.

    The local slot must be usable at construction; the cloud slot is best
    effort and a broken cloud configuration only produces a warning. All
    fields are guarded by a single lock and ``reload`` builds both adapters
    before publishing anything, so readers never observe a half-applied
    configuration and a rejected reload leaves the live state untouched.
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        logger: logging.Logger | None = None,
        provider_factory: ProviderFactory | None = None,
        metrics: MetricsRecorder | None = None,
    ) -> None:
        self._logger = logger or logging.getLogger(__name__)
        self._factory: ProviderFactory = provider_factory or create_provider
        self._metrics = metrics
        self._lock = threading.Lock()

        local: ProviderAdapter | None = None
        cloud: ProviderAdapter | None = None

        if config.local_provider is not None:
            try:
                local = self._factory(config.local_provider)
            except Exception as exc:
                self._record_failure("local", config.local_provider.type)
                raise ProviderInitializationError(f"failed to initialize local provider: {exc}") from exc
            self._logger.info("provider.local.initialized type=%s", config.local_provider.type)

        if config.cloud_provider is not None:
            try:
                cloud = self._factory(config.cloud_provider)
            except Exception as exc:
                self._record_failure("cloud", config.cloud_provider.type)
                self._logger.warning(
                    "Cloud provider initialization failed: %s. Application will run with local provider only.",
                    exc,
                )
            else:
                self._logger.info("provider.cloud.initialized type=%s", config.cloud_provider.type)

        if local is None:
            raise ProviderInitializationError(LOCAL_PROVIDER_REQUIRED)

        self._local = local
        self._cloud = cloud
        self._config = config.clone()
        self._active_is_local = config.privacy.default_to_local

    # Selection ---------------------------------------------------------

    def get_active_provider(self) -> ProviderAdapter:
        """Return the adapter selected by the privacy toggle."""

        return self.select().provider

    def select(self) -> ProviderSelection:
        """Return the active adapter together with the mode and name it was chosen under.

        Callers that gate document sharing on the mode must use this rather
        than separate ``get_active_provider``/``is_local_mode`` calls, which a
        concurrent reload can interleave.
        """

        with self._lock:
            active_is_local = self._active_is_local
            adapter = self._local if active_is_local else self._cloud
            name = self._name_locked()
        if adapter is None:
            slot = "local" if active_is_local else "cloud"
            raise ProviderNotConfiguredError(f"{slot} provider not configured")
        self._logger.debug("provider.active local=%s name=%s", active_is_local, adapter.name)
        return ProviderSelection(provider=adapter, is_local=active_is_local, name=name)

    def get_local_provider(self) -> ProviderAdapter | None:
        with self._lock:
            return self._local

    def get_cloud_provider(self) -> ProviderAdapter | None:
        with self._lock:
            return self._cloud

    def is_local_mode(self) -> bool:
        with self._lock:
            return self._active_is_local

    @property
    def config(self) -> AppConfig:
        """Snapshot of the configuration applied by the last successful build."""

        with self._lock:
            return self._config.clone()

    def get_provider_name(self) -> str:
        """Human-readable label of the active provider for status displays."""

        with self._lock:
            return self._name_locked()

    def _name_locked(self) -> str:
        local_slot = self._config.local_provider
        cloud_slot = self._config.cloud_provider

        if self._active_is_local:
            if self._local is None or local_slot is None:
                return "Local AI (Not Configured)"
            return f"Local AI ({local_slot.type})"

        if self._cloud is None or cloud_slot is None:
            return "Cloud AI (Not Configured)"
        if cloud_slot.type == PROVIDER_OPENAI:
            return f"Cloud AI ({cloud_slot.openai_chat_model or 'OpenAI'})"
        if cloud_slot.type == PROVIDER_ANTHROPIC:
            return f"Cloud AI ({cloud_slot.anthropic_chat_model or 'Anthropic'})"
        return f"Cloud AI ({cloud_slot.type})"

    # Reconfiguration ---------------------------------------------------

    def reload(self, config: AppConfig) -> None:
        """Rebuild both slots from ``config`` and publish them together.

        A slot whose adapter cannot be built is left empty and logged. If
        neither slot ends up usable a :class:`ProviderReloadError` is raised
        and the previously published state stays in effect.
        """

        self._logger.info(
            "provider.reload.start default_to_local=%s local=%s cloud=%s",
            config.privacy.default_to_local,
            config.local_provider.type if config.local_provider else "-",
            config.cloud_provider.type if config.cloud_provider else "-",
        )

        local: ProviderAdapter | None = None
        if config.local_provider is not None:
            try:
                local = self._factory(config.local_provider)
            except Exception as exc:
                self._record_failure("local", config.local_provider.type)
                self._logger.error("Failed to reinitialize local provider: %s", exc)
            else:
                self._logger.info("provider.local.reinitialized type=%s", config.local_provider.type)
        else:
            self._logger.info("provider.local.removed")

        cloud: ProviderAdapter | None = None
        if config.cloud_provider is not None:
            try:
                cloud = self._factory(config.cloud_provider)
            except Exception as exc:
                self._record_failure("cloud", config.cloud_provider.type)
                if local is not None:
                    self._logger.warning(
                        "Cloud provider initialization failed: %s. Application will run with local provider only.",
                        exc,
                    )
                else:
                    self._logger.warning("Cloud provider initialization failed: %s", exc)
            else:
                self._logger.info("provider.cloud.reinitialized type=%s", config.cloud_provider.type)
        else:
            self._logger.info("provider.cloud.removed")

        if local is None and cloud is None:
            if self._metrics:
                self._metrics.increment("provider.reload_rejected")
            self._logger.error("provider.reload.rejected reason=no_usable_provider")
            raise ProviderReloadError(NO_PROVIDER_AFTER_RELOAD)

        snapshot = config.clone()
        with self._lock:
            self._local = local
            self._cloud = cloud
            self._config = snapshot
            self._active_is_local = snapshot.privacy.default_to_local

        if self._metrics:
            self._metrics.increment(
                "provider.reloads",
                local=local is not None,
                cloud=cloud is not None,
            )
        self._logger.info(
            "provider.reload.completed local=%s cloud=%s active=%s",
            local is not None,
            cloud is not None,
            "local" if snapshot.privacy.default_to_local else "cloud",
        )

    def _record_failure(self, slot: str, provider_type: str) -> None:
        if self._metrics:
            self._metrics.increment("provider.init_failures", slot=slot, type=provider_type)


__all__ = [
    "DualProviderManager",
    "LOCAL_PROVIDER_REQUIRED",
    "NO_PROVIDER_AFTER_RELOAD",
    "ProviderFactory",
    "ProviderInitializationError",
    "ProviderManagerError",
    "ProviderNotConfiguredError",
    "ProviderReloadError",
    "ProviderSelection",
]
