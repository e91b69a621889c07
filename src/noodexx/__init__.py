"""noodexx personal knowledge assistant package."""

from __future__ import annotations

from .config import AppConfig, CloudRAGPolicy, PrivacyPolicy, ProviderSlotConfig
from .llm import ProviderAdapter, create_provider
from .provider_manager import DualProviderManager

__all__ = [
    "AppConfig",
    "CloudRAGPolicy",
    "DualProviderManager",
    "PrivacyPolicy",
    "ProviderAdapter",
    "ProviderSlotConfig",
    "create_app",
    "create_provider",
]


def __getattr__(name: str):  # pragma: no cover - small helper
    if name == "create_app":
        from .app import create_app

        return create_app
    raise AttributeError(f"module 'noodexx' has no attribute {name}")
