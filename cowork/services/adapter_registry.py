"""
Adapter registry.

Maps a provider family ("claude", "openai", ...) to its primary backend
adapter and an optional fallback, as configured in the ``backends``
section of cowork.yaml.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from ..config import ConfigValidationError, OrchestratorConfigLoader
from ..core.adapter import BackendAdapter
from ..core.error_classifier import ErrorClassifier
from ..core.exceptions import CoworkError

logger = logging.getLogger(__name__)


class UnknownProviderError(CoworkError):
    """No backends are registered for the requested provider."""
    pass


@dataclass(frozen=True)
class ProviderBackends:
    primary: BackendAdapter
    fallback: Optional[BackendAdapter] = None

    def adapters(self) -> list[BackendAdapter]:
        return [a for a in (self.primary, self.fallback) if a is not None]


class AdapterRegistry:
    """Provider name to (primary, fallback) adapters."""

    def __init__(self) -> None:
        self._providers: dict[str, ProviderBackends] = {}

    def register(
        self,
        provider: str,
        primary: BackendAdapter,
        fallback: Optional[BackendAdapter] = None,
    ) -> None:
        self._providers[provider] = ProviderBackends(primary=primary, fallback=fallback)
        logger.info(
            f"Registered provider {provider}: primary={primary.name}"
            + (f", fallback={fallback.name}" if fallback else "")
        )

    def resolve(self, provider: str) -> ProviderBackends:
        """
        Raises:
            UnknownProviderError: If the provider is not registered.
        """
        try:
            return self._providers[provider]
        except KeyError:
            raise UnknownProviderError(f"Unknown provider: {provider}") from None

    def has_provider(self, provider: str) -> bool:
        return provider in self._providers

    def providers(self) -> list[str]:
        return list(self._providers)

    def adapters_for(self, provider: str) -> list[BackendAdapter]:
        backends = self._providers.get(provider)
        return backends.adapters() if backends else []

    def all_adapters(self) -> list[BackendAdapter]:
        """Every registered adapter, each once."""
        seen: list[BackendAdapter] = []
        for backends in self._providers.values():
            for adapter in backends.adapters():
                if all(adapter is not other for other in seen):
                    seen.append(adapter)
        return seen


# =============================================================================
# Construction from configuration
# =============================================================================

AdapterFactory = Callable[
    [dict[str, Any], OrchestratorConfigLoader, ErrorClassifier], BackendAdapter
]


def _claude_sdk(
    section: dict[str, Any],
    loader: OrchestratorConfigLoader,
    classifier: ErrorClassifier,
) -> BackendAdapter:
    from ..adapters.claude_sdk import ClaudeSdkAdapter

    return ClaudeSdkAdapter(
        model=section.get("model"),
        include_partial_messages=bool(section.get("include_partial_messages", True)),
        classifier=classifier,
    )


def _codex_cli(
    section: dict[str, Any],
    loader: OrchestratorConfigLoader,
    classifier: ErrorClassifier,
) -> BackendAdapter:
    from ..adapters.codex_cli import CodexCliAdapter

    return CodexCliAdapter(
        executable=section.get("codex_executable") or "codex",
        model=section.get("model"),
    )


def _openai_responses(
    section: dict[str, Any],
    loader: OrchestratorConfigLoader,
    classifier: ErrorClassifier,
) -> BackendAdapter:
    from ..adapters.responses import ResponsesAdapter

    return ResponsesAdapter(
        api_key=loader.get_secret("openai_api_key"),
        base_url=section.get("responses_base_url") or "https://api.openai.com/v1",
        model=section.get("responses_model") or "gpt-4.1",
    )


ADAPTER_FACTORIES: dict[str, AdapterFactory] = {
    "claude-sdk": _claude_sdk,
    "codex-cli": _codex_cli,
    "openai-responses": _openai_responses,
}


def build_registry(
    loader: OrchestratorConfigLoader,
    classifier: ErrorClassifier,
) -> AdapterRegistry:
    """
    Build the registry from the ``backends`` configuration section.

    Raises:
        ConfigValidationError: If a backend name is not known.
    """
    registry = AdapterRegistry()
    for provider, section in (loader.get("backends") or {}).items():
        section = section or {}
        if not section.get("primary"):
            raise ConfigValidationError(f"backends.{provider}.primary is required")
        adapters: list[BackendAdapter] = []
        for role in ("primary", "fallback"):
            backend = section.get(role)
            if not backend:
                continue
            factory = ADAPTER_FACTORIES.get(backend)
            if factory is None:
                raise ConfigValidationError(
                    f"Unknown backend '{backend}' for backends.{provider}.{role}. "
                    f"Known backends: {', '.join(sorted(ADAPTER_FACTORIES))}"
                )
            adapters.append(factory(section, loader, classifier))
        registry.register(provider, *adapters)
    return registry
