"""
Tests for the fail-fast configuration loader and the adapter registry
built from it.
"""
from pathlib import Path

import pytest
import yaml

from cowork.adapters.codex_cli import CodexCliAdapter
from cowork.adapters.responses import ResponsesAdapter
from cowork.config import (
    ConfigNotFoundError,
    ConfigValidationError,
    OrchestratorConfigLoader,
    RetrySettings,
    load_api_config,
)
from cowork.core.error_classifier import ErrorClassifier
from cowork.services.adapter_registry import (
    AdapterRegistry,
    UnknownProviderError,
    build_registry,
)

VALID_CONFIG = {
    "cowork": {
        "retry": {
            "max_retries": 10,
            "base_delay_seconds": 1,
            "transient_signatures": ["Overloaded"],
        },
        "defaults": {"provider": "openai", "allowed_tool_names": ["Read"]},
        "backends": {
            "openai": {
                "primary": "codex-cli",
                "fallback": "openai-responses",
                "codex_executable": "/opt/bin/codex",
            },
        },
    }
}


def write_yaml(path: Path, data) -> Path:
    path.write_text(yaml.safe_dump(data), encoding="utf-8")
    return path


@pytest.fixture
def config_file(tmp_path: Path) -> Path:
    return write_yaml(tmp_path / "cowork.yaml", VALID_CONFIG)


@pytest.fixture
def loader(config_file: Path, tmp_path: Path) -> OrchestratorConfigLoader:
    return OrchestratorConfigLoader(
        config_path=config_file, secrets_path=tmp_path / "missing-secrets.yaml"
    )


class TestOrchestratorConfigLoader:

    def test_loads_valid_config(self, loader: OrchestratorConfigLoader) -> None:
        config = loader.get_config()

        assert config["defaults"]["provider"] == "openai"
        assert loader.get("backends")["openai"]["primary"] == "codex-cli"

    def test_missing_file(self, tmp_path: Path) -> None:
        loader = OrchestratorConfigLoader(config_path=tmp_path / "nope.yaml")

        with pytest.raises(ConfigNotFoundError):
            loader.load()

    def test_missing_required_fields_listed(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "cowork.yaml", {"cowork": {"retry": {"max_retries": 1}}})
        loader = OrchestratorConfigLoader(config_path=path)

        with pytest.raises(ConfigValidationError) as exc_info:
            loader.load()

        message = str(exc_info.value)
        assert "defaults" in message
        assert "retry.base_delay_seconds" in message

    def test_negative_retries_rejected(self, tmp_path: Path) -> None:
        data = yaml.safe_load(yaml.safe_dump(VALID_CONFIG))
        data["cowork"]["retry"]["max_retries"] = -1
        loader = OrchestratorConfigLoader(config_path=write_yaml(tmp_path / "c.yaml", data))

        with pytest.raises(ConfigValidationError):
            loader.load()

    def test_invalid_yaml(self, tmp_path: Path) -> None:
        path = tmp_path / "cowork.yaml"
        path.write_text("cowork: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigValidationError):
            OrchestratorConfigLoader(config_path=path).load()

    def test_overrides(self, loader: OrchestratorConfigLoader) -> None:
        loader.apply_overrides(defaults={"provider": "claude"}, ignored=None)

        config = loader.get_config()

        assert config["defaults"] == {"provider": "claude"}
        assert "ignored" not in config

    def test_unknown_key(self, loader: OrchestratorConfigLoader) -> None:
        with pytest.raises(KeyError):
            loader.get("nonexistent")

    def test_secrets_file_then_environment(
        self, config_file: Path, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        secrets = write_yaml(tmp_path / "secrets.yaml", {"openai_api_key": "sk-file"})
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-env")
        loader = OrchestratorConfigLoader(config_path=config_file, secrets_path=secrets)

        assert loader.get_secret("openai_api_key") == "sk-file"
        assert loader.get_secret("anthropic_api_key") == "sk-env"
        assert loader.get_secret("other_key") is None


class TestRetrySettings:

    def test_from_config(self, loader: OrchestratorConfigLoader) -> None:
        settings = loader.get_retry_settings()

        assert settings.max_retries == 10
        assert settings.transient_signatures == ("overloaded",)

    def test_backoff_doubles(self) -> None:
        settings = RetrySettings(max_retries=10, base_delay_seconds=1.0)

        assert [settings.backoff_delay(n) for n in range(1, 5)] == [1.0, 2.0, 4.0, 8.0]


class TestBuildRegistry:

    def test_primary_and_fallback(
        self, loader: OrchestratorConfigLoader, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)

        registry = build_registry(loader, ErrorClassifier())

        backends = registry.resolve("openai")
        assert isinstance(backends.primary, CodexCliAdapter)
        assert isinstance(backends.fallback, ResponsesAdapter)
        assert backends.fallback.is_available() is False
        assert registry.providers() == ["openai"]

    def test_unknown_backend_name(self, tmp_path: Path) -> None:
        data = yaml.safe_load(yaml.safe_dump(VALID_CONFIG))
        data["cowork"]["backends"]["openai"]["primary"] = "made-up"
        loader = OrchestratorConfigLoader(config_path=write_yaml(tmp_path / "c.yaml", data))

        with pytest.raises(ConfigValidationError, match="made-up"):
            build_registry(loader, ErrorClassifier())

    def test_missing_primary(self, tmp_path: Path) -> None:
        data = yaml.safe_load(yaml.safe_dump(VALID_CONFIG))
        data["cowork"]["backends"]["openai"] = {"fallback": "openai-responses"}
        loader = OrchestratorConfigLoader(config_path=write_yaml(tmp_path / "c.yaml", data))

        with pytest.raises(ConfigValidationError, match="primary"):
            build_registry(loader, ErrorClassifier())


class TestAdapterRegistry:

    def test_unknown_provider(self) -> None:
        with pytest.raises(UnknownProviderError):
            AdapterRegistry().resolve("nobody")

    def test_shared_adapter_listed_once(self) -> None:
        registry = AdapterRegistry()
        shared = CodexCliAdapter()
        registry.register("a", shared)
        registry.register("b", shared, ResponsesAdapter(api_key="k"))

        assert len(registry.all_adapters()) == 2
        assert registry.adapters_for("missing") == []


class TestApiConfig:

    def test_loads_api_section(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "api.yaml", {
            "api": {"host": "127.0.0.1", "port": 40080, "cors_origins": []},
        })

        assert load_api_config(path)["port"] == 40080

    def test_missing_fields(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "api.yaml", {"api": {"host": "127.0.0.1"}})

        with pytest.raises(ConfigValidationError, match="port, cors_origins"):
            load_api_config(path)

    def test_missing_section(self, tmp_path: Path) -> None:
        path = write_yaml(tmp_path / "api.yaml", {"server": {}})

        with pytest.raises(ConfigValidationError, match="'api'"):
            load_api_config(path)
