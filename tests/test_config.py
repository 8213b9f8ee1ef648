"""Configuration: invocation settings, environment secrets and the TOML file."""

from __future__ import annotations

from pathlib import Path

import pytest

from conduit.config import (
    CredentialSource,
    EnvCredentials,
    FileConfig,
    InvokeConfig,
    ProfileSource,
    default_config_path,
    env_key_name,
)
from conduit.errors import ConfigurationError
from conduit.profiles import BUILTIN_PROFILES, AuthKind

pytestmark = pytest.mark.unit

_BUILTIN = {p.id: p for p in BUILTIN_PROFILES}


def _write(tmp_path: Path, text: str) -> FileConfig:
    path = tmp_path / "conduit.toml"
    path.write_text(text, encoding="utf-8")
    return FileConfig(path)


# =============================================================================
# InvokeConfig
# =============================================================================


def test_invoke_config_defaults() -> None:
    config = InvokeConfig()
    assert config.max_iterations == 8
    assert config.retry.max_attempts == 3
    assert config.timeout_s > 0


@pytest.mark.parametrize(
    "kwargs",
    [
        {"max_iterations": 0},
        {"timeout_s": 0},
        {"connect_timeout_s": -1},
        {"tool_concurrency": 0},
    ],
)
def test_invoke_config_rejects_invalid_values(kwargs: dict[str, float]) -> None:
    with pytest.raises(ConfigurationError) as exc:
        InvokeConfig(**kwargs)
    assert exc.value.hint


# =============================================================================
# Environment
# =============================================================================


def test_env_key_name_slugifies_provider_id() -> None:
    assert env_key_name("azure-openai") == "CONDUIT_AZURE_OPENAI_API_KEY"


def test_conduit_variable_wins_over_conventional_one() -> None:
    env = EnvCredentials(
        {"CONDUIT_OPENAI_API_KEY": "first", "OPENAI_API_KEY": "second"}
    )
    assert env.get_secret("openai", "OPENAI_API_KEY") == "first"


def test_conventional_variable_is_a_fallback_and_blank_is_missing() -> None:
    env = EnvCredentials({"CONDUIT_OPENAI_API_KEY": "  ", "OPENAI_API_KEY": "k"})
    assert env.get_secret("openai", "OPENAI_API_KEY") == "k"
    assert env.get_secret("openai") is None


def test_signing_secret_is_composed_from_aws_variables() -> None:
    env = EnvCredentials(
        {
            "AWS_ACCESS_KEY_ID": "AKID",
            "AWS_SECRET_ACCESS_KEY": "s3cr3t",
            "AWS_SESSION_TOKEN": "tok",
        }
    )
    assert env.get_signing_secret("bedrock") == "AKID:s3cr3t:tok"
    partial = EnvCredentials({"AWS_ACCESS_KEY_ID": "AKID"})
    assert partial.get_signing_secret("bedrock") is None


def test_env_reads_process_environment_by_default(monkeypatch) -> None:
    monkeypatch.setenv("CONDUIT_GROQ_API_KEY", "from-env")
    assert EnvCredentials().get_secret("groq") == "from-env"


# =============================================================================
# FileConfig
# =============================================================================


def test_missing_file_is_empty_configuration(tmp_path) -> None:
    config = FileConfig(tmp_path / "absent.toml")
    assert config.provider_ids() == []
    assert config.get_profile("openai", _BUILTIN["openai"]) is _BUILTIN["openai"]
    assert config.get_secret("openai") is None


def test_default_path_honors_environment_override(monkeypatch, tmp_path) -> None:
    monkeypatch.setenv("CONDUIT_CONFIG", str(tmp_path / "custom.toml"))
    assert default_config_path() == tmp_path / "custom.toml"


def test_file_overrides_builtin_fields(tmp_path) -> None:
    config = _write(
        tmp_path,
        """
        [providers.openai]
        endpoint = "https://proxy.example.com/v1/"
        api_key = "  sk-file  "
        models = { fast = "gpt-4o-mini" }
        """,
    )
    profile = config.get_profile("openai", _BUILTIN["openai"])

    assert profile is not None
    assert profile.endpoint == "https://proxy.example.com/v1"
    assert profile.family == "openai"
    assert profile.map_model("fast") == "gpt-4o-mini"
    assert config.get_secret("openai") == "sk-file"


def test_file_defines_new_provider(tmp_path) -> None:
    config = _write(
        tmp_path,
        """
        [providers.internal]
        family = "openai"
        endpoint = "https://llm.internal/v1"
        auth = "header"
        auth_header = "x-token"
        """,
    )
    profile = config.get_profile("internal")

    assert profile is not None
    assert profile.id == "internal"
    assert profile.auth.kind is AuthKind.HEADER
    assert profile.auth.header == "x-token"
    assert profile.auth.prefix == ""
    assert config.provider_ids() == ["internal"]


def test_new_provider_without_endpoint_is_rejected(tmp_path) -> None:
    config = _write(tmp_path, '[providers.internal]\nfamily = "openai"\n')
    with pytest.raises(ConfigurationError, match="needs family and endpoint"):
        config.get_profile("internal")


def test_bedrock_region_moves_the_endpoint(tmp_path) -> None:
    config = _write(tmp_path, '[providers.bedrock]\nregion = "eu-west-1"\n')
    profile = config.get_profile("bedrock", _BUILTIN["bedrock"])

    assert profile is not None
    assert profile.endpoint == "https://bedrock-runtime.eu-west-1.amazonaws.com"
    assert profile.auth.region == "eu-west-1"


def test_unknown_keys_are_rejected(tmp_path) -> None:
    config = _write(tmp_path, '[providers.openai]\nendpiont = "typo"\n')
    with pytest.raises(ConfigurationError, match="Invalid config file") as exc:
        config.provider_ids()
    assert "endpiont" in (exc.value.hint or "")


def test_invalid_toml_is_a_configuration_error(tmp_path) -> None:
    config = _write(tmp_path, "[providers.openai\n")
    with pytest.raises(ConfigurationError, match="Cannot read config file"):
        config.provider_ids()


def test_reload_picks_up_changes(tmp_path) -> None:
    config = _write(tmp_path, '[providers.openai]\napi_key = "one"\n')
    assert config.get_secret("openai") == "one"

    config.path.write_text('[providers.openai]\napi_key = "two"\n', encoding="utf-8")
    assert config.get_secret("openai") == "one"
    config.reload()
    assert config.get_secret("openai") == "two"


def test_api_key_is_not_exposed_in_repr(tmp_path) -> None:
    config = _write(tmp_path, '[providers.openai]\napi_key = "sk-hidden"\n')
    settings = config._load().providers["openai"]
    assert "sk-hidden" not in repr(settings)


def test_env_and_file_are_interchangeable_credential_sources(tmp_path) -> None:
    def lookup(source: CredentialSource) -> str | None:
        return source.get_secret("openai", "OPENAI_API_KEY")

    env = EnvCredentials({"OPENAI_API_KEY": "from-env"})
    config = _write(tmp_path, '[providers.openai]\napi_key = "from-file"\n')
    assert [lookup(env), lookup(config)] == ["from-env", "from-file"]


def test_file_config_is_a_profile_source(tmp_path) -> None:
    source: ProfileSource = _write(
        tmp_path, '[providers.openai]\nendpoint = "http://proxy"\n'
    )
    profile = source.get_profile("openai", _BUILTIN["openai"])
    assert profile is not None
    assert profile.endpoint == "http://proxy"
    assert source.get_profile("absent") is None
