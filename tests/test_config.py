"""
Tests for agent configuration.
"""

import json

import pytest

from conclave.config import (
    DEFAULT_PERSONALITY,
    AgentConfig,
    BackendConfig,
    ConfigError,
    TransportConfig,
)
from conclave.llm.backends import BackendKind
from conclave.scheduler import FailurePolicy


def valid_config(**kwargs) -> AgentConfig:
    config = AgentConfig(agent_id="agent-1", **kwargs)
    config.validate()
    return config


class TestTransportConfig:
    """Tests for TransportConfig."""

    def test_defaults(self):
        config = TransportConfig()
        assert config.address == "239.255.255.250:8080"

    def test_parse_address(self):
        config = TransportConfig.parse_address("239.1.2.3:9000", interface="eth0")
        assert config.group == "239.1.2.3"
        assert config.port == 9000
        assert config.interface == "eth0"

    def test_parse_address_errors(self):
        with pytest.raises(ConfigError):
            TransportConfig.parse_address("239.1.2.3")
        with pytest.raises(ConfigError):
            TransportConfig.parse_address("239.1.2.3:http")


class TestBackendConfig:
    """Tests for BackendConfig."""

    def test_api_key_from_environment(self, monkeypatch):
        monkeypatch.setenv("ANTHROPIC_API_KEY", "sk-ant-test")
        config = BackendConfig(type="anthropic")
        assert config.resolve_api_key() == "sk-ant-test"

    def test_explicit_key_wins(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "from-env")
        config = BackendConfig(api_key="explicit")
        assert config.resolve_api_key() == "explicit"

    def test_local_needs_no_key(self, monkeypatch):
        monkeypatch.delenv("OPENAI_API_KEY", raising=False)
        assert BackendConfig(type="local").resolve_api_key() is None

    def test_gemini_env_var(self, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "g-key")
        assert BackendConfig(type="google").settings().api_key == "g-key"

    def test_unknown_kind(self):
        with pytest.raises(ConfigError):
            BackendConfig(type="skynet").kind

    def test_api_key_not_serialized(self):
        data = BackendConfig(api_key="secret").to_dict()
        assert "api_key" not in data


class TestValidation:
    """Tests for AgentConfig.validate."""

    def test_defaults_are_valid(self):
        config = valid_config()
        assert config.backend.kind == BackendKind.OPENAI
        assert config.backend.model == "gpt-3.5-turbo"
        assert config.processing_delay_ms == 5000
        assert config.scheduler.failure_policy == FailurePolicy.SKIP

    @pytest.mark.parametrize("agent_id", ["", "   ", "bad id", "agent!", "ünï"])
    def test_bad_agent_ids(self, agent_id):
        with pytest.raises(ConfigError):
            AgentConfig(agent_id=agent_id).validate()

    def test_agent_id_must_fit_on_the_wire(self):
        AgentConfig(agent_id="a" * 255).validate()
        with pytest.raises(ConfigError, match="255 bytes"):
            AgentConfig(agent_id="a" * 300).validate()

    @pytest.mark.parametrize("field,value", [
        ("inbox_size", 0),
        ("inbox_size", -5),
        ("heartbeat_interval", -1.0),
        ("peer_ttl", -1.0),
    ])
    def test_runtime_limits(self, field, value):
        config = AgentConfig(agent_id="a")
        setattr(config, field, value)
        with pytest.raises(ConfigError):
            config.validate()

    @pytest.mark.parametrize("max_rounds", [0, -1])
    def test_max_rounds_must_be_positive(self, max_rounds):
        config = AgentConfig(agent_id="a")
        config.scheduler.max_rounds = max_rounds
        with pytest.raises(ConfigError, match="Max rounds"):
            config.validate()

    def test_memory_content_limit(self):
        config = AgentConfig(agent_id="a")
        config.memory.max_content_chars = 0
        with pytest.raises(ConfigError, match="content limit"):
            config.validate()

    def test_zero_heartbeat_disables_it(self):
        config = AgentConfig(agent_id="a", heartbeat_interval=0.0)
        config.validate()

    def test_non_multicast_group(self):
        config = AgentConfig(agent_id="a", transport=TransportConfig(group="10.0.0.1"))
        with pytest.raises(ConfigError, match="multicast"):
            config.validate()

    def test_bad_port(self):
        config = AgentConfig(agent_id="a", transport=TransportConfig(port=70000))
        with pytest.raises(ConfigError):
            config.validate()

    @pytest.mark.parametrize("field,value", [
        ("timeout", 0),
        ("timeout", 301),
        ("max_retries", 11),
        ("max_retries", -1),
        ("model", " "),
        ("type", "skynet"),
    ])
    def test_backend_limits(self, field, value):
        config = AgentConfig(agent_id="a")
        setattr(config.backend, field, value)
        with pytest.raises(ConfigError):
            config.validate()

    def test_processing_delay_limit(self):
        with pytest.raises(ConfigError):
            AgentConfig(agent_id="a", processing_delay_ms=60001).validate()

    def test_speak_probability(self):
        config = AgentConfig(agent_id="a")
        config.scheduler.speak_probability = 0.0
        with pytest.raises(ConfigError):
            config.validate()

    def test_debate_role_must_be_in_order(self):
        config = AgentConfig(agent_id="a")
        config.scheduler.turn_order = ["affirmative", "negative"]
        config.scheduler.role = "judge"
        with pytest.raises(ConfigError, match="debate order"):
            config.validate()

    def test_unknown_failure_policy(self):
        config = AgentConfig(agent_id="a")
        config.scheduler.on_failure = "panic"
        with pytest.raises(ConfigError):
            config.validate()


class TestPersonality:
    """Tests for personality resolution."""

    def test_inline(self):
        assert AgentConfig(agent_id="a").personality_text() == DEFAULT_PERSONALITY

    def test_from_file(self, tmp_path):
        path = tmp_path / "persona.txt"
        path.write_text("You are a pirate.")
        config = AgentConfig(agent_id="a", personality_file=str(path))
        config.validate()
        assert config.personality_text() == "You are a pirate."

    def test_missing_file(self, tmp_path):
        config = AgentConfig(agent_id="a", personality_file=str(tmp_path / "nope.txt"))
        with pytest.raises(ConfigError, match="does not exist"):
            config.validate()

    def test_directory(self, tmp_path):
        config = AgentConfig(agent_id="a", personality_file=str(tmp_path))
        with pytest.raises(ConfigError, match="not a file"):
            config.personality_text()

    def test_empty_file(self, tmp_path):
        path = tmp_path / "empty.txt"
        path.write_text("  \n")
        config = AgentConfig(agent_id="a", personality_file=str(path))
        with pytest.raises(ConfigError, match="empty"):
            config.personality_text()


class TestPersistence:
    """Tests for saving and loading configuration."""

    def test_save_and_load(self, tmp_path):
        config = AgentConfig(agent_id="judge", greeting=None, voice=True)
        config.backend.type = "local"
        config.backend.api_key = "secret"
        config.scheduler.turn_order = ["affirmative", "negative", "judge"]
        config.scheduler.role = "judge"

        path = tmp_path / "nested" / "judge.json"
        config.save(path)
        loaded = AgentConfig.load(path)

        assert loaded.agent_id == "judge"
        assert loaded.greeting is None
        assert loaded.voice is True
        assert loaded.backend.type == "local"
        assert loaded.backend.api_key is None
        assert loaded.scheduler.turn_order == ["affirmative", "negative", "judge"]
        loaded.validate()

    def test_partial_file_uses_defaults(self, tmp_path):
        path = tmp_path / "a.json"
        path.write_text(json.dumps({"agent_id": "a", "backend": {"model": "gpt-4"}}))
        config = AgentConfig.load(path)
        assert config.backend.model == "gpt-4"
        assert config.backend.type == "openai"
        assert config.transport.port == 8080

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text("{not json")
        with pytest.raises(ConfigError):
            AgentConfig.load(path)

    def test_unknown_section_field(self, tmp_path):
        path = tmp_path / "bad.json"
        path.write_text(json.dumps({"agent_id": "a", "memory": {"size": 3}}))
        with pytest.raises(ConfigError):
            AgentConfig.load(path)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
