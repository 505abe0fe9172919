"""Unit tests for configuration loading."""

from __future__ import annotations

import logging

import pytest

from pdfscribe_acp.config import ClientConfig, load_config


@pytest.fixture
def config_file(tmp_path):
    def write(text: str):
        path = tmp_path / "acp.yaml"
        path.write_text(text, encoding="utf-8")
        return path

    return write


class TestDefaults:
    """ClientConfig defaults."""

    def test_defaults(self):
        config = ClientConfig()

        assert config.backend == "acp"
        assert config.agent_argv == ["opencode", "acp"]
        assert config.request_timeout == 30.0
        assert config.prompt_timeout == 600.0
        assert config.delegation_tool == "task"

    def test_agent_argv_respects_quotes(self):
        config = ClientConfig(agent_command='"/opt/My Agent/agent" acp --verbose')

        assert config.agent_argv == ["/opt/My Agent/agent", "acp", "--verbose"]

    def test_to_dict_masks_keys(self):
        config = ClientConfig(openai_api_key="sk-secret")

        assert config.to_dict()["openai_api_key"] == "***"
        assert config.to_dict()["anthropic_api_key"] is None
        assert config.to_dict(redact=False)["openai_api_key"] == "sk-secret"


class TestLoadConfig:
    """Precedence: defaults < file < environment < overrides."""

    def test_no_sources(self, tmp_path):
        config = load_config(env={}, working_directory=str(tmp_path))

        assert config.backend == "acp"
        assert config.working_directory == str(tmp_path)

    def test_file_values(self, config_file):
        path = config_file(
            "backend: mock\n"
            "agent_command: [opencode, acp, --port, '0']\n"
            "request_timeout: 5\n"
            "prompt_timeout: null\n"
            "agent_env:\n"
            "  OPENCODE_LOG: debug\n"
        )

        config = load_config(path, env={})

        assert config.backend == "mock"
        assert config.agent_argv == ["opencode", "acp", "--port", "0"]
        assert config.request_timeout == 5.0
        assert config.prompt_timeout is None
        assert config.agent_env == {"OPENCODE_LOG": "debug"}

    def test_environment_beats_file(self, config_file):
        path = config_file("backend: mock\nmodel: from-file\n")

        config = load_config(path, env={"PDFSCRIBE_BACKEND": "openai", "OPENAI_API_KEY": "sk-env"})

        assert config.backend == "openai"
        assert config.model == "from-file"
        assert config.openai_api_key == "sk-env"

    def test_overrides_beat_environment(self, config_file):
        path = config_file("backend: mock\n")

        config = load_config(path, env={"PDFSCRIBE_BACKEND": "openai"}, backend="acp", mode=None)

        assert config.backend == "acp"
        assert config.mode is None

    def test_prompt_timeout_disabled_from_env(self):
        config = load_config(env={"PDFSCRIBE_PROMPT_TIMEOUT": "none", "PDFSCRIBE_REQUEST_TIMEOUT": "2.5"})

        assert config.prompt_timeout is None
        assert config.request_timeout == 2.5

    @pytest.mark.parametrize("value", ["0", "0.0", "none", "None"])
    def test_prompt_timeout_disabled_from_file(self, config_file, value):
        path = config_file(f"prompt_timeout: {value}\n")

        assert load_config(path, env={}).prompt_timeout is None

    def test_prompt_timeout_zero_agrees_across_sources(self, config_file):
        from_file = load_config(config_file("prompt_timeout: 0\n"), env={})
        from_env = load_config(env={"PDFSCRIBE_PROMPT_TIMEOUT": "0"})
        from_override = load_config(env={}, prompt_timeout=0)

        assert from_file.prompt_timeout is None
        assert from_env.prompt_timeout is None
        assert from_override.prompt_timeout is None
        assert ClientConfig(prompt_timeout=0).prompt_timeout is None

    def test_missing_explicit_file(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            load_config(tmp_path / "nope.yaml", env={})

    def test_file_must_be_a_mapping(self, config_file):
        path = config_file("- just\n- a list\n")

        with pytest.raises(ValueError):
            load_config(path, env={})

    def test_bad_number(self, config_file):
        path = config_file("request_timeout: soon\n")

        with pytest.raises(ValueError):
            load_config(path, env={})

    def test_unknown_file_key_is_ignored(self, config_file, caplog):
        path = config_file("backend: mock\ncolour: blue\n")

        with caplog.at_level(logging.WARNING, logger="pdfscribe_acp.config"):
            config = load_config(path, env={})

        assert config.backend == "mock"
        assert any("colour" in record.message for record in caplog.records)

    def test_unknown_override_is_rejected(self):
        with pytest.raises(TypeError):
            load_config(env={}, colour="blue")
