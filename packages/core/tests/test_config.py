"""Tests for configuration loading."""

import pytest

from bbpipe_core.config import ConfigError, PipeConfig, load_config, read_env

BASE_ENV = {
    "ANTHROPIC_API_KEY": "sk-ant-test",
    "BITBUCKET_WORKSPACE": "acme",
    "BITBUCKET_REPO_SLUG": "widgets",
}


def _load(tmp_path, env=None, **kwargs):
    return load_config(config_path=str(tmp_path / "missing.yml"), env=env if env is not None else BASE_ENV, **kwargs)


def test_defaults_applied_when_no_config_file(tmp_path):
    config = _load(tmp_path)
    assert config.mode == "tag"
    assert config.trigger_phrase == "@claude"
    assert config.model == "sonnet"
    assert config.fallback_model == "opus"
    assert config.max_turns == 30
    assert config.timeout_minutes == 10
    assert config.allowed_tools is None
    assert config.comment_update_strategy == "both"
    assert config.enable_streaming_comments is True
    assert config.full_name == "acme/widgets"


def test_config_file_overrides_defaults(tmp_path):
    cfg = tmp_path / ".bbpipe.yml"
    cfg.write_text("model: opus\nmax_turns: 5\ntrigger_phrase: '@bot'\n")
    config = load_config(config_path=str(cfg), env=BASE_ENV)
    assert config.model == "opus"
    assert config.max_turns == 5
    assert config.trigger_phrase == "@bot"


def test_env_overrides_config_file(tmp_path):
    cfg = tmp_path / ".bbpipe.yml"
    cfg.write_text("model: opus\n")
    config = load_config(config_path=str(cfg), env={**BASE_ENV, "MODEL": "haiku"})
    assert config.model == "haiku"


def test_cli_overrides_env(tmp_path):
    config = _load(tmp_path, env={**BASE_ENV, "MODE": "agent"}, cli_overrides={"mode": "review"})
    assert config.mode == "review"


def test_none_cli_overrides_ignored(tmp_path):
    config = _load(tmp_path, env={**BASE_ENV, "MODEL": "haiku"}, cli_overrides={"model": None})
    assert config.model == "haiku"


def test_yaml_tool_list_and_string_both_accepted(tmp_path):
    cfg = tmp_path / ".bbpipe.yml"
    cfg.write_text("allowed_tools:\n  - Read\n  - Grep\nblocked_tools: 'Bash, Computer'\n")
    config = load_config(config_path=str(cfg), env=BASE_ENV)
    assert config.allowed_tools == ("Read", "Grep")
    assert config.blocked_tools == ("Bash", "Computer")


def test_experimental_review_is_an_alias(tmp_path):
    config = _load(tmp_path, env={**BASE_ENV, "MODE": "experimental-review"})
    assert config.mode == "review"


def test_unknown_keys_in_file_are_ignored(tmp_path):
    cfg = tmp_path / ".bbpipe.yml"
    cfg.write_text("something_else: 1\n")
    config = load_config(config_path=str(cfg), env=BASE_ENV)
    assert isinstance(config, PipeConfig)


def test_non_mapping_file_rejected(tmp_path):
    cfg = tmp_path / ".bbpipe.yml"
    cfg.write_text("- just\n- a list\n")
    with pytest.raises(ConfigError):
        load_config(config_path=str(cfg), env=BASE_ENV)


def test_config_is_immutable(tmp_path):
    config = _load(tmp_path)
    with pytest.raises(AttributeError):
        config.model = "opus"


# ---------------------------------------------------------------------------
# Environment parsing
# ---------------------------------------------------------------------------


class TestReadEnv:
    def test_types_are_parsed(self):
        values = read_env(
            {
                "MAX_TURNS": "12",
                "TIMEOUT_MINUTES": "3",
                "BITBUCKET_PR_ID": "42",
                "ENABLE_STREAMING_COMMENTS": "false",
                "AUTO_DETECT_ACTIONABLE": "yes",
                "ALLOWED_TOOLS": "Read, Edit,,Write ",
            }
        )
        assert values["max_turns"] == 12
        assert values["timeout_minutes"] == 3
        assert values["pr_id"] == 42
        assert values["enable_streaming_comments"] is False
        assert values["auto_detect_actionable"] is True
        assert values["allowed_tools"] == ["Read", "Edit", "Write"]

    def test_blank_values_are_ignored(self):
        assert read_env({"MODEL": "   ", "ALLOWED_TOOLS": ""}) == {}

    def test_empty_tool_list_means_not_pinned(self):
        assert read_env({"BLOCKED_TOOLS": " , "})["blocked_tools"] is None

    def test_bad_integer_raises(self):
        with pytest.raises(ConfigError, match="max_turns"):
            read_env({"MAX_TURNS": "lots"})


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestValidation:
    def test_missing_authentication_fails_fast(self, tmp_path):
        env = {k: v for k, v in BASE_ENV.items() if k != "ANTHROPIC_API_KEY"}
        with pytest.raises(ConfigError, match="authentication"):
            _load(tmp_path, env=env)

    def test_missing_repository_coordinates(self, tmp_path):
        with pytest.raises(ConfigError, match="BITBUCKET_WORKSPACE"):
            _load(tmp_path, env={"ANTHROPIC_API_KEY": "k", "BITBUCKET_REPO_SLUG": "widgets"})

    def test_unknown_mode(self, tmp_path):
        with pytest.raises(ConfigError, match="mode"):
            _load(tmp_path, env={**BASE_ENV, "MODE": "chaos"})

    def test_unknown_comment_strategy(self, tmp_path):
        with pytest.raises(ConfigError, match="strategy"):
            _load(tmp_path, env={**BASE_ENV, "COMMENT_UPDATE_STRATEGY": "sometimes"})

    @pytest.mark.parametrize("name", ["MAX_TURNS", "TIMEOUT_MINUTES"])
    def test_non_positive_limits(self, tmp_path, name):
        with pytest.raises(ConfigError, match=name):
            _load(tmp_path, env={**BASE_ENV, name: "0"})

    def test_wrong_type_in_file_becomes_config_error(self, tmp_path):
        cfg = tmp_path / ".bbpipe.yml"
        cfg.write_text("max_turns: many\n")
        with pytest.raises(ConfigError):
            load_config(config_path=str(cfg), env=BASE_ENV)


# ---------------------------------------------------------------------------
# Authentication priority
# ---------------------------------------------------------------------------


class TestAuthMethod:
    def test_api_key_wins_over_cloud_credentials(self):
        config = PipeConfig(
            workspace="a", repo_slug="b", anthropic_api_key="k", aws_access_key_id="AKIA", gcp_project_id="p"
        )
        assert config.auth_method == "anthropic"

    def test_bedrock_before_vertex(self):
        config = PipeConfig(workspace="a", repo_slug="b", aws_access_key_id="AKIA", gcp_project_id="p")
        assert config.auth_method == "bedrock"

    def test_vertex(self):
        assert PipeConfig(workspace="a", repo_slug="b", gcp_project_id="p").auth_method == "vertex"

    def test_none(self):
        assert PipeConfig(workspace="a", repo_slug="b").auth_method is None

    def test_bitbucket_credentials(self):
        assert PipeConfig(workspace="a", repo_slug="b", bitbucket_access_token="t").has_bitbucket_credentials
        assert PipeConfig(
            workspace="a", repo_slug="b", bitbucket_username="u", bitbucket_app_password="p"
        ).has_bitbucket_credentials
        assert not PipeConfig(workspace="a", repo_slug="b", bitbucket_username="u").has_bitbucket_credentials
