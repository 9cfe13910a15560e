"""
Tests for configuration loading and per-guild settings.
"""

import pytest

from compbot.core.configurations import (
    DEFAULT_MODEL_CANDIDATES,
    Config,
    VerificationSettings,
)
from tests.fakes import environment, run


class TestConfig:
    """Tests for nested config lookups."""

    def test_nested_get(self):
        cfg = Config({"channels": {"log_name": "audit"}})
        assert cfg.get("channels", "log_name") == "audit"
        assert cfg.get("channels", "missing", default="x") == "x"
        assert cfg.get("nope", "deeper") is None

    def test_load(self, tmp_path):
        """YAML files load into a Config."""
        path = tmp_path / "config.yml"
        path.write_text("token: abc\nguilds:\n  - 123\n", encoding="utf-8")
        cfg = Config.load(str(path))
        assert cfg.get("token") == "abc"
        assert cfg.get("guilds") == [123]


class TestVerificationSettings:
    """Tests for building the policy from config and environment."""

    def test_defaults(self):
        """An empty config and environment give the stock policy."""
        settings = VerificationSettings.from_config(Config(), env={})
        assert settings.min_games == 100
        assert settings.min_win_pct == 80.0
        assert settings.reverify_days == 30
        assert settings.rate_limit_seconds == 3600
        assert settings.admin_user_id == 0
        assert settings.model_candidates == DEFAULT_MODEL_CANDIDATES
        assert settings.debug is False

    def test_config_values(self):
        """Values from config.yml are used when no env var is set."""
        cfg = Config({"arbiter_id": 7, "verification": {"reverify_days": 10, "min_win_pct": 75}})
        settings = VerificationSettings.from_config(cfg, env={})
        assert settings.admin_user_id == 7
        assert settings.min_win_pct == 75.0
        assert settings.reverify_seconds == 10 * 24 * 3600

    def test_env_wins(self):
        """Environment variables override config.yml."""
        cfg = Config({"verification": {"min_games": 100}})
        env = {"MIN_GAMES": "50", "ADMIN_USER_ID": "42", "OPENAI_MODEL": "gpt-4o", "OCR_DEBUG": "true"}
        settings = VerificationSettings.from_config(cfg, env=env)
        assert settings.min_games == 50
        assert settings.admin_user_id == 42
        assert settings.debug is True
        assert settings.model_candidates == ("gpt-4o", "gpt-5-mini", "gpt-4o-mini", "gpt-5")

    def test_blank_env_ignored(self):
        """A blank env var does not clobber the config value."""
        cfg = Config({"arbiter_id": 7})
        assert VerificationSettings.from_config(cfg, env={"ADMIN_USER_ID": " "}).admin_user_id == 7


class TestGuildSettingsService:
    """Tests for persisted per-guild ids."""

    def test_set_get_clear(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                assert await env.guild_settings.get(1, "channel_id") is None
                await env.guild_settings.set(1, "channel_id", 55)
                await env.guild_settings.set(1, "role_id", 66)
                assert await env.guild_settings.get(1, "channel_id") == 55
                assert await env.guild_settings.get(1, "role_id") == 66
                await env.guild_settings.set(1, "channel_id", None)
                assert await env.guild_settings.get(1, "channel_id") is None
                assert await env.guild_settings.get(1, "role_id") == 66

        run(scenario())

    def test_ensure_row_keeps_ids(self, tmp_path):
        """Recording thresholds does not wipe saved ids."""
        async def scenario():
            async with environment(tmp_path) as env:
                await env.guild_settings.set(1, "log_channel_id", 77)
                await env.guild_settings.ensure_row(1, env.settings)
                assert await env.guild_settings.get(1, "log_channel_id") == 77
                row = await env.db.fetchone("SELECT min_games FROM comp_settings WHERE guild_id=1")
                assert row["min_games"] == 100

        run(scenario())

    def test_unknown_key(self, tmp_path):
        async def scenario():
            async with environment(tmp_path) as env:
                with pytest.raises(KeyError):
                    await env.guild_settings.get(1, "min_games")

        run(scenario())
