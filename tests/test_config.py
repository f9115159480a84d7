"""
Configuration tests.

Copyright (c) 2026 Momentum. All rights reserved.
"""

import pytest
import yaml

from agreement.config import (
    ConfigError,
    ConfigManager,
    ConfigValidationError,
    get_config,
    get_config_manager,
)


class TestDefaults:
    """Tests for default values."""

    def test_defaults(self):
        config = get_config()
        assert config.ledger.account_name.get() == "clone"
        assert config.ledger.query_timeout_ms.get() == 5000
        assert config.proof.key_prefix.get() == "pk_"
        assert config.proof.token_bytes.get() == 16
        assert config.agreement.max_attempts.get() == 5
        assert config.observability.log_format.get() == "json"

    def test_singleton(self):
        assert ConfigManager() is get_config_manager()

    def test_defaults_valid(self):
        assert get_config_manager().validate() == []


class TestOverrides:
    """Tests for runtime, file and environment sources."""

    def test_set_and_get(self):
        manager = get_config_manager()
        manager.set("ledger.account_name", "replicas")
        assert manager.get("ledger.account_name") == "replicas"

    def test_validator_rejects(self):
        with pytest.raises(ConfigValidationError):
            get_config_manager().set("proof.key_prefix", "pk-")

    def test_invalid_path(self):
        with pytest.raises(ConfigError):
            get_config_manager().set("proof.nope", 1)
        with pytest.raises(ConfigError):
            get_config_manager().get("nope")

    def test_env_wins(self, monkeypatch):
        get_config_manager().set("proof.token_bytes", 8)
        monkeypatch.setenv("AGREEMENT_PROOF_TOKEN_BYTES", "12")
        assert get_config().proof.token_bytes.get() == 12

    def test_env_bool(self, monkeypatch):
        monkeypatch.setenv("AGREEMENT_TRACING_ENABLED", "off")
        assert get_config().observability.enable_tracing.get() is False

    def test_load_file(self, tmp_path):
        path = tmp_path / "agreement.yaml"
        path.write_text(yaml.safe_dump({
            "ledger": {"account_name": "shared"},
            "agreement": {"max_attempts": 2},
        }))
        get_config_manager().load_from_file(path)
        assert get_config().ledger.account_name.get() == "shared"
        assert get_config().agreement.max_attempts.get() == 2

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigError, match="not found"):
            get_config_manager().load_from_file(tmp_path / "absent.yaml")

    def test_bad_yaml(self, tmp_path):
        path = tmp_path / "agreement.yaml"
        path.write_text("ledger: [unclosed")
        with pytest.raises(ConfigError, match="Invalid YAML"):
            get_config_manager().load_from_file(path)

    def test_unknown_key(self, tmp_path):
        path = tmp_path / "agreement.yaml"
        path.write_text("ledger:\n  colour: blue\n")
        with pytest.raises(ConfigError, match="ledger.colour"):
            get_config_manager().load_from_file(path)

    def test_load_defaults_skips_bad_file(self, tmp_path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "agreement.yaml").write_text("- not a mapping\n")
        get_config_manager().load_defaults()
        assert get_config().ledger.account_name.get() == "clone"

    def test_reload_notifies_watchers(self, tmp_path):
        path = tmp_path / "agreement.yaml"
        path.write_text("proof:\n  key_prefix: proof_\n")
        manager = get_config_manager()
        manager.load_from_file(path)
        seen = []
        manager.watch(lambda config: seen.append(config.proof.key_prefix.get()))
        path.write_text("proof:\n  key_prefix: pr_\n")
        manager.reload()
        assert seen == ["pr_"]


class TestValidation:
    """Tests for whole-config validation and export."""

    def test_token_length_bound(self):
        manager = get_config_manager()
        manager.set("proof.key_prefix", "p" * 32)
        manager.set("proof.token_bytes", 30)
        assert any("64" in e for e in manager.validate())

    def test_default_prefix_fits_largest_token(self):
        manager = get_config_manager()
        manager.set("proof.token_bytes", 30)
        assert manager.validate() == []
        with pytest.raises(ConfigValidationError):
            manager.set("proof.token_bytes", 31)

    def test_yaml_export(self):
        data = yaml.safe_load(get_config().to_yaml())
        assert data["ledger"]["account_name"] == "clone"
        assert data["proof"] == {"key_prefix": "pk_", "token_bytes": 16}
