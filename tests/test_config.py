"""Tests for settings loading and validation."""
from __future__ import annotations

from unittest.mock import MagicMock, patch

import pytest

from cname_failover.config import (
    FailoverConfig, Settings, get_config_value, is_hostname, load_from_vault, qualify,
)
from cname_failover.errors import ConfigError


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ("VAULT_ADDR", "DNS_PROVIDER", "BASE_DOMAIN", "ALIAS_NAME", "PRIMARY_RECORD",
                "BACKUP_RECORD", "PRIMARY_IP", "BACKUP_IP", "CHECK_INTERVAL", "FAILURE_THRESHOLD",
                "RECOVERY_THRESHOLD", "STATE_DIR", "PROBE_METHODS", "CLOUDFLARE_API_TOKEN",
                "CLOUDFLARE_ZONE_ID", "DRYRUN_STATEFILE", "DNS_TTL", "PROBE_PORT"):
        # setenv first so teardown also removes anything load_dotenv adds
        monkeypatch.setenv(key, "")
        monkeypatch.delenv(key)
    monkeypatch.chdir(tmp_path)
    return monkeypatch


def test_from_env_defaults_and_overrides(clean_env):
    clean_env.setenv("BASE_DOMAIN", "example.com")
    clean_env.setenv("PRIMARY_IP", "203.0.113.10")
    clean_env.setenv("BACKUP_IP", "198.51.100.20")
    clean_env.setenv("FAILURE_THRESHOLD", "5")
    clean_env.setenv("PROBE_METHODS", "tcp, http")

    s = Settings.from_env()

    assert s.provider == "cloudflare"
    assert s.failure_threshold == 5
    assert s.recovery_threshold == 3
    assert s.probe_methods == ["tcp", "http"]
    cfg = s.failover_config()
    assert cfg.alias == "www.example.com"
    assert cfg.primary_record == "www-primary.example.com"
    assert cfg.backup_record == "www-backup.example.com"


def test_from_env_reads_dotenv_file(clean_env, tmp_path):
    env_file = tmp_path / "failover.env"
    env_file.write_text("DNS_PROVIDER=dry-run\nALIAS_NAME=app\nCHECK_INTERVAL=7\n")

    s = Settings.from_env(str(env_file))

    assert s.provider == "dry-run"
    assert s.check_interval == 7
    assert s.primary_record == "app-primary"


def test_from_env_reads_dotenv_in_working_directory(clean_env, tmp_path):
    (tmp_path / ".env").write_text("DNS_PROVIDER=dry-run\nCHECK_INTERVAL=7\n")

    s = Settings.from_env()

    assert s.provider == "dry-run"
    assert s.check_interval == 7


def test_environment_beats_dotenv(clean_env, tmp_path):
    (tmp_path / ".env").write_text("CHECK_INTERVAL=7\n")
    clean_env.setenv("CHECK_INTERVAL", "11")

    assert Settings.from_env().check_interval == 11


def test_from_env_rejects_non_integer(clean_env):
    clean_env.setenv("CHECK_INTERVAL", "soon")
    with pytest.raises(ConfigError):
        Settings.from_env()


def test_validate_cloudflare_requires_credentials(settings):
    settings.provider = "cloudflare"
    with pytest.raises(ConfigError) as exc:
        settings.validate()
    assert "CLOUDFLARE_API_TOKEN" in str(exc.value)
    assert "CLOUDFLARE_ZONE_ID" in str(exc.value)


def test_validate_rejects_unknown_probe_method(settings):
    settings.probe_methods = ["icmp", "smtp"]
    with pytest.raises(ConfigError):
        settings.validate()


def test_failover_config_validation(cfg):
    cfg.validate()
    bad = FailoverConfig(alias="www.example.com", primary_record="www.example.com",
                         backup_record="b.example.com", primary_ip="10.0.0.1",
                         backup_ip="::1", failure_threshold=0)
    with pytest.raises(ConfigError) as exc:
        bad.validate()
    message = str(exc.value)
    assert "backup_ip" in message
    assert "failure_threshold" in message
    assert "alias must differ" in message


def test_failover_config_round_trip(cfg):
    assert FailoverConfig.from_dict(cfg.to_dict()) == cfg
    with pytest.raises(ConfigError):
        FailoverConfig.from_dict({"alias": "x"})


def test_qualify():
    assert qualify("www", "example.com") == "www.example.com"
    assert qualify("www.example.com.", "example.com") == "www.example.com"
    assert qualify("host", "") == "host"


def test_is_hostname():
    assert is_hostname("www-backup.example.com")
    assert not is_hostname("10.0.0.1")
    assert not is_hostname("-bad.example.com")
    assert not is_hostname("has space.example.com")


def test_vault_values_take_priority(monkeypatch):
    monkeypatch.setenv("PRIMARY_IP", "10.0.0.1")
    assert get_config_value("PRIMARY_IP", {"primary_ip": "10.9.9.9"}) == "10.9.9.9"
    assert get_config_value("PRIMARY_IP", {}) == "10.0.0.1"
    assert get_config_value("MISSING_KEY", {}, "dflt") == "dflt"


def test_load_from_vault_skipped_without_addr(monkeypatch):
    monkeypatch.delenv("VAULT_ADDR", raising=False)
    assert load_from_vault() == {}


def test_load_from_vault_token_auth(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
    monkeypatch.setenv("VAULT_TOKEN", "s.token")
    monkeypatch.delenv("VAULT_AUTH_METHOD", raising=False)
    client = MagicMock()
    client.is_authenticated.return_value = True
    client.secrets.kv.v2.read_secret_version.return_value = {
        "data": {"data": {"cloudflare_api_token": "from-vault"}}}

    with patch("hvac.Client", return_value=client):
        data = load_from_vault()

    assert data == {"cloudflare_api_token": "from-vault"}
    assert client.token == "s.token"


def test_vault_values_coerced_like_env(monkeypatch):
    monkeypatch.delenv("PROBE_METHODS", raising=False)
    vault = {"check_interval": 15, "probe_methods": ["tcp", "http"], "primary_ip": ""}
    monkeypatch.setenv("PRIMARY_IP", "10.0.0.1")

    assert get_config_value("CHECK_INTERVAL", vault) == "15"
    assert get_config_value("PROBE_METHODS", vault) == "tcp,http"
    # an empty Vault value falls through to the environment
    assert get_config_value("PRIMARY_IP", vault) == "10.0.0.1"


def test_settings_from_vault_secret(clean_env):
    vault = {"dns_provider": "dry-run", "failure_threshold": 4, "probe_methods": ["tcp"]}
    with patch("cname_failover.config.load_from_vault", return_value=vault):
        s = Settings.from_env()
    assert s.provider == "dry-run"
    assert s.failure_threshold == 4
    assert s.probe_methods == ["tcp"]


def test_load_from_vault_approle_missing_secret(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
    monkeypatch.setenv("VAULT_AUTH_METHOD", "approle")
    monkeypatch.setenv("VAULT_ROLE_ID", "role")
    monkeypatch.delenv("VAULT_SECRET_ID", raising=False)
    client = MagicMock()

    with patch("hvac.Client", return_value=client):
        assert load_from_vault() == {}
    client.auth.approle.login.assert_not_called()


def test_load_from_vault_lowercases_keys(monkeypatch):
    monkeypatch.setenv("VAULT_ADDR", "https://vault.example.com")
    monkeypatch.setenv("VAULT_TOKEN", "s.token")
    monkeypatch.delenv("VAULT_AUTH_METHOD", raising=False)
    client = MagicMock()
    client.is_authenticated.return_value = True
    client.secrets.kv.v2.read_secret_version.return_value = {
        "data": {"data": {"CLOUDFLARE_ZONE_ID": "zone"}}}

    with patch("hvac.Client", return_value=client):
        assert load_from_vault() == {"cloudflare_zone_id": "zone"}
