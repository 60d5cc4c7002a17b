"""Tests for environment configuration and its validation"""
import pytest

from barber_loyalty import config
from barber_loyalty.config import parse_api_keys, parse_leaderboard_weights, validate_config
from barber_loyalty.exceptions import ConfigurationError


class TestLeaderboardWeights:
    """Test LEADERBOARD_WEIGHTS parsing"""

    def test_empty_string_keeps_defaults(self):
        assert parse_leaderboard_weights("") == {}
        assert parse_leaderboard_weights("   ") == {}

    def test_parses_all_names(self):
        weights = parse_leaderboard_weights(
            "visits=0.5,clients=0.2,retention=0.1,efficiency=0.1,rewards=0.1"
        )

        assert weights == {
            "visits": 0.5,
            "clients": 0.2,
            "retention": 0.1,
            "efficiency": 0.1,
            "rewards": 0.1,
        }

    def test_tolerates_whitespace_case_and_trailing_comma(self):
        assert parse_leaderboard_weights(" Visits = 2 , rewards=1, ") == {"visits": 2.0, "rewards": 1.0}

    @pytest.mark.parametrize("raw", ["speed=1", "visits", "visits=abc", "clients=-0.1"])
    def test_rejects_invalid_entries(self, raw):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_leaderboard_weights(raw)

        assert exc_info.value.config_key == "LEADERBOARD_WEIGHTS"


class TestApiKeys:
    """Test API_KEYS parsing"""

    def test_empty_string_has_no_clients(self):
        assert parse_api_keys("") == {}

    def test_named_and_bare_keys(self):
        clients = parse_api_keys("front-desk:abc123, def456 ,pos:ghi:789")

        assert clients == {
            "abc123": "front-desk",
            "def456": "api-client-2",
            "ghi:789": "pos",
        }

    @pytest.mark.parametrize("raw", [":abc123", "front-desk:", "a:same,b:same"])
    def test_rejects_invalid_entries(self, raw):
        with pytest.raises(ConfigurationError) as exc_info:
            parse_api_keys(raw)

        assert exc_info.value.config_key == "API_KEYS"


class TestValidateConfig:
    """Test startup validation"""

    def test_defaults_are_valid(self, monkeypatch):
        monkeypatch.setattr(config, "LEADERBOARD_WEIGHTS", "")
        monkeypatch.setattr(config, "API_KEYS", "")

        validate_config()

    def test_missing_database_url(self, monkeypatch):
        monkeypatch.setattr(config, "DATABASE_URL", "")

        with pytest.raises(ValueError, match="DATABASE_URL"):
            validate_config()

    def test_non_positive_subject_timeout(self, monkeypatch):
        monkeypatch.setattr(config, "SUBJECT_TIMEOUT_SECONDS", 0)

        with pytest.raises(ValueError, match="SUBJECT_TIMEOUT_SECONDS"):
            validate_config()

    def test_non_positive_leaderboard_limit(self, monkeypatch):
        monkeypatch.setattr(config, "LEADERBOARD_LIMIT", -5)

        with pytest.raises(ValueError, match="LEADERBOARD_LIMIT"):
            validate_config()

    def test_malformed_weights(self, monkeypatch):
        monkeypatch.setattr(config, "LEADERBOARD_WEIGHTS", "visits=lots")

        with pytest.raises(ConfigurationError):
            validate_config()

    def test_duplicate_api_keys(self, monkeypatch):
        monkeypatch.setattr(config, "API_KEYS", "front-desk:abc,pos:abc")

        with pytest.raises(ConfigurationError):
            validate_config()
