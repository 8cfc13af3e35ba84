"""Tests for settings validation and security warnings."""

import pytest
from conftest import ISSUER
from pydantic import ValidationError

from backchannel_logout.core.config import OIDCClientSettings, Settings


def client(**overrides) -> dict:
    values = {
        "registration_id": "idp",
        "issuer": ISSUER,
        "client_id": "rp1",
        "jwks_uri": "https://idp.example/jwks",
    }
    values.update(overrides)
    return values


class TestOIDCClientSettings:
    def test_defaults_to_rs256(self):
        assert OIDCClientSettings(**client()).signing_algorithms == ["RS256"]

    def test_static_jwks_is_enough(self):
        settings = OIDCClientSettings(**client(jwks_uri=None, jwks={"keys": []}))

        assert settings.jwks_uri is None

    def test_key_source_required(self):
        with pytest.raises(ValidationError, match="jwks_uri or jwks"):
            OIDCClientSettings(**client(jwks_uri=None))

    @pytest.mark.parametrize("algorithms", [["none"], ["RS256", "None"]])
    def test_none_algorithm_rejected(self, algorithms):
        with pytest.raises(ValidationError):
            OIDCClientSettings(**client(signing_algorithms=algorithms))

    def test_empty_algorithm_list_rejected(self):
        with pytest.raises(ValidationError):
            OIDCClientSettings(**client(signing_algorithms=[]))

    def test_empty_issuer_rejected(self):
        with pytest.raises(ValidationError):
            OIDCClientSettings(**client(issuer=""))


class TestSettings:
    def test_defaults(self):
        settings = Settings(oidc_clients=[])

        assert settings.backchannel_logout_path == "/logout/connect/back-channel"
        assert settings.clock_skew_seconds == 60
        assert settings.replay_detection == "none"

    def test_log_level_is_normalized(self):
        assert Settings(log_level="debug").log_level == "DEBUG"

    def test_unknown_log_level_rejected(self):
        with pytest.raises(ValidationError):
            Settings(log_level="chatty")

    def test_path_must_be_absolute(self):
        with pytest.raises(ValidationError):
            Settings(backchannel_logout_path="logout")

    def test_trailing_slash_is_stripped(self):
        assert Settings(backchannel_logout_path="/logout/").backchannel_logout_path == "/logout"

    def test_negative_clock_skew_rejected(self):
        with pytest.raises(ValidationError):
            Settings(clock_skew_seconds=-1)

    def test_duplicate_issuer_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate issuer"):
            Settings(oidc_clients=[client(), client(registration_id="idp2")])

    def test_duplicate_registration_id_rejected(self):
        with pytest.raises(ValidationError, match="Duplicate registration_id"):
            Settings(oidc_clients=[client(), client(issuer="https://other.example")])

    def test_clients_from_environment(self, monkeypatch):
        monkeypatch.setenv(
            "OIDC_CLIENTS",
            '[{"registration_id": "idp", "issuer": "https://idp.example",'
            ' "client_id": "rp1", "jwks_uri": "https://idp.example/jwks"}]',
        )
        monkeypatch.setenv("REPLAY_DETECTION", "memory")

        settings = Settings()

        assert [c.client_id for c in settings.oidc_clients] == ["rp1"]
        assert settings.replay_detection == "memory"

    @pytest.mark.parametrize(
        "session_store, replay_detection, expected",
        [
            ("database", "none", True),
            ("memory", "database", True),
            ("memory", "memory", False),
        ],
    )
    def test_uses_database(self, session_store, replay_detection, expected):
        settings = Settings(session_store=session_store, replay_detection=replay_detection)

        assert settings.uses_database is expected


class TestSecurityConfiguration:
    def test_clean_configuration(self):
        settings = Settings(oidc_clients=[client()], replay_detection="memory")

        assert settings.check_security_configuration() == []

    def test_warns_without_clients(self):
        settings = Settings(oidc_clients=[], replay_detection="memory")

        warnings = settings.check_security_configuration()

        assert any("No OIDC clients" in w for w in warnings)

    def test_warns_on_plain_http_jwks(self):
        settings = Settings(
            oidc_clients=[client(jwks_uri="http://idp.example/jwks")], replay_detection="memory"
        )

        assert any("not HTTPS" in w for w in settings.check_security_configuration())

    def test_warns_on_symmetric_algorithms(self):
        settings = Settings(
            oidc_clients=[client(signing_algorithms=["RS256", "HS256"])],
            replay_detection="memory",
        )

        assert any("HS256" in w for w in settings.check_security_configuration())

    def test_warns_when_replay_detection_disabled(self):
        settings = Settings(oidc_clients=[client()], replay_detection="none")

        assert any("replay detection" in w for w in settings.check_security_configuration())
