"""Tests for TOTP generation, verification and secret handling."""

import base64

import pytest

from consoleauth.service.errors import SecretFormatInvalid
from consoleauth.service.totp import TOTPEngine, is_totp_code

# RFC 6238 appendix B seed for HMAC-SHA1, "12345678901234567890" in Base32
RFC_SECRET = "GEZDGNBVGY3TQOJQGEZDGNBVGY3TQOJQ"


@pytest.fixture
def engine():
    return TOTPEngine(issuer="Admin Console")


class TestGenerate:
    @pytest.mark.parametrize(
        "timestamp,expected",
        [
            (59, "287082"),
            (1111111109, "081804"),
            (1234567890, "005924"),
        ],
    )
    def test_rfc6238_vectors(self, engine, timestamp, expected):
        assert engine.generate(RFC_SECRET, timestamp) == expected

    def test_codes_are_six_digits(self, engine):
        code = engine.generate(engine.generate_secret())
        assert len(code) == 6
        assert code.isdigit()


class TestVerify:
    def test_current_step_accepted(self, engine):
        t = 1_700_000_000
        assert engine.verify(RFC_SECRET, engine.generate(RFC_SECRET, t), timestamp=t)

    def test_adjacent_steps_accepted(self, engine):
        t = 1_700_000_010
        code = engine.generate(RFC_SECRET, t)
        assert engine.verify(RFC_SECRET, code, timestamp=t + 30)
        assert engine.verify(RFC_SECRET, code, timestamp=t - 30)

    def test_three_steps_away_rejected(self, engine):
        t = 1_700_000_010
        code = engine.generate(RFC_SECRET, t)
        assert not engine.verify(RFC_SECRET, code, timestamp=t + 90)
        assert not engine.verify(RFC_SECRET, code, timestamp=t - 90)

    @pytest.mark.parametrize("code", [None, "", "12345", "1234567", "12a456", " 123456", "١٢٣٤٥٦"])
    def test_malformed_codes_rejected(self, engine, code):
        assert not engine.verify(RFC_SECRET, code, timestamp=59)

    def test_missing_secret_rejected(self, engine):
        assert not engine.verify("", "287082", timestamp=59)

    def test_is_totp_code(self):
        assert is_totp_code("000000")
        assert not is_totp_code("abcde-12345")
        assert not is_totp_code(None)


class TestSecrets:
    def test_generated_secret_is_160_bits(self, engine):
        secret = engine.generate_secret()
        assert len(secret) == 32
        assert len(base64.b32decode(secret)) == 20
        assert engine.normalize_secret(secret) == secret

    def test_generated_secrets_differ(self, engine):
        assert engine.generate_secret() != engine.generate_secret()

    def test_normalize_strips_spacing_and_case(self, engine):
        assert engine.normalize_secret("gezd gnbv gy3t qojq") == "GEZDGNBVGY3TQOJQ"

    def test_normalize_strips_padding(self, engine):
        assert engine.normalize_secret("GEZDGNBVGY3TQOJQGE======") == "GEZDGNBVGY3TQOJQGE"

    @pytest.mark.parametrize(
        "bad",
        [
            "",
            "   ",
            "GEZDGNBVGY3TQOJ1",  # '1' is not Base32
            "GEZDGNBVGY3TQOJ!",
            "GEZDGNBV",  # 40 bits
            "GEZDGNBVGY3TQOJ",  # 75 bits
            "GEZDGNBVGY3TQOJQG",  # no byte string encodes to 17 chars
        ],
    )
    def test_invalid_or_weak_secrets_rejected(self, engine, bad):
        with pytest.raises(SecretFormatInvalid):
            engine.normalize_secret(bad)

    def test_custom_secret_generates_usable_codes(self, engine):
        secret = engine.normalize_secret("JBSW Y3DP EHPK 3PXP")
        assert engine.verify(secret, engine.generate(secret))


class TestProvisioning:
    def test_provisioning_uri(self, engine):
        uri = engine.provisioning_uri(RFC_SECRET, "admin@example.com")
        assert uri.startswith("otpauth://totp/")
        assert f"secret={RFC_SECRET}" in uri
        assert "issuer=Admin%20Console" in uri

    def test_qr_code_is_png_data_uri(self, engine):
        uri = engine.provisioning_uri(RFC_SECRET, "admin@example.com")
        data_uri = engine.qr_code_data_uri(uri)
        prefix = "data:image/png;base64,"
        assert data_uri.startswith(prefix)
        png = base64.b64decode(data_uri[len(prefix):])
        assert png.startswith(b"\x89PNG\r\n\x1a\n")
