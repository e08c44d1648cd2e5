import re

import pytest

from Login_module.Utils import security


class TestTokenCodec:
    def test_generated_tokens_are_64_hex_chars(self):
        token = security.generate_token()
        assert re.fullmatch(r"[0-9a-f]{64}", token)

    def test_no_collisions_over_ten_thousand_tokens(self):
        tokens = {security.generate_token() for _ in range(10_000)}
        assert len(tokens) == 10_000

    def test_hash_is_deterministic(self):
        token = security.generate_token()
        assert security.hash_value(token) == security.hash_value(token)
        assert security.hash_value(token) != token
        assert len(security.hash_value(token)) == 64

    def test_distinct_inputs_hash_differently(self):
        assert security.hash_value("a") != security.hash_value("b")


class TestOTPGeneration:
    def test_default_length_is_six_digits(self):
        code = security.generate_otp()
        assert re.fullmatch(r"\d{6}", code)

    def test_codes_are_zero_padded(self):
        codes = [security.generate_otp(2) for _ in range(500)]
        assert all(len(code) == 2 for code in codes)
        assert any(code.startswith("0") for code in codes)

    def test_length_must_be_positive(self):
        with pytest.raises(ValueError):
            security.generate_otp(0)


class TestComparisonAndMasking:
    def test_constant_time_equals(self):
        assert security.constant_time_equals("abc", "abc")
        assert not security.constant_time_equals("abc", "abd")
        assert not security.constant_time_equals("abc", None)
        assert not security.constant_time_equals(None, "abc")

    def test_mask_value_keeps_only_the_tail(self):
        token = security.generate_token()
        masked = security.mask_value(token)
        assert token not in masked
        assert masked.endswith(token[-3:])

    def test_fingerprint_depends_on_user_agent_and_language(self):
        base = security.fingerprint("Firefox/121.0", "en-US")
        assert base == security.fingerprint("Firefox/121.0", "en-US")
        assert base != security.fingerprint("Firefox/122.0", "en-US")
        assert base != security.fingerprint("Firefox/121.0", "de-DE")
