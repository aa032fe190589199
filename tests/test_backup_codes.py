"""Tests for the backup code vault."""

import re

import pytest

from consoleauth.service.backup_codes import MASKED_CODE, looks_like_backup_code, normalize_code
from consoleauth.service.errors import ConflictError, InvalidMFACode

CODE_RE = re.compile(r"^[0-9a-f]{5}-[0-9a-f]{5}$")


class TestFormat:
    def test_normalize_code(self):
        assert normalize_code(" ABCDE-12345 ") == "abcde12345"
        assert normalize_code("abcde 12345") == "abcde12345"

    def test_looks_like_backup_code(self):
        assert looks_like_backup_code("abcde-12345")
        assert looks_like_backup_code("ABCDE12345")
        assert not looks_like_backup_code("123456")
        assert not looks_like_backup_code("ghijk-lmnop")
        assert not looks_like_backup_code("")
        assert not looks_like_backup_code(None)


class TestIssueAndConsume:
    async def test_first_batch_is_issued_on_enrollment(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)

        assert len(codes) == 10
        assert len(set(codes)) == 10
        assert all(CODE_RE.match(code) for code in codes)
        assert runtime.vault.remaining(user.id) == 10

    async def test_only_hashes_are_stored(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)

        hashes = runtime.store.get_backup_code_hashes(user.id)
        assert all(h.startswith("$argon2id$") for h in hashes)
        stored = " ".join(hashes)
        assert not any(normalize_code(code) in stored for code in codes)

    async def test_code_is_single_use(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)

        assert runtime.vault.consume(user.id, codes[0]) is True
        assert runtime.vault.consume(user.id, codes[0]) is False
        assert runtime.vault.remaining(user.id) == 9

    async def test_consume_normalizes_input(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)

        assert runtime.vault.consume(user.id, codes[3].upper().replace("-", " "))

    async def test_unknown_code_rejected(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        await enable_mfa(user.id)

        assert runtime.vault.consume(user.id, "00000-00000") is False
        assert runtime.vault.consume(user.id, "not a code") is False
        assert runtime.vault.remaining(user.id) == 10

    async def test_codes_are_bound_to_their_identity(self, runtime, create_admin, enable_mfa):
        alice = create_admin("alice@example.com")
        bob = create_admin("bob@example.com")
        _, alice_codes = await enable_mfa(alice.id)
        await enable_mfa(bob.id)

        assert runtime.vault.consume(bob.id, alice_codes[0]) is False
        assert runtime.vault.consume(alice.id, alice_codes[0]) is True

    def test_issue_requires_enabled_mfa(self, runtime, create_admin):
        user = create_admin()
        with pytest.raises(ConflictError):
            runtime.vault.issue(user.id)


class TestRegenerate:
    async def test_regenerate_with_totp_replaces_all_codes(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        secret, old_codes = await enable_mfa(user.id)
        runtime.vault.consume(user.id, old_codes[0])

        new_codes = runtime.vault.regenerate(user.id, runtime.totp.generate(secret))

        assert len(new_codes) == 10
        assert set(new_codes).isdisjoint(old_codes)
        assert runtime.vault.remaining(user.id) == 10
        assert runtime.vault.consume(user.id, old_codes[1]) is False
        assert runtime.vault.consume(user.id, new_codes[0]) is True

    async def test_backup_code_cannot_authorize_regeneration(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)

        with pytest.raises(InvalidMFACode):
            runtime.vault.regenerate(user.id, codes[0])
        assert runtime.vault.remaining(user.id) == 10

    def test_regenerate_without_mfa(self, runtime, create_admin):
        user = create_admin()
        with pytest.raises(ConflictError):
            runtime.vault.regenerate(user.id, "123456")

    async def test_masked_listing(self, runtime, create_admin, enable_mfa):
        user = create_admin()
        _, codes = await enable_mfa(user.id)
        runtime.vault.consume(user.id, codes[0])

        masked = runtime.vault.masked(user.id)
        assert masked == [MASKED_CODE] * 9
