"""Tests for argon2id password hashing."""

from argon2 import PasswordHasher, Type

from storeauth.service.passwords import CredentialVerifier


class TestCredentialVerifier:
    def test_hash_is_salted_argon2id(self, verifier):
        first = verifier.encode("Correct-Horse-9")
        second = verifier.encode("Correct-Horse-9")

        assert first != second
        assert first.startswith("$argon2id$")
        assert "Correct-Horse-9" not in first
        assert verifier.algorithm == "argon2id"

    def test_verify_accepts_right_and_rejects_wrong(self, verifier):
        stored = verifier.encode("Correct-Horse-9")

        assert verifier.verify("Correct-Horse-9", stored)
        assert not verifier.verify("correct-horse-9", stored)

    def test_unreadable_or_missing_hash_is_a_mismatch(self, verifier):
        assert not verifier.verify("anything", "")
        assert not verifier.verify("anything", "plaintext-not-a-hash")

    def test_weaker_parameters_need_rehash(self, verifier):
        stored = verifier.encode("Correct-Horse-9")
        stronger = CredentialVerifier(
            PasswordHasher(time_cost=2, memory_cost=2048, parallelism=1, type=Type.ID)
        )

        assert not verifier.needs_rehash(stored)
        assert stronger.needs_rehash(stored)

    def test_burn_does_not_raise(self, verifier):
        verifier.burn()
