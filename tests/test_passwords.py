"""Tests for peppered argon2id hashing and the missing-record path."""

import statistics
import time
from unittest.mock import patch

import pytest

from authkernel.service import passwords as passwords_module
from authkernel.service.passwords import (
    Argon2Params,
    PasswordVerifier,
    hash_password,
    verify_password,
)

FAST = Argon2Params(memory_cost=1024, time_cost=1, parallelism=1)
PEPPER = "unit-test-pepper-0123456789"


@pytest.fixture
def verifier():
    return PasswordVerifier(PEPPER, FAST)


class TestHashPassword:
    def test_produces_argon2id_hash(self):
        digest = hash_password("Secret123!", PEPPER, FAST)
        assert digest.startswith("$argon2id$")

    def test_salted_per_call(self):
        assert hash_password("same", PEPPER, FAST) != hash_password("same", PEPPER, FAST)

    def test_pepper_is_required_to_verify(self):
        digest = hash_password("Secret123!", PEPPER, FAST)
        assert verify_password(digest, "Secret123!", PEPPER)
        assert not verify_password(digest, "Secret123!", "another-pepper-value")


class TestVerifyPassword:
    def test_wrong_password(self):
        digest = hash_password("right", PEPPER, FAST)
        assert verify_password(digest, "wrong", PEPPER) is False

    @pytest.mark.parametrize("bad", ["", "not-a-hash", "$argon2id$v=19$broken", "$2b$12$abc"])
    def test_malformed_hash_returns_false(self, bad):
        assert verify_password(bad, "anything", PEPPER) is False


class TestPasswordVerifier:
    def test_round_trip(self, verifier):
        digest = verifier.hash("CorrectHorse1!")
        assert verifier.verify(digest, "CorrectHorse1!")
        assert not verifier.verify(digest, "wrong")

    def test_missing_record_still_runs_verification(self, verifier):
        calls = []
        original = passwords_module.verify_password

        def spy(password_hash, password, pepper, **kwargs):
            calls.append(password_hash)
            return original(password_hash, password, pepper, **kwargs)

        with patch.object(passwords_module, "verify_password", side_effect=spy):
            assert verifier.verify(None, "guess") is False
            assert verifier.verify("", "guess") is False

        assert len(calls) == 2
        assert all(h == verifier._reference_hash for h in calls)

    def test_reference_hash_uses_configured_parameters(self, verifier):
        assert "m=1024,t=1,p=1" in verifier._reference_hash

    def test_reference_hash_never_matches_common_inputs(self, verifier):
        for guess in ("", "password", PEPPER):
            assert verifier.verify(None, guess) is False

    def test_needs_rehash_detects_outdated_parameters(self, verifier):
        stronger = PasswordVerifier(PEPPER, Argon2Params(memory_cost=2048, time_cost=2))
        old_hash = verifier.hash("pw")
        assert stronger.needs_rehash(old_hash)
        assert not verifier.needs_rehash(old_hash)

    def test_needs_rehash_on_garbage(self, verifier):
        assert verifier.needs_rehash("garbage")

    def test_from_settings(self, settings):
        built = PasswordVerifier.from_settings(settings)
        assert built.params == Argon2Params(1024, 1, 1)
        assert built.pepper == settings.pepper


class TestReferenceTiming:
    # Heavy enough that hashing cost dominates scheduler noise
    PARAMS = Argon2Params(memory_cost=16384, time_cost=2, parallelism=1)
    TRIALS = 12

    def _elapsed(self, fn):
        started = time.perf_counter()
        fn()
        return time.perf_counter() - started

    def test_unknown_account_costs_the_same_as_wrong_password(self):
        verifier = PasswordVerifier(PEPPER, self.PARAMS)
        real_hash = verifier.hash("CorrectHorse1!")
        verifier.verify(real_hash, "warm-up")

        missing, wrong = [], []
        for _ in range(self.TRIALS):
            missing.append(self._elapsed(lambda: verifier.verify(None, "CorrectHorse1!")))
            wrong.append(self._elapsed(lambda: verifier.verify(real_hash, "wrong")))

        ratio = statistics.median(missing) / statistics.median(wrong)
        assert 0.5 <= ratio <= 2.0
