"""Unit tests for rate.py"""
import pytest

import rate


@pytest.fixture(autouse=True)
def clean_buckets():
    rate.reset()
    yield
    rate.reset()


class TestTokenBucket:
    def test_cap_then_reject(self):
        assert all(rate.take("1.2.3.4", now=0) for _ in range(rate.CAP))
        assert rate.take("1.2.3.4", now=1) is False

    def test_keys_are_independent(self):
        for _ in range(rate.CAP):
            rate.take("a", now=0)
        assert rate.take("b", now=0)

    def test_refills_after_window(self):
        for _ in range(rate.CAP):
            rate.take("a", now=0)
        assert rate.take("a", now=rate.REFILL_SECONDS) is False
        assert rate.take("a", now=rate.REFILL_SECONDS + 1)
