"""Tests for the token bucket refill/consume computation."""

import pytest

from ratelimiter.app.exceptions import InvalidConfig
from ratelimiter.app.services.models import Algorithm, BucketState, RateLimitConfig
from ratelimiter.app.services.token_bucket import (
    MESSAGE_ALLOWED,
    MESSAGE_DENIED,
    advance,
    refill,
    reset_time_millis,
)

NOW = 1_700_000_000_000


def make_config(rate=10, burst=None, tier="free"):
    return RateLimitConfig(
        principal_id="user-1",
        resource="api/users",
        tier=tier,
        sustained_rate_per_minute=rate,
        burst_capacity=burst,
    )


class TestRefill:
    """Tests for the refill step."""

    def test_absent_state_is_full_bucket(self):
        state = refill(None, make_config(rate=10, burst=20), NOW)
        assert state.tokens == 20
        assert state.last_refill_time_millis == NOW

    def test_zero_elapsed_adds_nothing(self):
        state = BucketState(tokens=3.5, last_refill_time_millis=NOW)
        assert refill(state, make_config(), NOW).tokens == 3.5

    def test_full_window_refills_exactly(self):
        """An empty bucket is full again after capacity * 60000 / rate ms."""
        config = make_config(rate=7, burst=13)
        empty = BucketState(tokens=0.0, last_refill_time_millis=NOW)
        full_after = 13 * 60_000 // 7 + 1
        assert refill(empty, config, NOW + full_after).tokens == 13

    def test_one_minute_refills_sustained_rate(self):
        empty = BucketState(tokens=0.0, last_refill_time_millis=NOW)
        assert refill(empty, make_config(rate=10), NOW + 60_000).tokens == 10.0

    def test_partial_refill(self):
        config = make_config(rate=60)  # one token per second
        state = BucketState(tokens=2.0, last_refill_time_millis=NOW)
        assert refill(state, config, NOW + 2500).tokens == pytest.approx(4.5)

    def test_refill_is_capped_at_capacity(self):
        config = make_config(rate=10)
        state = BucketState(tokens=9.0, last_refill_time_millis=NOW)
        assert refill(state, config, NOW + 3_600_000).tokens == 10

    def test_clock_regression_adds_nothing_and_keeps_timestamp(self):
        state = BucketState(tokens=4.0, last_refill_time_millis=NOW)
        refilled = refill(state, make_config(), NOW - 30_000)
        assert refilled.tokens == 4.0
        assert refilled.last_refill_time_millis == NOW


class TestAdvance:
    """Tests for admission decisions."""

    def test_first_request_allowed_with_capacity_minus_one(self):
        state, decision = advance(None, make_config(rate=10), NOW, consume=True)
        assert decision.allowed is True
        assert decision.remaining_tokens == 9
        assert decision.message == MESSAGE_ALLOWED
        assert decision.tier == "free"
        assert decision.metadata.algorithm == "TOKEN_BUCKET"
        assert state.tokens == 9

    def test_eleventh_request_in_same_millisecond_denied(self):
        config = make_config(rate=10)
        state = None
        decisions = []
        for _ in range(11):
            state, decision = advance(state, config, NOW, consume=True)
            decisions.append(decision)

        assert [d.allowed for d in decisions] == [True] * 10 + [False]
        assert decisions[-1].remaining_tokens == 0
        assert decisions[-1].message == MESSAGE_DENIED

    def test_waiting_until_reset_time_admits_again(self):
        config = make_config(rate=10)
        state = None
        for _ in range(10):
            state, _ = advance(state, config, NOW, consume=True)
        state, denied = advance(state, config, NOW + 1, consume=True)
        assert denied.allowed is False

        _, decision = advance(state, config, denied.reset_time_millis, consume=True)
        assert decision.allowed is True

    def test_denied_request_does_not_consume(self):
        config = make_config(rate=10)
        state = BucketState(tokens=0.5, last_refill_time_millis=NOW)
        new_state, decision = advance(state, config, NOW, consume=True)
        assert decision.allowed is False
        assert new_state.tokens == 0.5

    def test_status_read_does_not_consume(self):
        config = make_config(rate=10)
        state = BucketState(tokens=6.0, last_refill_time_millis=NOW)
        new_state, decision = advance(state, config, NOW, consume=False)
        assert new_state.tokens == 6.0
        assert decision.remaining_tokens == 6
        assert decision.allowed is True

    def test_remaining_tokens_are_floored(self):
        config = make_config(rate=60)
        state = BucketState(tokens=3.0, last_refill_time_millis=NOW)
        _, decision = advance(state, config, NOW + 1700, consume=True)
        # 3 + 1.7 - 1 = 3.7
        assert decision.remaining_tokens == 3

    def test_invariants_hold_over_a_sequence(self):
        config = make_config(rate=30, burst=5)
        state = None
        now = NOW
        last_refill = 0
        for step in [0, 0, 10, 500, 0, 2000, 7, 60_000, 1, 1, 1]:
            now += step
            state, decision = advance(state, config, now, consume=True)
            assert 0 <= state.tokens <= config.capacity
            assert state.last_refill_time_millis >= last_refill
            assert decision.remaining_tokens >= 0
            last_refill = state.last_refill_time_millis

    def test_window_duration_in_metadata(self):
        _, decision = advance(None, make_config(), NOW, consume=True, window_seconds=30)
        assert decision.to_dict()["metadata"] == {
            "algorithm": "TOKEN_BUCKET",
            "windowDuration": 30,
        }


class TestResetTime:
    """Tests for reset time computation."""

    def test_full_bucket_resets_now(self):
        state = BucketState(tokens=10.0, last_refill_time_millis=NOW)
        assert reset_time_millis(state, make_config(rate=10)) == NOW

    def test_empty_bucket_resets_after_full_window(self):
        state = BucketState(tokens=0.0, last_refill_time_millis=NOW)
        assert reset_time_millis(state, make_config(rate=10)) == NOW + 60_000

    def test_reset_time_rounds_up(self):
        state = BucketState(tokens=9.0, last_refill_time_millis=NOW)
        # one missing token at 7/min is 8571.43 ms
        assert reset_time_millis(state, make_config(rate=7, burst=10)) == NOW + 8572


class TestModels:
    """Tests for config and state value types."""

    def test_capacity_defaults_to_sustained_rate(self):
        assert make_config(rate=12).capacity == 12
        assert make_config(rate=12, burst=30).capacity == 30

    @pytest.mark.parametrize("rate,burst", [(0, None), (-1, None), (10, 0), (10, -5)])
    def test_validate_rejects_non_positive_values(self, rate, burst):
        with pytest.raises(InvalidConfig):
            make_config(rate=rate, burst=burst).validate()

    def test_validate_rejects_unknown_algorithm(self):
        config = RateLimitConfig(
            principal_id="u", resource="r", tier="t",
            sustained_rate_per_minute=10, algorithm="LEAKY_BUCKET",
        )
        with pytest.raises(InvalidConfig):
            config.validate()

    def test_bucket_state_from_redis_hash(self):
        state = BucketState.from_mapping({b"tokens": b"4.25", b"lastRefillTimeMillis": b"123"})
        assert state == BucketState(tokens=4.25, last_refill_time_millis=123)

    def test_bucket_state_from_incomplete_hash_is_none(self):
        assert BucketState.from_mapping({}) is None
        assert BucketState.from_mapping({"tokens": "1.0"}) is None

    def test_bucket_state_mapping_fields(self):
        mapping = BucketState(tokens=2.5, last_refill_time_millis=NOW).to_mapping()
        assert mapping == {"tokens": "2.5", "lastRefillTimeMillis": str(NOW)}

    def test_algorithm_enum(self):
        assert Algorithm("TOKEN_BUCKET") is Algorithm.TOKEN_BUCKET
