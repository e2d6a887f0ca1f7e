import pytest
from datetime import timedelta

from oidc_bridge.models.keys import KeySet, RotationState
from oidc_bridge.services.rotation import RotationEngine, observe

from conftest import T0

OVERLAP = timedelta(hours=24)


def test_new_keys_become_active(key_a, key_b):
    result = observe(RotationState(), KeySet([key_a, key_b]), T0, OVERLAP)

    assert result.state.active.kids() == [key_a.kid, key_b.kid]
    assert result.state.retiring == {}
    assert result.changes.added == [key_a.kid, key_b.kid]
    assert result.changes.transitioned is True


def test_rotation_overlap_window(key_a, key_b):
    """A leaves upstream at T0+2h and stays published until exactly T0+26h."""
    state = observe(RotationState(), KeySet([key_a]), T0, OVERLAP).state
    state = observe(state, KeySet([key_a, key_b]), T0 + timedelta(hours=1), OVERLAP).state

    result = observe(state, KeySet([key_b]), T0 + timedelta(hours=2), OVERLAP)
    assert result.changes.retired == [key_a.kid]
    assert result.state.retiring[key_a.kid].retire_at == T0 + timedelta(hours=26)
    assert result.state.published().kids() == [key_b.kid, key_a.kid]

    result = observe(result.state, KeySet([key_b]), T0 + timedelta(hours=25), OVERLAP)
    assert key_a.kid in result.state.published()
    assert result.changes.transitioned is False

    result = observe(result.state, KeySet([key_b]), T0 + timedelta(hours=26), OVERLAP)
    assert result.changes.dropped == [key_a.kid]
    assert result.state.published().kids() == [key_b.kid]


def test_resurrection_cancels_retirement(key_a, key_b):
    state = observe(RotationState(), KeySet([key_a, key_b]), T0, OVERLAP).state
    state = observe(state, KeySet([key_b]), T0 + timedelta(hours=1), OVERLAP).state
    assert key_a.kid in state.retiring

    result = observe(state, KeySet([key_a, key_b]), T0 + timedelta(hours=2), OVERLAP)

    assert result.changes.resurrected == [key_a.kid]
    assert result.state.retiring == {}
    assert set(result.state.active.kids()) == {key_a.kid, key_b.kid}
    # Original first_seen survives the round trip through retiring
    assert result.state.active.get(key_a.kid).first_seen == T0


def test_resurrection_is_idempotent(key_a, key_b):
    state = observe(RotationState(), KeySet([key_a, key_b]), T0, OVERLAP).state
    state = observe(state, KeySet([key_b]), T0 + timedelta(hours=1), OVERLAP).state

    first = observe(state, KeySet([key_a, key_b]), T0 + timedelta(hours=2), OVERLAP)
    second = observe(first.state, KeySet([key_a, key_b]), T0 + timedelta(hours=3), OVERLAP)

    assert second.changes.transitioned is False
    assert second.state.digest() == first.state.digest()


def test_resurrection_wins_over_expiry_on_the_same_tick(key_a, key_b):
    state = observe(RotationState(), KeySet([key_a, key_b]), T0, OVERLAP).state
    state = observe(state, KeySet([key_b]), T0, OVERLAP).state

    result = observe(state, KeySet([key_a, key_b]), T0 + OVERLAP, OVERLAP)

    assert key_a.kid in result.state.active
    assert result.changes.dropped == []
    assert result.changes.resurrected == [key_a.kid]


def test_zero_overlap_drops_on_the_same_tick(key_a, key_b):
    zero = timedelta(0)
    state = observe(RotationState(), KeySet([key_a, key_b]), T0, zero).state

    result = observe(state, KeySet([key_b]), T0 + timedelta(minutes=1), zero)

    assert result.changes.retired == [key_a.kid]
    assert result.changes.dropped == [key_a.kid]
    assert result.state.published().kids() == [key_b.kid]


def test_negative_overlap_is_rejected(key_a):
    with pytest.raises(ValueError, match="must not be negative"):
        RotationEngine().observe(RotationState(), KeySet([key_a]), T0, timedelta(seconds=-1))


def test_unchanged_fetch_is_not_a_transition(key_a):
    state = observe(RotationState(), KeySet([key_a]), T0, OVERLAP).state
    result = observe(state, KeySet([key_a]), T0 + timedelta(hours=5), OVERLAP)

    assert result.changes.transitioned is False
    assert result.state.digest() == state.digest()


def test_published_with_now_hides_expired_retiring_keys(key_a, key_b):
    state = observe(RotationState(), KeySet([key_a, key_b]), T0, OVERLAP).state
    state = observe(state, KeySet([key_b]), T0, OVERLAP).state

    assert key_a.kid in state.published(now=T0 + timedelta(hours=23))
    assert key_a.kid not in state.published(now=T0 + OVERLAP)
