"""Tests for the per-configuration state machine."""

import pytest

from alertrelay_engine.ledger.state import (
    ConfigurationState,
    derive_state,
    state_after_entry,
    state_after_exit,
)
from alertrelay_engine.models.signal import Direction

LONG, SHORT = Direction.LONG, Direction.SHORT


@pytest.mark.parametrize(
    ("directions", "expected"),
    [
        ([], ConfigurationState.FLAT),
        ([LONG], ConfigurationState.LONG_OPEN),
        ([SHORT, SHORT], ConfigurationState.SHORT_OPEN),
        ([LONG, SHORT], ConfigurationState.BOTH_OPEN),
    ],
)
def test_derive_state(directions, expected):
    assert derive_state(directions) is expected


def test_entry_transitions():
    assert state_after_entry(ConfigurationState.FLAT, LONG) is ConfigurationState.LONG_OPEN
    assert state_after_entry(ConfigurationState.LONG_OPEN, LONG) is ConfigurationState.LONG_OPEN
    assert state_after_entry(ConfigurationState.LONG_OPEN, SHORT) is ConfigurationState.BOTH_OPEN
    assert state_after_entry(ConfigurationState.SHORT_OPEN, LONG) is ConfigurationState.BOTH_OPEN


def test_exit_transitions():
    assert state_after_exit(ConfigurationState.LONG_OPEN, LONG, 0) is ConfigurationState.FLAT
    assert state_after_exit(ConfigurationState.BOTH_OPEN, LONG, 0) is ConfigurationState.SHORT_OPEN
    assert state_after_exit(ConfigurationState.BOTH_OPEN, SHORT, 0) is ConfigurationState.LONG_OPEN
    assert state_after_exit(ConfigurationState.LONG_OPEN, LONG, 1) is ConfigurationState.LONG_OPEN


def test_exit_from_state_without_that_direction_is_invalid():
    with pytest.raises(ValueError, match="Invalid exit"):
        state_after_exit(ConfigurationState.FLAT, LONG, 0)
    with pytest.raises(ValueError):
        state_after_exit(ConfigurationState.LONG_OPEN, SHORT, 0)
