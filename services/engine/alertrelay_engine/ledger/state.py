"""Per-configuration position state derived from open trades."""

from collections.abc import Iterable
from enum import Enum

from alertrelay_engine.models.signal import Direction


class ConfigurationState(str, Enum):
    """Which directions currently hold an open trade."""

    FLAT = "FLAT"  # No open trades
    LONG_OPEN = "LONG_OPEN"  # Only a long trade open
    SHORT_OPEN = "SHORT_OPEN"  # Only a short trade open
    BOTH_OPEN = "BOTH_OPEN"  # Long and short open side by side


# Transition on each signal outcome; "replace" keeps the state
ENTRY_TRANSITIONS: dict[tuple[ConfigurationState, Direction], ConfigurationState] = {
    (ConfigurationState.FLAT, Direction.LONG): ConfigurationState.LONG_OPEN,
    (ConfigurationState.FLAT, Direction.SHORT): ConfigurationState.SHORT_OPEN,
    (ConfigurationState.LONG_OPEN, Direction.LONG): ConfigurationState.LONG_OPEN,
    (ConfigurationState.LONG_OPEN, Direction.SHORT): ConfigurationState.BOTH_OPEN,
    (ConfigurationState.SHORT_OPEN, Direction.SHORT): ConfigurationState.SHORT_OPEN,
    (ConfigurationState.SHORT_OPEN, Direction.LONG): ConfigurationState.BOTH_OPEN,
    (ConfigurationState.BOTH_OPEN, Direction.LONG): ConfigurationState.BOTH_OPEN,
    (ConfigurationState.BOTH_OPEN, Direction.SHORT): ConfigurationState.BOTH_OPEN,
}


def derive_state(open_directions: Iterable[Direction]) -> ConfigurationState:
    """
    Derive the configuration state from the directions of its open trades.

    Args:
        open_directions: Direction of every open trade

    Returns:
        Matching ConfigurationState
    """
    directions = set(open_directions)
    if not directions:
        return ConfigurationState.FLAT
    if directions == {Direction.LONG}:
        return ConfigurationState.LONG_OPEN
    if directions == {Direction.SHORT}:
        return ConfigurationState.SHORT_OPEN
    return ConfigurationState.BOTH_OPEN


def state_after_entry(state: ConfigurationState, direction: Direction) -> ConfigurationState:
    """State after an entry in ``direction`` (open or same-direction replace)."""
    return ENTRY_TRANSITIONS[(state, direction)]


def state_after_exit(
    state: ConfigurationState, direction: Direction, remaining_same_direction: int
) -> ConfigurationState:
    """
    State after closing one trade of ``direction``.

    Args:
        state: State before the exit
        direction: Direction of the closed trade
        remaining_same_direction: Open trades of that direction left afterwards

    Returns:
        New state

    Raises:
        ValueError: If the state has no open trade of ``direction``
    """
    holds = {
        ConfigurationState.FLAT: set(),
        ConfigurationState.LONG_OPEN: {Direction.LONG},
        ConfigurationState.SHORT_OPEN: {Direction.SHORT},
        ConfigurationState.BOTH_OPEN: {Direction.LONG, Direction.SHORT},
    }[state]
    if direction not in holds:
        raise ValueError(f"Invalid exit of {direction.value} from {state.value}")
    if remaining_same_direction > 0:
        return state
    return derive_state(holds - {direction})
