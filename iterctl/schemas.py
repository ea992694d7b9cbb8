"""Enums shared by the controller and its configuration."""

from enum import Enum


class ControllerState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    TERMINATED = "terminated"


class Strategy(str, Enum):
    """How the state row is stored and exposed to expressions."""
    SINGLE_ROW = "single_row"
    MULTI_COLUMN = "multi_column"
    DUAL_STATE = "dual_state"


class SeedMode(str, Enum):
    """What the first update does with a seeded iteration 0."""
    SUPPLEMENT = "supplement"  # seed keeps key 0, first update writes key 1
    OVERWRITE = "overwrite"    # first update replaces the seed at key 0
