"""Scoped engine-setting guards.

A guard temporarily sets one named engine setting and restores the original
value when the guarded block completes normally. If the block fails, the
value is left alone: the failed query aborts the caller's transaction and
its rollback reverts the setting change together with everything else.

This module provides:
  - ScopedSetting: generic enter/exit acquisition for one setting
  - run_guarded(): apply any guard around a single call
  - optimizer_control(), hashagg_control(), min_severity(): guards bound to
    the planner optimizer, hash aggregation and client_min_messages
  - EngineCapabilities: one-shot probe of which of those settings exist
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Protocol, TypeVar, Union

from .errors import ConfigPermissionError, UsageError
from .execution.base import Engine, SettingInfo, Severity

logger = logging.getLogger(__name__)

OPTIMIZER = "optimizer"
OPTIMIZER_CONTROL = "optimizer_control"
HASHAGG = "enable_hashagg"
CLIENT_MIN_MESSAGES = "client_min_messages"

T = TypeVar("T")

# Returns a refusal reason, or None when the change is permitted
PermissionCheck = Callable[[Engine, SettingInfo], Optional[str]]


class SettingGuard(Protocol):
    """A context manager bound to one named engine setting."""

    setting: str

    def __enter__(self) -> "SettingGuard":
        ...

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        ...


@dataclass(frozen=True)
class SettingScope:
    """Record of one active acquisition."""

    setting: str
    original: Optional[str]
    requested: str
    permitted: bool


def _render_value(value: Union[bool, int, float, str, Severity]) -> str:
    if isinstance(value, bool):
        return "on" if value else "off"
    if isinstance(value, Severity):
        return value.value
    return str(value)


def _default_check(engine: Engine, info: SettingInfo) -> Optional[str]:
    if not info.settable:
        return "setting cannot be changed in this session"
    return None


class ScopedSetting:
    """Temporarily set an engine setting for the duration of a block.

    Each instance records the value it found on entry and restores exactly
    that value on exit, so nested scopes on the same setting unwind in
    last-in-first-out order.

    Args:
        engine: Engine exposing get_setting/set_setting.
        setting: Engine setting name.
        value: Value to apply; booleans render as on/off.
        error_on_fail: Raise ConfigPermissionError instead of skipping when
            the setting is unavailable or not settable.
        missing_ok: Treat an unavailable setting as a silent no-op even when
            error_on_fail is set.
        enabled: When False the guard is a no-op and never touches the engine.
        check: Extra permission check run after availability.
    """

    def __init__(
        self,
        engine: Engine,
        setting: str,
        value: Union[bool, int, float, str, Severity],
        *,
        error_on_fail: bool = False,
        missing_ok: bool = False,
        enabled: bool = True,
        check: Optional[PermissionCheck] = None,
    ):
        self.engine = engine
        self.setting = setting
        self.value = _render_value(value)
        self.error_on_fail = error_on_fail
        self.missing_ok = missing_ok
        self.enabled = enabled
        self._check = check or _default_check
        self.scope: Optional[SettingScope] = None

    @property
    def active(self) -> bool:
        return self.scope is not None

    def _refusal(self, info: SettingInfo) -> Optional[str]:
        if not info.available:
            return "setting is not available in this engine"
        return self._check(self.engine, info)

    def enter(self) -> "ScopedSetting":
        """Record the current value and apply the requested one if permitted."""
        if self.scope is not None:
            raise UsageError(f"Guard for {self.setting!r} is already active")

        if not self.enabled:
            self.scope = SettingScope(self.setting, None, self.value, permitted=False)
            return self

        info = self.engine.get_setting(self.setting)
        reason = self._refusal(info)
        if reason is not None:
            if self.error_on_fail and not (self.missing_ok and not info.available):
                raise ConfigPermissionError(self.setting, reason)
            logger.debug(f"Skipping {self.setting}={self.value}: {reason}")
            self.scope = SettingScope(self.setting, info.value, self.value, permitted=False)
            return self

        self.engine.set_setting(self.setting, self.value)
        self.scope = SettingScope(self.setting, info.value, self.value, permitted=True)
        return self

    def exit(self, failed: bool = False) -> None:
        """Restore the recorded value; on failure leave it to the rollback.

        Only transactional settings are reverted that way. DuckDB's ``SET``
        is not transactional, so on a DuckDB engine a failed block leaves
        the guarded value in place until the caller resets it.
        """
        if self.scope is None:
            raise UsageError(f"Guard for {self.setting!r} is not active")
        scope, self.scope = self.scope, None
        if not scope.permitted:
            return
        if failed:
            logger.debug(f"Block failed; {scope.setting} restored by transaction rollback")
            return
        if scope.original is None:
            logger.debug(f"No recorded value for {scope.setting}; leaving {scope.requested}")
            return
        self.engine.set_setting(scope.setting, scope.original)

    def __enter__(self) -> "ScopedSetting":
        return self.enter()

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.exit(failed=exc_type is not None)


def run_guarded(guard: SettingGuard, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
    """Call ``fn`` inside ``guard``; failures from ``fn`` propagate unmodified."""
    with guard:
        return fn(*args, **kwargs)


# =========================================================================
# Capability probe
# =========================================================================

@dataclass(frozen=True)
class EngineCapabilities:
    """Which guarded settings the engine exposes, probed once per controller."""

    has_optimizer: bool = False
    optimizer_settable: bool = False
    has_hashagg: bool = False
    has_min_messages: bool = False

    @classmethod
    def probe(cls, engine: Engine) -> "EngineCapabilities":
        optimizer = engine.get_setting(OPTIMIZER)
        caps = cls(
            has_optimizer=optimizer.available,
            optimizer_settable=optimizer.available and _optimizer_check(engine, optimizer) is None,
            has_hashagg=engine.get_setting(HASHAGG).available,
            has_min_messages=engine.get_setting(CLIENT_MIN_MESSAGES).available,
        )
        logger.debug(f"Engine capabilities: {caps}")
        return caps


# =========================================================================
# Specific guards
# =========================================================================

def _optimizer_check(engine: Engine, info: SettingInfo) -> Optional[str]:
    reason = _default_check(engine, info)
    if reason is not None:
        return reason
    control = engine.get_setting(OPTIMIZER_CONTROL)
    if control.available and (control.value or "").lower() in ("off", "false", "0"):
        return "optimizer_control is off"
    return None


def optimizer_control(
    engine: Engine,
    enabled: bool,
    *,
    error_on_fail: bool = False,
    capabilities: Optional[EngineCapabilities] = None,
) -> ScopedSetting:
    """Force the query-planner optimizer on or off.

    Engines without an ``optimizer`` setting get a transparent no-op. When
    ``optimizer_control`` pins the setting, the guard skips the change or,
    with ``error_on_fail``, raises ConfigPermissionError.
    """
    if capabilities is None:
        active = True
    else:
        # pinned optimizer still goes through enter() so error_on_fail can raise
        active = capabilities.has_optimizer and (
            capabilities.optimizer_settable or error_on_fail
        )
    return ScopedSetting(
        engine,
        OPTIMIZER,
        enabled,
        error_on_fail=error_on_fail,
        missing_ok=True,
        enabled=active,
        check=_optimizer_check,
    )


def hashagg_control(
    engine: Engine,
    enabled: bool,
    *,
    capabilities: Optional[EngineCapabilities] = None,
) -> ScopedSetting:
    """Toggle hash aggregation; a no-op where the setting does not exist."""
    return ScopedSetting(
        engine,
        HASHAGG,
        enabled,
        missing_ok=True,
        enabled=capabilities is None or capabilities.has_hashagg,
    )


def min_severity(
    engine: Engine,
    severity: Severity = Severity.WARNING,
    *,
    capabilities: Optional[EngineCapabilities] = None,
) -> ScopedSetting:
    """Raise the minimum severity of notices surfaced to the client."""
    return ScopedSetting(
        engine,
        CLIENT_MIN_MESSAGES,
        severity,
        missing_ok=True,
        enabled=capabilities is None or capabilities.has_min_messages,
    )
