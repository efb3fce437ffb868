"""Per-certificate renewal state machine.

``idle → scheduled → renewing → deploying → idle``, with any active
state able to fall into ``failed``; the next periodic tick returns a
failed certificate to ``idle``/``scheduled``.  A redeployment without
renewal goes straight from ``idle`` (or ``failed``) to ``deploying``.

Usage::

    from certkeeper.core.state import RENEWAL_TRANSITIONS, assert_transition
    from certkeeper.core.types import RenewalState

    assert_transition(RenewalState.IDLE, RenewalState.SCHEDULED)
"""

from __future__ import annotations

import logging

from certkeeper.core.types import RenewalState

log = logging.getLogger(__name__)

RENEWAL_TRANSITIONS: dict[RenewalState, frozenset[RenewalState]] = {
    RenewalState.IDLE: frozenset({RenewalState.SCHEDULED, RenewalState.DEPLOYING}),
    RenewalState.SCHEDULED: frozenset(
        {
            RenewalState.RENEWING,
            RenewalState.IDLE,  # cancelled before the lock was acquired
            RenewalState.FAILED,
        }
    ),
    RenewalState.RENEWING: frozenset({RenewalState.DEPLOYING, RenewalState.FAILED}),
    RenewalState.DEPLOYING: frozenset({RenewalState.IDLE, RenewalState.FAILED}),
    RenewalState.FAILED: frozenset({RenewalState.IDLE, RenewalState.SCHEDULED, RenewalState.DEPLOYING}),
}


def assert_transition(
    current: RenewalState,
    target: RenewalState,
    table: dict | None = None,
) -> None:
    """Raise :class:`ValueError` if *current* → *target* is not allowed.

    Parameters
    ----------
    current:
        The current renewal state of the certificate.
    target:
        The desired new state.
    table:
        Transition table, defaults to :data:`RENEWAL_TRANSITIONS`.

    """
    table = RENEWAL_TRANSITIONS if table is None else table
    allowed = table.get(current)
    if allowed is None:
        msg = f"Unknown state {current!r}"
        raise ValueError(msg)
    if target not in allowed:
        msg = (
            f"Invalid transition {current.value!r} -> {target.value!r}; "
            f"allowed targets: {sorted(s.value for s in allowed) or '(terminal)'}"
        )
        raise ValueError(msg)


def log_transition(
    fingerprint: str,
    from_state: RenewalState,
    to_state: RenewalState,
    *,
    reason: str | None = None,
) -> None:
    """Emit a structured log entry for a renewal state transition."""
    extra = {
        "event": "state_transition",
        "fingerprint": fingerprint,
        "from_state": from_state.value,
        "to_state": to_state.value,
    }
    if reason:
        extra["reason"] = reason
    log.debug(
        "certificate %s: %s -> %s%s",
        fingerprint[:16],
        from_state.value,
        to_state.value,
        f" ({reason})" if reason else "",
        extra=extra,
    )
