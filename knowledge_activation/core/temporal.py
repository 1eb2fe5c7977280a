"""Sticky / cooldown / delay state machine for a single entry.

    NEUTRAL --eligible, delay met, roll passed--> ACTIVE(sticky)
    ACTIVE(n) --each turn--> ACTIVE(n-1) ... --n hits 0--> COOLDOWN(cooldown)
    COOLDOWN(n) --each turn--> COOLDOWN(n-1) ... --n hits 0--> NEUTRAL

An activation with ``sticky=0`` is active for its own turn only and moves
straight to COOLDOWN (or stays NEUTRAL when ``cooldown=0``). The machine is
pure: it returns the next state and never mutates its input.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Callable

from knowledge_activation.models import ActivationState, AdvancedActivation, Phase


@dataclass(frozen=True)
class TemporalStep:
    state: ActivationState
    active: bool
    exclusion_reason: str | None = None


def _after_hold(timing: AdvancedActivation) -> tuple[Phase, int]:
    if timing.cooldown > 0:
        return Phase.COOLDOWN, timing.cooldown
    return Phase.NEUTRAL, 0


def advance(
    state: ActivationState,
    timing: AdvancedActivation,
    eligible: bool,
    turn_index: int,
    roll: Callable[[], bool] = lambda: True,
) -> TemporalStep:
    """Advance one entry's state by one turn.

    ``roll`` is the probability gate; it is consulted only when the entry
    would otherwise be active this turn.
    """
    consecutive = state.consecutive_matches + 1 if eligible else 0
    base = replace(state, consecutive_matches=consecutive, last_turn_index=turn_index)

    if state.phase is Phase.COOLDOWN:
        remaining = state.remaining - 1
        if remaining > 0:
            nxt = replace(base, phase=Phase.COOLDOWN, remaining=remaining)
        else:
            nxt = replace(base, phase=Phase.NEUTRAL, remaining=0)
        return TemporalStep(nxt, active=False, exclusion_reason="cooldown_active")

    if state.phase is Phase.ACTIVE:
        remaining = state.remaining - 1
        if remaining > 0:
            nxt = replace(base, phase=Phase.ACTIVE, remaining=remaining)
        else:
            phase, count = _after_hold(timing)
            nxt = replace(base, phase=phase, remaining=count)
        if not roll():
            return TemporalStep(nxt, active=False, exclusion_reason="probability_failed")
        return TemporalStep(nxt, active=True)

    # Neutral phase
    if not eligible:
        return TemporalStep(replace(base, primed=False), active=False, exclusion_reason="not_eligible")

    if timing.delay > 0 and not state.primed and consecutive <= timing.delay:
        return TemporalStep(base, active=False, exclusion_reason="delay_not_met")

    if not roll():
        return TemporalStep(base, active=False, exclusion_reason="probability_failed")

    if timing.sticky > 0:
        phase, count = Phase.ACTIVE, timing.sticky
    else:
        phase, count = _after_hold(timing)
    return TemporalStep(replace(base, phase=phase, remaining=count, primed=True), active=True)
