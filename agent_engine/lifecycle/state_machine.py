"""
Agent lifecycle rules.

Everything here is a pure function of (current status, requested status):
no I/O, no mutation. Callers persist the returned status themselves and
leave the stored status untouched when an InvalidTransitionError is raised.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Optional

from agent_engine.core.errors import InvalidTransitionError
from agent_engine.models.domain.agent import AgentStatus

TRANSITIONS: Dict[AgentStatus, FrozenSet[AgentStatus]] = {
    AgentStatus.CONFIGURED: frozenset({AgentStatus.BRIEFING}),
    AgentStatus.BRIEFING: frozenset({AgentStatus.READY, AgentStatus.ERROR}),
    AgentStatus.READY: frozenset({AgentStatus.EXECUTING, AgentStatus.PAUSED}),
    AgentStatus.EXECUTING: frozenset({AgentStatus.READY, AgentStatus.ERROR, AgentStatus.PAUSED}),
    AgentStatus.PAUSED: frozenset({AgentStatus.READY}),
    AgentStatus.ERROR: frozenset({AgentStatus.READY, AgentStatus.CONFIGURED}),
    AgentStatus.TERMINATED: frozenset(),
}

LAUNCHABLE: FrozenSet[AgentStatus] = frozenset(
    {AgentStatus.CONFIGURED, AgentStatus.PAUSED, AgentStatus.TERMINATED}
)
PAUSABLE: FrozenSet[AgentStatus] = frozenset({AgentStatus.READY, AgentStatus.EXECUTING})


def can_transition(current: AgentStatus, target: AgentStatus) -> bool:
    return target in TRANSITIONS.get(AgentStatus(current), frozenset())


def transition(current: AgentStatus, target: AgentStatus) -> AgentStatus:
    current = AgentStatus(current)
    target = AgentStatus(target)
    if not can_transition(current, target):
        raise InvalidTransitionError(current.value, target.value)
    return target


def launch_target(current: AgentStatus) -> AgentStatus:
    """Launch (and relaunch after termination or a pause) always re-enters via briefing."""
    current = AgentStatus(current)
    if current not in LAUNCHABLE:
        raise InvalidTransitionError(current.value, AgentStatus.BRIEFING.value)
    return AgentStatus.BRIEFING


def pause_target(current: AgentStatus) -> AgentStatus:
    current = AgentStatus(current)
    if current not in PAUSABLE:
        raise InvalidTransitionError(current.value, AgentStatus.PAUSED.value)
    return AgentStatus.PAUSED


def terminate_target(current: AgentStatus) -> Optional[AgentStatus]:
    """Terminate is allowed from anywhere; None means the agent is already terminated."""
    if AgentStatus(current) is AgentStatus.TERMINATED:
        return None
    return AgentStatus.TERMINATED
