"""
Declarative lifecycle for a suite's session connection.

    UNOPENED ──open_suite──▶ SUITE_OPEN ──push──▶ TEST_OPEN
                                 ▲                  │
                                 └──────pop─────────┘
    SUITE_OPEN / TEST_OPEN / UNOPENED ──close_suite──▶ SUITE_CLOSED
    any state ──mark_broken──▶ BROKEN

The engine validates every hook call against this table before touching
the connection, so out-of-order hooks fail loudly instead of drifting.
"""

from dataclasses import dataclass
from typing import List

from rls_harness.errors import InvalidTransition


UNOPENED = "UNOPENED"
SUITE_OPEN = "SUITE_OPEN"
TEST_OPEN = "TEST_OPEN"
SUITE_CLOSED = "SUITE_CLOSED"
BROKEN = "BROKEN"


@dataclass(frozen=True)
class Transition:
    from_state: str
    to_state: str


class StateMachine:
    """
    Table-driven lifecycle. Subclasses set ``initial`` and ``transitions``;
    every edge not listed is illegal.
    """

    initial: str = None
    transitions: List[Transition] = []

    @classmethod
    def get_transition(cls, from_state, to_state):
        return next(
            (t for t in cls.transitions
             if (t.from_state, t.to_state) == (from_state, to_state)),
            None,
        )

    @classmethod
    def validate_transition(cls, from_state, to_state):
        """The edge from_state -> to_state. Raises InvalidTransition when there is none."""
        edge = cls.get_transition(from_state, to_state)
        if edge is None:
            raise InvalidTransition(from_state, to_state, cls.allowed_transitions(from_state))
        return edge

    @classmethod
    def allowed_transitions(cls, from_state):
        return [t.to_state for t in cls.transitions if t.from_state == from_state]


class SuiteLifecycle(StateMachine):
    initial = UNOPENED
    transitions = [
        Transition(UNOPENED, SUITE_OPEN),
        Transition(UNOPENED, SUITE_CLOSED),
        Transition(SUITE_OPEN, TEST_OPEN),
        Transition(TEST_OPEN, SUITE_OPEN),
        Transition(SUITE_OPEN, SUITE_CLOSED),
        # teardown with a test still open (runner aborted mid-test)
        Transition(TEST_OPEN, SUITE_CLOSED),
        Transition(UNOPENED, BROKEN),
        Transition(SUITE_OPEN, BROKEN),
        Transition(TEST_OPEN, BROKEN),
        # a broken session can still be closed and released
        Transition(BROKEN, SUITE_CLOSED),
    ]
