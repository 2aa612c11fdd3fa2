"""Order workflow state machine.

Two fixed pipelines exist and each carries its own literal transition table:

``FP_3_LAYER`` (floor plans)::

    RECEIVED -> QUEUED_DRAW -> IN_DRAW -> SUBMITTED_DRAW -> QUEUED_CHECK
    -> IN_CHECK -> {REJECTED_BY_CHECK | SUBMITTED_CHECK} -> QUEUED_QA
    -> IN_QA -> {REJECTED_BY_QA | APPROVED_QA} -> DELIVERED

``PH_2_LAYER`` (photo enhancement)::

    RECEIVED -> QUEUED_DESIGN -> IN_DESIGN -> SUBMITTED_DESIGN -> QUEUED_QA
    -> IN_QA -> {REJECTED_BY_QA | APPROVED_QA} -> DELIVERED

``ON_HOLD`` and ``CANCELLED`` are reachable from every non-terminal state.

A table maps ``(state, event)`` to the *path* of states the order walks
through.  Everything but the last state of a path is pass-through
(``SUBMITTED_*``, ``REJECTED_BY_*``, ``APPROVED_QA``): the order never rests
there, but each hop is recorded in the activity log.

This module is pure: :func:`plan` validates an event and returns a
:class:`Step`; applying it to a stored order is done in
:mod:`benchmark.transitions`.
"""

from dataclasses import dataclass, field

from .errors import InvalidTransition, RoleNotPermitted, ValidationError

FP_3_LAYER = "FP_3_LAYER"
PH_2_LAYER = "PH_2_LAYER"

RECEIVED = "RECEIVED"
ON_HOLD = "ON_HOLD"
CANCELLED = "CANCELLED"
DELIVERED = "DELIVERED"
TERMINAL_STATES = frozenset({DELIVERED, CANCELLED})

# events
RECEIVE = "receive"
START = "start"
SUBMIT = "submit"
REJECT = "reject"
RELEASE = "release"
REASSIGN = "reassign"
HOLD = "hold"
RESUME = "resume"
CANCEL = "cancel"

ROLES = (
    "ceo", "director", "operations_manager", "qa", "checker", "drawer",
    "designer", "admin", "accounts_manager",
)
MANAGEMENT_ROLES = frozenset({"ceo", "director", "operations_manager", "admin"})
STAGE_ROLES = {"draw": "drawer", "check": "checker", "qa": "qa", "design": "designer"}
ROLE_STAGES = {role: stage for stage, role in STAGE_ROLES.items()}

PRIORITIES = ("low", "normal", "high", "urgent")
PRIORITY_RANK = {p: i for i, p in enumerate(PRIORITIES)}

REJECTION_CODES = ("quality", "incomplete", "wrong_specs", "rework", "formatting", "missing_info")
FLAG_TYPES = ("quality", "missing_info", "wrong_specs", "unclear_instructions", "file_issue", "other")
FLAG_SEVERITIES = ("low", "medium", "high")

# Order counter bumped when a stage is re-entered; design shares the draw counter.
ATTEMPT_FIELDS = {"draw": "attempt_draw", "check": "attempt_check",
                  "qa": "attempt_qa", "design": "attempt_draw"}

MANAGEMENT_EVENTS = frozenset({RECEIVE, REASSIGN, HOLD, RESUME, CANCEL})
WORKER_EVENTS = frozenset({START, SUBMIT, REJECT, RELEASE})


def queued(stage: str) -> str:
    return f"QUEUED_{stage.upper()}"


def in_progress(stage: str) -> str:
    return f"IN_{stage.upper()}"


def stage_of(state: str) -> str | None:
    """Stage a QUEUED_/IN_/SUBMITTED_/REJECTED_BY_ state belongs to."""
    for prefix in ("QUEUED_", "IN_", "SUBMITTED_", "REJECTED_BY_"):
        if state.startswith(prefix):
            return state[len(prefix):].lower()
    return None


def is_in_progress(state: str) -> bool:
    return state.startswith("IN_")


def is_queued(state: str) -> bool:
    return state.startswith("QUEUED_")


@dataclass(frozen=True)
class Topology:
    name: str
    stages: tuple
    transitions: dict
    # stage being rejected -> allowed rework targets, default first
    reject_routes: dict
    states: frozenset = field(init=False)

    def __post_init__(self):
        states = {RECEIVED, ON_HOLD, CANCELLED}
        for (state, _), path in self.transitions.items():
            states.add(state)
            states.update(path)
        object.__setattr__(self, "states", frozenset(states))

    @property
    def first_stage(self) -> str:
        return self.stages[0]

    @property
    def last_stage(self) -> str:
        return self.stages[-1]

    def has_stage(self, stage: str | None) -> bool:
        return stage in self.stages


FP = Topology(
    name=FP_3_LAYER,
    stages=("draw", "check", "qa"),
    transitions={
        ("RECEIVED", RECEIVE): ("QUEUED_DRAW",),
        ("QUEUED_DRAW", START): ("IN_DRAW",),
        ("IN_DRAW", SUBMIT): ("SUBMITTED_DRAW", "QUEUED_CHECK"),
        ("IN_DRAW", RELEASE): ("QUEUED_DRAW",),
        ("QUEUED_CHECK", START): ("IN_CHECK",),
        ("IN_CHECK", SUBMIT): ("SUBMITTED_CHECK", "QUEUED_QA"),
        ("IN_CHECK", REJECT): ("REJECTED_BY_CHECK", "QUEUED_DRAW"),
        ("IN_CHECK", RELEASE): ("QUEUED_CHECK",),
        ("QUEUED_QA", START): ("IN_QA",),
        ("IN_QA", SUBMIT): ("APPROVED_QA", "DELIVERED"),
        ("IN_QA", REJECT): ("REJECTED_BY_QA", "QUEUED_CHECK"),
        ("IN_QA", RELEASE): ("QUEUED_QA",),
    },
    reject_routes={"check": ("draw",), "qa": ("check", "draw")},
)

PH = Topology(
    name=PH_2_LAYER,
    stages=("design", "qa"),
    transitions={
        ("RECEIVED", RECEIVE): ("QUEUED_DESIGN",),
        ("QUEUED_DESIGN", START): ("IN_DESIGN",),
        ("IN_DESIGN", SUBMIT): ("SUBMITTED_DESIGN", "QUEUED_QA"),
        ("IN_DESIGN", RELEASE): ("QUEUED_DESIGN",),
        ("QUEUED_QA", START): ("IN_QA",),
        ("IN_QA", SUBMIT): ("APPROVED_QA", "DELIVERED"),
        ("IN_QA", REJECT): ("REJECTED_BY_QA", "QUEUED_DESIGN"),
        ("IN_QA", RELEASE): ("QUEUED_QA",),
    },
    reject_routes={"qa": ("design",)},
)

TOPOLOGIES = {FP.name: FP, PH.name: PH}
WORKFLOW_TYPES = tuple(TOPOLOGIES)
IN_PROGRESS_STATES = frozenset(
    s for t in TOPOLOGIES.values() for s in t.states if is_in_progress(s))
QUEUED_STATES = frozenset(
    s for t in TOPOLOGIES.values() for s in t.states if is_queued(s))


def topology_for(workflow_type: str) -> Topology:
    try:
        return TOPOLOGIES[workflow_type]
    except KeyError:
        raise ValidationError(
            f"Unknown workflow type {workflow_type!r}",
            {"workflow_type": f"must be one of {', '.join(WORKFLOW_TYPES)}"},
        ) from None


@dataclass(frozen=True)
class Step:
    """Validated plan for one event: the hops to walk and what they imply."""

    event: str
    from_state: str
    path: tuple
    stage: str | None = None
    rework_stage: str | None = None

    @property
    def to_state(self) -> str:
        return self.path[-1]


def validate_rejection(reason, rejection_code, min_length: int = 10) -> dict:
    """Return field errors for a rejection payload (empty when valid)."""
    errors = {}
    if reason is not None and not isinstance(reason, str):
        errors["reason"] = "must be a string"
    elif not (reason or "").strip():
        errors["reason"] = "A rejection reason is required"
    elif len(reason.strip()) < min_length:
        errors["reason"] = f"Reason must be at least {min_length} characters"
    if rejection_code is not None and not isinstance(rejection_code, str):
        errors["rejection_code"] = "must be a string"
    elif not rejection_code:
        errors["rejection_code"] = "A rejection code is required"
    elif rejection_code not in REJECTION_CODES:
        errors["rejection_code"] = f"Must be one of {', '.join(REJECTION_CODES)}"
    return errors


def _check_role(event: str, state: str, role: str) -> None:
    if event in MANAGEMENT_EVENTS:
        if role not in MANAGEMENT_ROLES:
            raise RoleNotPermitted(f"Role {role!r} cannot {event} orders", state, event)
        return
    stage = stage_of(state)
    required = STAGE_ROLES.get(stage)
    if role != required:
        raise RoleNotPermitted(
            f"Only a {required} may {event} an order in {state}", state, event,
            {"required_role": required},
        )


def plan(topology: Topology, state: str, event: str, role: str, *,
         is_on_hold: bool = False, pre_hold_state: str | None = None,
         route_to: str | None = None) -> Step:
    """Validate ``event`` for an order in ``state`` and return the step.

    Raises :class:`InvalidTransition` (or :class:`RoleNotPermitted`) when the
    event is not adjacent, the order is terminal or held, or the role is wrong.
    ``route_to`` only applies to ``reject`` and must be one of the topology's
    rework targets for the rejecting stage.
    """
    if state not in topology.states:
        raise InvalidTransition(f"{state} is not a {topology.name} state", state, event)
    if state in TERMINAL_STATES:
        raise InvalidTransition(f"Order is {state}; no further transitions", state, event)

    if event == RESUME:
        _check_role(event, state, role)
        if not is_on_hold or state != ON_HOLD:
            raise InvalidTransition("Order is not on hold", state, event)
        if pre_hold_state not in topology.states or pre_hold_state in TERMINAL_STATES:
            raise InvalidTransition("Order has no state to resume to", state, event)
        return Step(event, state, (pre_hold_state,), stage_of(pre_hold_state))

    if is_on_hold or state == ON_HOLD:
        raise InvalidTransition("Order is on hold; resume it first", state, event)

    if event == HOLD:
        _check_role(event, state, role)
        return Step(event, state, (ON_HOLD,), stage_of(state))

    if event == CANCEL:
        _check_role(event, state, role)
        return Step(event, state, (CANCELLED,), stage_of(state))

    if event == REASSIGN:
        _check_role(event, state, role)
        stage = stage_of(state)
        if not (is_queued(state) or is_in_progress(state)) or not topology.has_stage(stage):
            raise InvalidTransition("Only queued or in-progress orders can be reassigned", state, event)
        # the target state depends on whether a user is named; the caller decides
        return Step(event, state, (state,), stage)

    path = topology.transitions.get((state, event))
    if path is None:
        raise InvalidTransition(f"Cannot {event} an order in {state}", state, event)
    _check_role(event, state, role)

    stage = stage_of(state)
    if event != REJECT:
        return Step(event, state, path, stage)

    routes = topology.reject_routes[stage]
    target = route_to or routes[0]
    if target not in routes:
        raise ValidationError(
            f"Cannot route a {stage} rejection to {target!r}",
            {"route_to": f"must be one of {', '.join(routes)}"},
        )
    return Step(event, state, (path[0], queued(target)), stage, rework_stage=target)
