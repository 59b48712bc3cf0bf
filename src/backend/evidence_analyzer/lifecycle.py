"""
Lifecycle state machine for an analysis job.

    pending ──start──> processing ──complete──> completed
       │                   │
       └──────fail─────────┴──────> failed

The machine is attached to an `Analysis` row inside a store transaction and
writes the row's `status` column. Illegal moves raise `MachineError`.
"""
import datetime

from transitions import Machine, MachineError  # noqa: F401  re-exported for callers

states = ["pending", "processing", "completed", "failed"]

TERMINAL_STATES = {"completed", "failed"}


def _utcnow():
    return datetime.datetime.now(datetime.timezone.utc)


def _stamp_started(event) -> None:
    event.model.started_at = _utcnow()


def _stamp_finished(event) -> None:
    job = event.model
    job.completed_at = _utcnow()
    if job.started_at is not None:
        started = job.started_at
        if started.tzinfo is None:
            started = started.replace(tzinfo=datetime.timezone.utc)
        job.processing_time_ms = int((job.completed_at - started).total_seconds() * 1000)


transitions = [
    {"trigger": "start", "source": "pending", "dest": "processing", "after": _stamp_started},
    {"trigger": "complete", "source": "processing", "dest": "completed", "after": _stamp_finished},
    {"trigger": "fail", "source": ["pending", "processing"], "dest": "failed", "after": _stamp_finished},
]


def attach(job) -> Machine:
    """Bind a machine to the job row, starting from its stored status."""
    return Machine(
        model=job,
        states=states,
        transitions=transitions,
        initial=job.status,
        model_attribute="status",
        auto_transitions=False,
        send_event=True,
    )


def advance(job, trigger: str) -> bool:
    """
    Fire `trigger` on the job unless it already sits in that trigger's
    destination, as it does when a committed transition is replayed.
    Returns whether the transition ran.
    """
    destination = next(t["dest"] for t in transitions if t["trigger"] == trigger)
    if job.status == destination:
        return False
    attach(job)
    getattr(job, trigger)()
    return True


def is_terminal(status: str) -> bool:
    return status in TERMINAL_STATES
