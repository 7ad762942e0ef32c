"""
Status and progress tracking for pipeline runs
==============================================

Observers that the orchestrator and the translation pipeline notify as work
progresses. Two kinds exist:

* ``StatusSink`` receives every RunContext status transition.
* ``ActionSink`` receives long-running "action" progress (steps, counters,
  completion) and backs the translation runner.

Sinks are fire-and-forget. ``safe_notify`` calls a sink method and logs,
never propagates, any error it raises.

Usage:
    from pressflow.tracking import RecordingStatusSink, InMemoryActionSink

    sink = RecordingStatusSink()
    orchestrator = PipelineOrchestrator(..., status_sink=sink)
    await orchestrator.execute(campaign, item)
    print(sink.transitions)
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Optional, Tuple

from pressflow.config import now_iso

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

logger = logging.getLogger("pressflow.tracking")
if not logger.handlers:
    _handler = logging.StreamHandler()
    _handler.setFormatter(
        logging.Formatter(
            "%(asctime)s [%(levelname)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    logger.addHandler(_handler)
    logger.setLevel(logging.INFO)


def safe_notify(func: Optional[Callable[..., Any]], *args: Any, **kwargs: Any) -> Any:
    """Call *func* and swallow (after logging) anything it raises."""
    if func is None:
        return None
    try:
        return func(*args, **kwargs)
    except Exception as exc:
        logger.warning(
            "Progress sink %s raised %s: %s",
            getattr(func, "__qualname__", repr(func)),
            type(exc).__name__,
            exc,
        )
        return None


# ---------------------------------------------------------------------------
# Status sinks
# ---------------------------------------------------------------------------


class StatusSink:
    """Base status observer. Subclasses override ``on_transition``."""

    def on_transition(self, ctx: Any, old_status: str, new_status: str) -> None:
        pass


class LoggingStatusSink(StatusSink):
    """Writes one INFO line per transition."""

    def __init__(self, log: Optional[logging.Logger] = None):
        self._log = log or logger

    def on_transition(self, ctx: Any, old_status: str, new_status: str) -> None:
        self._log.info(
            "[%s] %s -> %s (%s)",
            getattr(ctx, "run_id", "?")[:8],
            old_status,
            new_status,
            getattr(getattr(ctx, "source_item", None), "topic", ""),
        )


class RecordingStatusSink(StatusSink):
    """Keeps every transition in memory, for tests and the CLI summary."""

    def __init__(self) -> None:
        self.transitions: List[Tuple[str, str, str]] = []

    def on_transition(self, ctx: Any, old_status: str, new_status: str) -> None:
        self.transitions.append((getattr(ctx, "run_id", ""), old_status, new_status))

    def statuses_for(self, run_id: str) -> List[str]:
        return [new for rid, _, new in self.transitions if rid == run_id]


# ---------------------------------------------------------------------------
# Action sinks
# ---------------------------------------------------------------------------


@dataclass
class ActionStep:
    step_id: str
    label: str
    status: str = "pending"
    detail: str = ""


@dataclass
class ActionRecord:
    action_id: str
    label: str
    category: str = "campaign"
    retryable: bool = False
    status: str = "running"
    current: int = 0
    total: int = 0
    message: str = ""
    started_at: str = field(default_factory=now_iso)
    finished_at: Optional[str] = None
    steps: List[ActionStep] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


class ActionSink:
    """Base action observer; every hook is a no-op."""

    def start_action(self, label: str, category: str = "campaign", retryable: bool = False) -> str:
        return uuid.uuid4().hex

    def add_step(self, action_id: str, label: str) -> str:
        return uuid.uuid4().hex

    def update_step(self, action_id: str, step_id: str, status: str, detail: str = "") -> None:
        pass

    def set_progress(self, action_id: str, current: int, total: int) -> None:
        pass

    def update_action(self, action_id: str, message: str) -> None:
        pass

    def complete_action(self, action_id: str, message: str = "") -> None:
        pass

    def fail_action(self, action_id: str, error: str) -> None:
        pass


class InMemoryActionSink(ActionSink):
    """Stores actions and their steps in a dict keyed by action id."""

    def __init__(self) -> None:
        self.actions: Dict[str, ActionRecord] = {}

    def start_action(self, label: str, category: str = "campaign", retryable: bool = False) -> str:
        action_id = uuid.uuid4().hex
        self.actions[action_id] = ActionRecord(
            action_id=action_id, label=label, category=category, retryable=retryable,
        )
        return action_id

    def add_step(self, action_id: str, label: str) -> str:
        step_id = uuid.uuid4().hex
        self.actions[action_id].steps.append(ActionStep(step_id=step_id, label=label))
        return step_id

    def update_step(self, action_id: str, step_id: str, status: str, detail: str = "") -> None:
        for step in self.actions[action_id].steps:
            if step.step_id == step_id:
                step.status = status
                step.detail = detail
                return

    def set_progress(self, action_id: str, current: int, total: int) -> None:
        action = self.actions[action_id]
        action.current = current
        action.total = total

    def update_action(self, action_id: str, message: str) -> None:
        self.actions[action_id].message = message

    def complete_action(self, action_id: str, message: str = "") -> None:
        action = self.actions[action_id]
        action.status = "completed"
        action.message = message
        action.finished_at = now_iso()

    def fail_action(self, action_id: str, error: str) -> None:
        action = self.actions[action_id]
        action.status = "failed"
        action.message = error
        action.finished_at = now_iso()


class LoggingActionSink(InMemoryActionSink):
    """In-memory sink that also logs start, completion and failure."""

    def start_action(self, label: str, category: str = "campaign", retryable: bool = False) -> str:
        action_id = super().start_action(label, category, retryable)
        logger.info("Action started: %s (%s)", label, action_id[:8])
        return action_id

    def complete_action(self, action_id: str, message: str = "") -> None:
        super().complete_action(action_id, message)
        logger.info("Action completed (%s): %s", action_id[:8], message)

    def fail_action(self, action_id: str, error: str) -> None:
        super().fail_action(action_id, error)
        logger.error("Action failed (%s): %s", action_id[:8], error)
