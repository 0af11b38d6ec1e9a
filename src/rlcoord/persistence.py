"""Versioned JSON persistence of coordinator state.

The document holds each entity type as records keyed by id:

    {
        "schema_version": 1,
        "saved_at": <unix time>,
        "agents": {"<agent id>": {...}},
        "tasks": {"<task id>": {...}},          # pending/assigned/in progress
        "archived_tasks": {"<task id>": {...}}, # completed/failed
        "replay": [{...}, ...],                 # oldest first
        "metrics": {...}
    }

Writes are atomic (temp file + os.replace) so a reader never sees a
partially written document.
"""

import json
import logging
import os
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path

from .errors import ConfigurationError, ValidationError
from .models import AgentSnapshot, TaskSnapshot
from .replay import TransitionRecord
from .stats import MetricsSnapshot

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1


@dataclass
class CoordinatorState:
    """Everything needed to rebuild a coordinator."""

    agents: list[AgentSnapshot] = field(default_factory=list)
    tasks: list[TaskSnapshot] = field(default_factory=list)
    archived_tasks: list[TaskSnapshot] = field(default_factory=list)
    replay: list[TransitionRecord] = field(default_factory=list)
    metrics: MetricsSnapshot | None = None
    saved_at: float = field(default_factory=time.time)

    def to_dict(self) -> dict:
        return {
            "schema_version": SCHEMA_VERSION,
            "saved_at": self.saved_at,
            "agents": {a.id: a.to_dict() for a in self.agents},
            "tasks": {t.id: t.to_dict() for t in self.tasks},
            "archived_tasks": {t.id: t.to_dict() for t in self.archived_tasks},
            "replay": [r.to_dict() for r in self.replay],
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "CoordinatorState":
        """Parse a persisted document.

        Raises:
            ConfigurationError: If the schema version is missing or unsupported.
            ValidationError: If a record is malformed.
        """
        version = data.get("schema_version")
        if version != SCHEMA_VERSION:
            raise ConfigurationError(
                f"unsupported state schema version {version!r} "
                f"(expected {SCHEMA_VERSION})"
            )
        try:
            return cls(
                agents=[AgentSnapshot.from_dict(a) for a in data.get("agents", {}).values()],
                tasks=[TaskSnapshot.from_dict(t) for t in data.get("tasks", {}).values()],
                archived_tasks=[
                    TaskSnapshot.from_dict(t)
                    for t in data.get("archived_tasks", {}).values()
                ],
                replay=[TransitionRecord.from_dict(r) for r in data.get("replay", [])],
                metrics=(
                    MetricsSnapshot.from_dict(data["metrics"])
                    if data.get("metrics")
                    else None
                ),
                saved_at=data.get("saved_at", 0.0),
            )
        except (KeyError, TypeError, ValueError) as e:
            if isinstance(e, ValidationError):
                raise
            raise ValidationError(f"malformed state document: {e}") from e


def save_state(state: CoordinatorState, path: str | Path) -> None:
    """Write state to a JSON file using atomic write-then-rename.

    Raises:
        Exception: If the write fails (temp file is cleaned up on error).
    """
    state_path = Path(path)
    state_path.parent.mkdir(parents=True, exist_ok=True)

    temp_fd, temp_path = tempfile.mkstemp(suffix=".json", dir=state_path.parent)
    try:
        with os.fdopen(temp_fd, "w") as f:
            json.dump(state.to_dict(), f, indent=2)
        os.replace(temp_path, state_path)
    except Exception:
        if os.path.exists(temp_path):
            os.unlink(temp_path)
        raise

    logger.info(
        f"Saved state to {state_path}: {len(state.agents)} agents, "
        f"{len(state.tasks) + len(state.archived_tasks)} tasks, "
        f"{len(state.replay)} transitions"
    )


def load_state(path: str | Path) -> CoordinatorState:
    """Read a state document.

    Raises:
        FileNotFoundError: If the file does not exist.
        ConfigurationError: If the schema version is unsupported.
        ValidationError: If the document is not valid JSON or malformed.
    """
    state_path = Path(path)
    with open(state_path) as f:
        try:
            data = json.load(f)
        except json.JSONDecodeError as e:
            raise ValidationError(f"{state_path} is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ValidationError(f"{state_path} does not hold a state document")
    return CoordinatorState.from_dict(data)
