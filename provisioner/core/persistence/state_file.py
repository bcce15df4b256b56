"""
State file persistence — atomic read/write for HostState.

Stored as JSON in .state/current.json. Writes go to a temp file in the
same directory and are renamed into place, so a crash mid-write never
leaves a truncated file behind.
"""

from __future__ import annotations

import json
import logging
import tempfile
from pathlib import Path

from pydantic import ValidationError

from provisioner.core.models.state import HostState, RunRecord
from provisioner.core.models.step import PlanResult

logger = logging.getLogger(__name__)

DEFAULT_STATE_DIR = ".state"
DEFAULT_STATE_FILE = "current.json"


def default_state_path(state_dir: Path) -> Path:
    return state_dir / DEFAULT_STATE_FILE


def load_state(path: Path) -> HostState:
    """Load host state. A missing or corrupt file yields a fresh state."""
    if not path.is_file():
        logger.info("No state file at %s — starting fresh", path)
        return HostState()

    try:
        state = HostState.model_validate(json.loads(path.read_text(encoding="utf-8")))
        logger.debug("Loaded state from %s (updated_at=%s)", path, state.updated_at)
        return state
    except (json.JSONDecodeError, ValidationError, OSError) as e:
        logger.warning("Cannot load state from %s: %s — starting fresh", path, e)
        return HostState()


def save_state(state: HostState, path: Path) -> None:
    """Save host state atomically (write temp file, then rename)."""
    state.touch()
    path.parent.mkdir(parents=True, exist_ok=True)
    content = json.dumps(state.model_dump(mode="json"), indent=2, ensure_ascii=False) + "\n"

    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=".state_", suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with open(fd, "w", encoding="utf-8") as f:
            f.write(content)
        tmp.replace(path)
        logger.debug("State saved to %s", path)
    except OSError as e:
        tmp.unlink(missing_ok=True)
        logger.error("Failed to save state to %s: %s", path, e)
        raise


def record_run(state: HostState, result: PlanResult, host_name: str = "") -> HostState:
    """Fold a finished plan run into the state document."""
    if host_name:
        state.host_name = host_name
    state.last_run = RunRecord(
        plan_id=result.plan_id,
        mode=result.mode,
        started_at=result.started_at,
        ended_at=result.ended_at,
        status=result.status,
        steps_total=len(result.results),
        steps_applied=result.applied,
        steps_skipped=result.skipped,
        steps_failed=result.failed,
        steps_rolled_back=result.rolled_back,
        warnings=list(result.warnings),
    )
    for r in result.results:
        state.step_status[r.step_name] = str(r.status)
    return state
