"""Round-boundary checkpoints for crash recovery.

A checkpoint is a JSON document ``{version, timestamp, round, ...state,
external_state_marker}``. It is written atomically (temp file + rename) at the
end of every round and read back once at startup. A missing, unreadable or
outdated checkpoint means a cold start, never a crash.
"""

from __future__ import annotations

import copy
import json
import logging
import os
from collections.abc import Mapping, MutableMapping
from datetime import datetime, timezone
from typing import Any

from mission_engine.execution.schemas import CheckpointValidation

logger = logging.getLogger(__name__)

CHECKPOINT_VERSION = 1
CHECKPOINT_FILENAME = "checkpoint.json"
MARKER_KEY = "external_state_marker"

# Scalars copied as-is.
SCALAR_KEYS: tuple[str, ...] = ("round", MARKER_KEY)
# Flat id -> number maps; a shallow copy is enough.
FLAT_MAP_KEYS: tuple[str, ...] = ("last_run_round",)
# Everything else (runtime history, sessions, effectiveness, failure details,
# graph JSON, round log) is deep-copied.


class CheckpointStore:
    """Reads and writes the checkpoint file under ``directory``."""

    def __init__(
        self,
        directory: str | os.PathLike[str],
        *,
        filename: str = CHECKPOINT_FILENAME,
        version: int = CHECKPOINT_VERSION,
    ) -> None:
        self.directory = os.fspath(directory)
        self.path = os.path.join(self.directory, filename)
        self.version = version

    def write_checkpoint(self, state: Mapping[str, Any]) -> bool:
        """Persist ``state`` with version and timestamp attached. Never raises.

        Returns:
            True if the checkpoint reached disk by either write path.
        """
        payload = {
            "version": self.version,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **state,
        }
        # Serialize before touching any file so a bad state never truncates
        # the previous checkpoint.
        try:
            text = json.dumps(payload, indent=2, default=str)
        except (TypeError, ValueError) as err:
            logger.error("Checkpoint serialization failed: %s", err)
            return False

        tmp_path = self.path + ".tmp"
        try:
            os.makedirs(self.directory, exist_ok=True)
            with open(tmp_path, "w") as f:
                f.write(text)
            os.replace(tmp_path, self.path)
            return True
        except OSError as err:
            logger.warning("Checkpoint atomic write failed, trying direct: %s", err)

        try:
            with open(self.path, "w") as f:
                f.write(text)
        except OSError as err:
            logger.error("Checkpoint write failed: %s", err)
            return False
        try:
            os.remove(tmp_path)
        except FileNotFoundError:
            pass
        except OSError as err:
            logger.warning("Could not remove stale temp checkpoint %s: %s", tmp_path, err)
        return True

    def load_checkpoint(self) -> dict[str, Any] | None:
        """Return the stored checkpoint, or None to signal a cold start."""
        if not os.path.exists(self.path):
            return None
        try:
            with open(self.path, "r") as f:
                data = json.load(f)
        except (OSError, ValueError) as err:
            logger.warning("Checkpoint parse failed: %s; ignoring", err)
            return None

        if not isinstance(data, dict) or data.get("version") != self.version:
            found = data.get("version") if isinstance(data, dict) else None
            logger.warning(
                "Checkpoint version mismatch (expected %s, got %s); ignoring",
                self.version, found,
            )
            return None
        return data

    def clear_checkpoint(self) -> None:
        """Remove the checkpoint file after a successful run. Best effort."""
        for path in (self.path, self.path + ".tmp"):
            try:
                os.remove(path)
            except FileNotFoundError:
                pass
            except OSError as err:
                logger.warning("Could not remove checkpoint file %s: %s", path, err)

    @staticmethod
    def validate_checkpoint(
        checkpoint: Mapping[str, Any] | None,
        current_marker: str | None,
    ) -> CheckpointValidation:
        return validate_checkpoint(checkpoint, current_marker)


def validate_checkpoint(
    checkpoint: Mapping[str, Any] | None,
    current_marker: str | None,
) -> CheckpointValidation:
    """Check that the external world has not moved on since the checkpoint.

    Markers are opaque and compared verbatim.
    """
    if not checkpoint:
        return CheckpointValidation(valid=False, reason="no checkpoint")
    stored = checkpoint.get(MARKER_KEY)
    if not stored:
        return CheckpointValidation(valid=False, reason="checkpoint missing marker")
    if stored != current_marker:
        return CheckpointValidation(
            valid=False,
            reason=f"marker mismatch: checkpoint={stored}, current={current_marker}",
        )
    return CheckpointValidation(valid=True, reason=None)


# ---------------------------------------------------------------------------
# State collection / restoration
# ---------------------------------------------------------------------------


def collect_checkpoint_state(live: Mapping[str, Any]) -> dict[str, Any]:
    """Snapshot live engine state so nothing is shared with the live objects."""
    state: dict[str, Any] = {}
    for key, value in live.items():
        if key in SCALAR_KEYS:
            state[key] = value
        elif key in FLAT_MAP_KEYS:
            state[key] = dict(value) if value is not None else None
        else:
            state[key] = copy.deepcopy(value)
    return state


def restore_checkpoint_state(checkpoint: Mapping[str, Any], targets: Mapping[str, Any]) -> None:
    """Repopulate live containers from ``checkpoint`` without replacing them.

    Maps are cleared and refilled; lists are truncated and re-extended so
    callers holding a reference see the restored entries.
    """
    for key, target in targets.items():
        value = checkpoint.get(key)
        if value is None or target is None:
            continue
        if isinstance(target, list):
            del target[:]
            target.extend(copy.deepcopy(value))
        elif isinstance(target, MutableMapping):
            target.clear()
            target.update(copy.deepcopy(value))

    logger.info(
        "Checkpoint state restored (round %s, %d agent kinds tracked)",
        checkpoint.get("round"), len(checkpoint.get("agent_runtime_history") or {}),
    )
