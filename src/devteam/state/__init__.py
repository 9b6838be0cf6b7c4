from devteam.state.artifacts import ArtifactPathError, ArtifactRecord, ArtifactStore
from devteam.state.run_log import RunLogError, RunLogger
from devteam.state.store import (
    PhaseState,
    RunState,
    StateNotFoundError,
    StateStore,
    StateValidationError,
    write_json_atomically,
)

__all__ = [
    "ArtifactPathError",
    "ArtifactRecord",
    "ArtifactStore",
    "PhaseState",
    "RunLogError",
    "RunLogger",
    "RunState",
    "StateNotFoundError",
    "StateStore",
    "StateValidationError",
    "write_json_atomically",
]
