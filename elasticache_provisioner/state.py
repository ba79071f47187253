"""Persisted provisioning state and its JSON file store."""

import json
import logging
import os
import tempfile
from dataclasses import asdict, dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Optional

from elasticache_provisioner.aws.exceptions import ConfigurationError, StateConflictError
from elasticache_provisioner.utils import ensure_parent_dir

logger = logging.getLogger(__name__)


@dataclass
class State:
    """Single record describing what has already been provisioned.

    A field being set is the progress marker for the matching resource:
    deploy fills fields in as resources are created and undeploy clears them
    as resources are deleted. The record itself is never removed.
    """

    version: int = 0
    identifier: Optional[str] = None
    deploy_config: Optional[Dict[str, Any]] = None

    replication_group_identifier: Optional[str] = None
    writer_instance_identifier: Optional[str] = None
    reader_instance_identifiers: Dict[str, List[str]] = field(default_factory=dict)

    cache_parameter_group_name: Optional[str] = None

    writer_endpoint: Optional[str] = None
    reader_endpoint: Optional[str] = None

    def increment_version(self) -> None:
        self.version += 1

    def reader_count(self, instance_type: str) -> int:
        return len(self.reader_instance_identifiers.get(instance_type, []))

    def add_reader(self, instance_type: str, instance_id: str) -> None:
        self.reader_instance_identifiers.setdefault(instance_type, []).append(instance_id)

    def remove_reader(self, instance_type: str, instance_id: str) -> None:
        """Remove one reader id, dropping the type entry once it is empty."""
        identifiers = self.reader_instance_identifiers.get(instance_type, [])
        if instance_id in identifiers:
            identifiers.remove(instance_id)
        if not identifiers:
            self.reader_instance_identifiers.pop(instance_type, None)

    def is_empty(self) -> bool:
        return (
            self.replication_group_identifier is None
            and self.writer_instance_identifier is None
            and not self.reader_instance_identifiers
            and self.cache_parameter_group_name is None
        )

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, raw: Dict[str, Any]) -> "State":
        known = {f.name for f in fields(cls)}
        values = {key: value for key, value in raw.items() if key in known}
        values["reader_instance_identifiers"] = {
            instance_type: list(ids)
            for instance_type, ids in (values.get("reader_instance_identifiers") or {}).items()
        }
        return cls(**values)


class StateStore:
    """JSON file store with an optimistic version guard.

    ``save`` refuses to overwrite a record whose on-disk version differs from
    the version the caller holds, then bumps the version and writes the file
    atomically.
    """

    def __init__(self, path: str):
        self.path = path

    def _read_raw(self) -> Optional[Dict[str, Any]]:
        if not Path(self.path).exists():
            return None
        try:
            with open(self.path, "r", encoding="UTF-8") as file:
                return json.load(file)
        except json.JSONDecodeError as e:
            raise ConfigurationError(f"狀態檔 {self.path} 不是有效的 JSON", e)

    def load(self) -> State:
        raw = self._read_raw()
        if raw is None:
            logger.info(f"No state found at {self.path}, starting from an empty state")
            return State()
        state = State.from_dict(raw)
        logger.debug(f"Loaded state version {state.version} from {self.path}")
        return state

    def save(self, state: State) -> State:
        """Persist the state, incrementing its version.

        Args:
            state: State to persist (its version must match the stored one)

        Returns:
            The same state object with the incremented version

        Raises:
            StateConflictError: If the stored record was modified concurrently
        """
        raw = self._read_raw()
        stored_version = int(raw.get("version", 0)) if raw else 0
        if stored_version != state.version:
            raise StateConflictError(self.path, state.version, stored_version)

        state.increment_version()
        ensure_parent_dir(self.path)
        directory = os.path.dirname(os.path.abspath(self.path))
        fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=".state-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="UTF-8") as file:
                json.dump(state.to_dict(), file, indent=2, sort_keys=True)
            os.replace(tmp_path, self.path)
        except OSError:
            state.version -= 1
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise

        logger.debug(f"Saved state version {state.version} to {self.path}")
        return state
