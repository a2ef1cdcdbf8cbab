#!/usr/bin/env python3
"""
JSON persistence for Environment records, one file per environment id.
"""

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List

from pxe_e2e.errors import CorruptedRecordError, EnvironmentNotFoundError, StoreError
from pxe_e2e.lifecycle import Environment


class EnvironmentStore:
    """Keyed collection of Environment records on disk."""

    def __init__(self, root: Path):
        self.root = Path(root)
        self.logger = logging.getLogger(__name__)

    def _path(self, env_id: str) -> Path:
        if not env_id or '/' in env_id or env_id in ('.', '..'):
            raise StoreError(f"invalid environment id: {env_id!r}")
        return self.root / f"{env_id}.json"

    def save(self, env: Environment):
        """Write the record atomically."""
        path = self._path(env.id)
        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{env.id}.", suffix='.tmp', dir=str(self.root))
        try:
            with os.fdopen(fd, 'w', encoding='utf-8') as handle:
                json.dump(env.to_dict(), handle, indent=2)
            os.replace(tmp_name, path)
        except OSError as e:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise StoreError(f"failed to save environment {env.id}: {e}") from e
        self.logger.debug(f"Saved environment {env.id} to {path}")

    def load(self, env_id: str) -> Environment:
        path = self._path(env_id)
        if not path.exists():
            raise EnvironmentNotFoundError(f"environment not found: {env_id}")
        try:
            with open(path, 'r', encoding='utf-8') as handle:
                data = json.load(handle)
            return Environment.from_dict(data)
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            raise CorruptedRecordError(f"environment record {path} is corrupted: {e}") from e

    def exists(self, env_id: str) -> bool:
        return self._path(env_id).exists()

    def list(self) -> List[Environment]:
        """Return all readable records sorted by id; corrupted ones are skipped."""
        if not self.root.exists():
            return []
        environments = []
        for path in sorted(self.root.glob('*.json')):
            try:
                environments.append(self.load(path.stem))
            except CorruptedRecordError as e:
                self.logger.warning(f"Skipping {e}")
        return environments

    def delete(self, env_id: str):
        """Remove the record; a missing record is not an error."""
        path = self._path(env_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        self.logger.debug(f"Deleted environment record {env_id}")
