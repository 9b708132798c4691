# Copyright 2025 Ben Mensi
# SPDX-License-Identifier: Apache-2.0

"""
Artifact store - named payloads passed between job nodes.

The executor only relies on the ArtifactStore interface. LocalArtifactStore
keeps payloads on disk:

    <root>/<name>/<version>/payload     copied file or directory
    <root>/<name>/<version>/meta.json   producer, retention, created_at
    <root>/<name>/CURRENT               version id of the live payload

A version directory is fully written before CURRENT is swapped with
os.replace, so a fetch never sees a partial payload.
"""

import json
import logging
import os
import re
import shutil
import threading
import uuid
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import List, Optional, Union

from relay.errors import ArtifactConflict, ArtifactNotFound
from relay.schemas import ArtifactHandle


logger = logging.getLogger(__name__)

ARTIFACT_NAME_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._-]*$")

CURRENT_FILE = "CURRENT"
META_FILE = "meta.json"
PAYLOAD_NAME = "payload"


def _utcnow() -> datetime:
    """Return current UTC time."""
    return datetime.now(timezone.utc)


def validate_artifact_name(name: str) -> None:
    """Artifact names are single path segments: [A-Za-z0-9._-], no leading dot."""
    if not name or not ARTIFACT_NAME_PATTERN.match(name):
        raise ValueError(f"Invalid artifact name: {name!r}")


class ArtifactStore(ABC):
    """Key-value contract between producing and consuming nodes."""

    @abstractmethod
    def publish(
        self,
        name: str,
        payload: Union[str, Path],
        retention_days: int,
        producer: str,
        run_id: Optional[str] = None,
    ) -> ArtifactHandle:
        """Store payload under name and return a handle."""

    @abstractmethod
    def fetch(self, name: str, run_id: Optional[str] = None) -> Path:
        """Return the payload path for name, or raise ArtifactNotFound.

        With run_id, only a payload published during that run is returned.
        """

    @abstractmethod
    def list(self) -> List[ArtifactHandle]:
        """Handles of all live artifacts."""

    @abstractmethod
    def gc(self, now: Optional[datetime] = None) -> List[str]:
        """Remove expired artifacts and superseded versions."""


class LocalArtifactStore(ArtifactStore):
    """Filesystem artifact store shared by all nodes of a run."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).expanduser()
        self.root.mkdir(parents=True, exist_ok=True)
        # Serializes publishers; readers never take it
        self._lock = threading.Lock()

    def _current_version(self, name: str) -> Optional[str]:
        current = self.root / name / CURRENT_FILE
        if not current.exists():
            return None
        return current.read_text().strip() or None

    def _read_handle(self, name: str, version: str) -> Optional[ArtifactHandle]:
        meta_path = self.root / name / version / META_FILE
        try:
            data = json.loads(meta_path.read_text())
        except (OSError, json.JSONDecodeError):
            return None
        return ArtifactHandle(
            name=data["name"],
            producer=data["producer"],
            location=str(self.root / name / version / PAYLOAD_NAME),
            retention_days=data["retention_days"],
            created_at=datetime.fromisoformat(data["created_at"]),
        )

    def _run_id(self, name: str, version: str) -> Optional[str]:
        meta_path = self.root / name / version / META_FILE
        try:
            return json.loads(meta_path.read_text()).get("run_id")
        except (OSError, json.JSONDecodeError):
            return None

    @staticmethod
    def _expired(handle: ArtifactHandle, now: datetime) -> bool:
        return handle.created_at + timedelta(days=handle.retention_days) <= now

    def _run_version(self, name: str, run_id: str) -> Optional[str]:
        """Newest version of name published by run_id."""
        current = self._current_version(name)
        if current and self._run_id(name, current) == run_id:
            return current
        candidates = []
        entry = self.root / name
        if entry.is_dir():
            for version_dir in entry.iterdir():
                if version_dir.is_dir() and self._run_id(name, version_dir.name) == run_id:
                    handle = self._read_handle(name, version_dir.name)
                    if handle is not None:
                        candidates.append((handle.created_at, version_dir.name))
        return max(candidates)[1] if candidates else None

    def get(
        self,
        name: str,
        now: Optional[datetime] = None,
        run_id: Optional[str] = None,
    ) -> ArtifactHandle:
        """Return the live handle for name.

        With run_id, only a version published by that run counts; without
        it, the latest version from any run.

        Raises:
            ArtifactNotFound: If absent or past its retention window
        """
        validate_artifact_name(name)
        if run_id is None:
            version = self._current_version(name)
        else:
            version = self._run_version(name, run_id)
        handle = self._read_handle(name, version) if version else None
        if handle is None or self._expired(handle, now or _utcnow()):
            raise ArtifactNotFound(name)
        return handle

    def publish(
        self,
        name: str,
        payload: Union[str, Path],
        retention_days: int,
        producer: str,
        run_id: Optional[str] = None,
    ) -> ArtifactHandle:
        """
        Publish a file or directory under name.

        Args:
            name: Artifact name
            payload: File or directory to copy into the store
            retention_days: Days until the artifact expires
            producer: Id of the producing node
            run_id: Run the producer belongs to

        Returns:
            ArtifactHandle for the new version

        Raises:
            FileNotFoundError: If payload does not exist
            ArtifactConflict: If another node of the same run owns name
        """
        validate_artifact_name(name)
        if isinstance(retention_days, bool) or not isinstance(retention_days, int) or retention_days < 1:
            raise ValueError(f"retention_days must be a positive integer, got: {retention_days!r}")
        source = Path(payload).expanduser()
        if not source.exists():
            raise FileNotFoundError(f"Artifact payload not found: {source}")

        with self._lock:
            now = _utcnow()
            existing = self._current_version(name)
            if existing:
                handle = self._read_handle(name, existing)
                if (
                    handle is not None
                    and not self._expired(handle, now)
                    and run_id is not None
                    and self._run_id(name, existing) == run_id
                    and handle.producer != producer
                ):
                    raise ArtifactConflict(
                        f"Artifact '{name}' is owned by '{handle.producer}', "
                        f"'{producer}' cannot overwrite it"
                    )

            version = uuid.uuid4().hex
            version_dir = self.root / name / version
            version_dir.mkdir(parents=True)
            target = version_dir / PAYLOAD_NAME
            if source.is_dir():
                shutil.copytree(source, target)
            else:
                shutil.copy2(source, target)

            meta = {
                "name": name,
                "producer": producer,
                "run_id": run_id,
                "retention_days": retention_days,
                "created_at": now.isoformat(),
                "kind": "dir" if source.is_dir() else "file",
            }
            (version_dir / META_FILE).write_text(json.dumps(meta, indent=2))

            pointer_tmp = self.root / name / f".{CURRENT_FILE}.{version}"
            pointer_tmp.write_text(version)
            os.replace(pointer_tmp, self.root / name / CURRENT_FILE)

        logger.info(f"Published artifact {name} ({producer}, {retention_days}d)")
        return ArtifactHandle(
            name=name,
            producer=producer,
            location=str(target),
            retention_days=retention_days,
            created_at=now,
        )

    def fetch(self, name: str, run_id: Optional[str] = None) -> Path:
        """Return the payload path of the live version of name.

        Raises:
            ArtifactNotFound: If absent, expired, or not published by run_id
        """
        return Path(self.get(name, run_id=run_id).location)

    def list(self, now: Optional[datetime] = None) -> List[ArtifactHandle]:
        handles = []
        for entry in sorted(self.root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                handles.append(self.get(entry.name, now))
            except (ArtifactNotFound, ValueError):
                continue
        return handles

    def gc(self, now: Optional[datetime] = None) -> List[str]:
        """
        Delete expired artifacts and superseded versions.

        Returns:
            Names of artifacts whose live version was removed
        """
        now = now or _utcnow()
        removed = []
        with self._lock:
            for entry in sorted(self.root.iterdir()):
                if not entry.is_dir() or entry.name.startswith("."):
                    continue
                current = self._current_version(entry.name)
                handle = self._read_handle(entry.name, current) if current else None

                if handle is None or self._expired(handle, now):
                    shutil.rmtree(entry)
                    removed.append(entry.name)
                    logger.info(f"Removed expired artifact {entry.name}")
                    continue

                for version_dir in entry.iterdir():
                    if version_dir.is_dir() and version_dir.name != current:
                        shutil.rmtree(version_dir)
                        logger.debug(f"Removed superseded version {entry.name}/{version_dir.name}")
        return removed
