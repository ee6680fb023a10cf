"""
Copyright 2025 Inmanta

Licensed under the Apache License, Version 2.0 (the "License");
you may not use this file except in compliance with the License.
You may obtain a copy of the License at

    http://www.apache.org/licenses/LICENSE-2.0

Unless required by applicable law or agreed to in writing, software
distributed under the License is distributed on an "AS IS" BASIS,
WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
See the License for the specific language governing permissions and
limitations under the License.

Contact: code@inmanta.com
"""

import abc
import contextlib
import copy
import datetime
import errno
import json
import logging
import os
import shutil
import threading
from collections.abc import Iterator, Mapping, Sequence
from typing import Optional

import pydantic

from converge import config, const
from converge.data.model import OutputValue, ResourceRecord, StateSnapshot
from converge.resources import Id
from converge.types import ResourceIdStr
from converge.util import atomic_write, make_attribute_hash

LOGGER = logging.getLogger(__name__)


class StateError(Exception):
    """
    The state can not be read or written
    """


class StateLockedError(StateError):
    """
    Another process holds the lock on the state
    """


class StateStore(abc.ABC):
    """
    Where the state snapshot is persisted
    """

    @abc.abstractmethod
    def load(self) -> StateSnapshot:
        """
        Load the snapshot. A store without a snapshot returns an empty one with a fresh lineage.

        :raises StateError: The snapshot can not be read
        """

    @abc.abstractmethod
    def save(self, snapshot: StateSnapshot) -> None:
        """
        Persist the snapshot, after incrementing its serial.
        """

    @abc.abstractmethod
    def lock(self) -> contextlib.AbstractContextManager[None]:
        """
        Hold an exclusive lock on the state for the duration of the block.

        :raises StateLockedError: The lock is already held
        """


class MemoryStateStore(StateStore):
    """
    Keeps the snapshot in memory. Every load returns a copy of the last saved snapshot.
    """

    def __init__(self, snapshot: Optional[StateSnapshot] = None) -> None:
        self._snapshot = snapshot.model_copy(deep=True) if snapshot is not None else StateSnapshot()
        self._lock = threading.Lock()
        self.saves = 0

    def load(self) -> StateSnapshot:
        return self._snapshot.model_copy(deep=True)

    def save(self, snapshot: StateSnapshot) -> None:
        snapshot.serial += 1
        self._snapshot = snapshot.model_copy(deep=True)
        self.saves += 1

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise StateLockedError("The state is locked")
        try:
            yield
        finally:
            self._lock.release()


class FileStateStore(StateStore):
    """
    Stores the snapshot as a JSON document. The previous version is kept in <path>.backup, the lock is the file
    <path>.lock.
    """

    def __init__(self, path: Optional[str] = None) -> None:
        self.path = path if path is not None else config.state_file.get()

    @property
    def backup_path(self) -> str:
        return self.path + ".backup"

    @property
    def lock_path(self) -> str:
        return self.path + ".lock"

    def load(self) -> StateSnapshot:
        if not os.path.exists(self.path):
            LOGGER.debug("No state file at %s, starting from an empty state", self.path)
            return StateSnapshot()
        try:
            with open(self.path, encoding="utf-8") as fh:
                content = fh.read()
        except OSError as e:
            raise StateError(f"Unable to read state file {self.path}: {e.strerror}") from e
        except UnicodeDecodeError as e:
            raise StateError(f"Unable to read state file {self.path}: not valid UTF-8 ({e.reason} at byte {e.start})") from e
        return self.parse(content, self.path)

    @classmethod
    def parse(cls, content: str, source: str = "<string>") -> StateSnapshot:
        """
        :raises StateError: The content is not a state snapshot this version understands.
        """
        try:
            raw = json.loads(content)
        except json.JSONDecodeError as e:
            raise StateError(f"State file {source} is not valid JSON: {e}") from e
        if not isinstance(raw, dict):
            raise StateError(f"State file {source} does not contain a state snapshot")
        version = raw.get("format_version")
        if version != const.STATE_FORMAT_VERSION:
            raise StateError(
                f"State file {source} has format version {version}, only version {const.STATE_FORMAT_VERSION} is supported"
            )
        try:
            return StateSnapshot.model_validate(raw)
        except pydantic.ValidationError as e:
            raise StateError(f"State file {source} is not a valid state snapshot: {e}") from e

    def save(self, snapshot: StateSnapshot) -> None:
        snapshot.serial += 1
        if os.path.exists(self.path):
            shutil.copyfile(self.path, self.backup_path)
        atomic_write(self.path, snapshot.model_dump_json(indent=2))
        LOGGER.debug("Saved state serial %d to %s", snapshot.serial, self.path)

    @contextlib.contextmanager
    def lock(self) -> Iterator[None]:
        directory = os.path.dirname(os.path.abspath(self.lock_path))
        os.makedirs(directory, exist_ok=True)
        try:
            fd = os.open(self.lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except OSError as e:
            if e.errno == errno.EEXIST:
                raise StateLockedError(
                    f"The state {self.path} is locked by another process. Remove {self.lock_path} if that process is gone."
                ) from e
            raise StateError(f"Unable to lock state {self.path}: {e.strerror}") from e
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write("%d\n" % os.getpid())
            yield
        finally:
            with contextlib.suppress(FileNotFoundError):
                os.unlink(self.lock_path)


class StateRecorder:
    """
    Keeps the working copy of the snapshot during an apply and persists it after every recorded change.
    Only used from the event loop thread.
    """

    def __init__(self, store: StateStore, snapshot: Optional[StateSnapshot] = None) -> None:
        self.store = store
        self.snapshot = snapshot if snapshot is not None else store.load()

    def _persist(self) -> None:
        self.store.save(self.snapshot)

    def record_applied(
        self,
        resource_id: Id,
        attributes: Mapping[str, object],
        provider_id: Optional[str],
        computed: Mapping[str, object],
        requires: Sequence[ResourceIdStr],
        prevent_destroy: bool = False,
    ) -> ResourceRecord:
        rid = resource_id.resource_str()
        record = ResourceRecord(
            resource_id=rid,
            resource_type=resource_id.resource_type,
            name=resource_id.name,
            attributes=copy.deepcopy(dict(attributes)),
            provider_id=provider_id,
            computed=copy.deepcopy(dict(computed)),
            requires=sorted(requires),
            attribute_hash=make_attribute_hash(rid, attributes),
            prevent_destroy=prevent_destroy,
        )
        self.snapshot.resources[rid] = record
        self._persist()
        return record

    def record_deleted(self, resource_id: ResourceIdStr) -> None:
        if self.snapshot.resources.pop(resource_id, None) is not None:
            self._persist()

    def record_requires(self, resource_id: ResourceIdStr, requires: Sequence[ResourceIdStr], prevent_destroy: bool) -> bool:
        """
        Update the requires and lifecycle of an unchanged resource. Returns True iff something changed.
        """
        record = self.snapshot.resources.get(resource_id)
        if record is None:
            return False
        new_requires = sorted(requires)
        if record.requires == new_requires and record.prevent_destroy == prevent_destroy:
            return False
        record.requires = new_requires
        record.prevent_destroy = prevent_destroy
        record.updated = datetime.datetime.now().astimezone()
        self._persist()
        return True

    def record_outputs(self, outputs: Mapping[str, OutputValue]) -> None:
        if self.snapshot.outputs == dict(outputs):
            return
        self.snapshot.outputs = dict(outputs)
        self._persist()


def set_tainted(snapshot: StateSnapshot, resource_id: ResourceIdStr, tainted: bool) -> ResourceRecord:
    """
    :raises KeyError: The resource is not in the state
    """
    record = snapshot.resources[resource_id]
    record.tainted = tainted
    record.updated = datetime.datetime.now().astimezone()
    return record
