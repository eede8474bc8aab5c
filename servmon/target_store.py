"""Thread-safe registry of monitored targets and their last known status."""

from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import replace
from typing import Dict, Iterable, Iterator, List, Optional

import configuration
from configuration import Target, TargetStatus

LOGGER = logging.getLogger(__name__)


class TargetValidationError(ValueError):
    """Base class for rejected target definitions."""

    field_name = ""


class EmptyNameError(TargetValidationError):
    field_name = "name"


class EmptyAddressError(TargetValidationError):
    field_name = "address"


class UnsupportedProtocolError(TargetValidationError):
    field_name = "protocol"


class UnknownTargetError(KeyError):
    """Raised when an operation names a target id that is not registered."""


def validate_target(target: Target) -> Target:
    """Return a normalised copy of ``target`` or raise a validation error."""

    name = (target.name or "").strip()
    if not name:
        raise EmptyNameError("Target name is required")

    address = (target.address or "").strip()
    if not address:
        raise EmptyAddressError("Target address is required")

    protocol = (target.protocol or "").strip().lower()
    if protocol not in configuration.SUPPORTED_PROTOCOLS:
        raise UnsupportedProtocolError(
            f"Unsupported protocol {target.protocol!r}; expected one of "
            f"{sorted(configuration.SUPPORTED_PROTOCOLS)}")

    identifier = (target.id or "").strip() or uuid.uuid4().hex
    return replace(target,
                   id=identifier,
                   name=name,
                   address=address,
                   protocol=protocol)


class _ReadWriteLock:
    """Many concurrent readers or a single writer."""

    def __init__(self) -> None:
        self._condition = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._condition:
            while self._writer or self._writers_waiting:
                self._condition.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._condition:
                self._readers -= 1
                if not self._readers:
                    self._condition.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._condition:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._condition.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._condition:
                self._writer = False
                self._condition.notify_all()


class TargetStore:
    """Authoritative set of targets.

    Targets and statuses are frozen dataclasses, so every value handed out is
    a snapshot; updates always swap in a new record under the write lock.
    """

    def __init__(self, targets: Iterable[Target] = ()) -> None:
        self._lock = _ReadWriteLock()
        self._targets: Dict[str, Target] = {}
        for target in targets:
            self.upsert(target)

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._targets)

    def __contains__(self, target_id: object) -> bool:
        with self._lock.read():
            return target_id in self._targets

    def list(self) -> List[Target]:
        with self._lock.read():
            return list(self._targets.values())

    def get(self, target_id: str) -> Optional[Target]:
        with self._lock.read():
            return self._targets.get(target_id)

    def upsert(self, target: Target) -> Target:
        validated = validate_target(target)
        with self._lock.write():
            self._targets[validated.id] = validated
        LOGGER.debug("store.upsert id=%s name=%s protocol=%s", validated.id,
                     validated.name, validated.protocol)
        return validated

    def update(self, target: Target) -> Target:
        """Replace the definition of a registered target, keeping its status.

        Raises ``UnknownTargetError`` when ``target.id`` is not registered.
        """

        if not (target.id or "").strip():
            raise UnknownTargetError(target.id)
        validated = validate_target(target)
        with self._lock.write():
            existing = self._targets.get(validated.id)
            if existing is None:
                raise UnknownTargetError(validated.id)
            validated = validated.with_status(existing.status)
            self._targets[validated.id] = validated
        LOGGER.debug("store.update id=%s name=%s protocol=%s", validated.id,
                     validated.name, validated.protocol)
        return validated

    def replace_all(self, targets: Iterable[Target]) -> List[Target]:
        """Swap the whole set, skipping entries that fail validation."""

        accepted: Dict[str, Target] = {}
        for target in targets:
            try:
                validated = validate_target(target)
            except TargetValidationError as exc:
                LOGGER.warning("store.load.skipped id=%s error=%s", target.id,
                               exc)
                continue
            accepted[validated.id] = validated
        with self._lock.write():
            self._targets = accepted
        return list(accepted.values())

    def remove(self, target_id: str) -> Optional[Target]:
        with self._lock.write():
            return self._targets.pop(target_id, None)

    def get_status(self, target_id: str) -> Optional[TargetStatus]:
        with self._lock.read():
            target = self._targets.get(target_id)
            return target.status if target is not None else None

    def set_status(self, target_id: str, status: TargetStatus) -> bool:
        """Replace the status of a live target; ``False`` if it is gone."""

        with self._lock.write():
            target = self._targets.get(target_id)
            if target is None:
                return False
            self._targets[target_id] = target.with_status(status)
            return True

    def swap_status(self, target_id: str,
                    status: TargetStatus) -> Optional[TargetStatus]:
        """Store ``status`` and return the one it replaced, atomically."""

        with self._lock.write():
            target = self._targets.get(target_id)
            if target is None:
                return None
            self._targets[target_id] = target.with_status(status)
            return target.status
