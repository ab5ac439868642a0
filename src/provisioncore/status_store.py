"""
Durable status store for provisioning steps.

Step outcomes must survive crashes and reboots, so every write is flushed to
the backing medium before write() returns. The store is a hierarchical
key/value tree:

    <root>/Steps/<StepName>/Status        = "Success" | "Failed" | "Skipped" | "Running"
    <root>/Steps/<StepName>/Timestamp     = "YYYY-MM-DD HH:MM:SS"
    <root>/Steps/<StepName>/ExitCode      = <int32>   (optional)
    <root>/Steps/<StepName>/ErrorMessage  = <string>  (optional)
    <root>/Steps/<StepName>/Version       = <string>  (optional)
    <root>/AppRecord/<AppName>            = <version string>

Backends:
- FileTreeBackend: one directory per key, one file per value. Each value is
  replaced atomically (temp file + fsync + rename), so concurrent readers see
  either the old or the new value of a field, never a torn one.
- MemoryTreeBackend: in-process dict, for tests and dry runs.
- RegistryTreeBackend: Windows registry under HKEY_LOCAL_MACHINE.

There is a single writer (the orchestrator); no cross-process locking is
used because writes are single-key and last-write-wins.
"""

from __future__ import annotations

import csv
import logging
import os
import re
import shutil
import sys
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Tuple, Union

from provisioncore.errors import ConfigurationError, PersistenceError, RecordNotFound
from provisioncore.exit_codes import to_signed32

logger = logging.getLogger(__name__)

__all__ = [
    "StepStatus",
    "StepRecord",
    "ALLOWED_TRANSITIONS",
    "TIMESTAMP_FORMAT",
    "TreeBackend",
    "FileTreeBackend",
    "MemoryTreeBackend",
    "RegistryTreeBackend",
    "StatusStore",
    "validate_key_name",
]

TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

STEPS_KEY = "Steps"
APPS_KEY = "AppRecord"

FIELD_STATUS = "Status"
FIELD_TIMESTAMP = "Timestamp"
FIELD_EXIT_CODE = "ExitCode"
FIELD_ERROR_MESSAGE = "ErrorMessage"
FIELD_VERSION = "Version"

_KEY_NAME_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9 _.\-]*$")

Value = Union[str, int]
KeyPath = Tuple[str, ...]


class StepStatus(str, Enum):
    """Status values for provisioning steps."""
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCESS = "Success"
    FAILED = "Failed"
    SKIPPED = "Skipped"


# Forward-only transitions within a single run.
ALLOWED_TRANSITIONS: Dict[StepStatus, frozenset] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.SUCCESS, StepStatus.FAILED}),
    StepStatus.SUCCESS: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


def validate_key_name(name: str) -> str:
    """
    Check that a step or app name is usable as a single tree key.

    Raises:
        ConfigurationError: If the name is empty or contains path separators
    """
    if not isinstance(name, str) or not _KEY_NAME_RE.match(name) or name.endswith("."):
        raise ConfigurationError(
            f"Invalid key name {name!r}: use letters, digits, space, '_', '-' or '.'"
        )
    return name


@dataclass(frozen=True)
class StepRecord:
    """Persisted outcome of a step."""
    step_name: str
    status: StepStatus
    timestamp: Optional[str] = None
    exit_code: Optional[int] = None
    error_message: Optional[str] = None
    version: Optional[str] = None

    CSV_FIELDS = ("StepName", "Status", "Timestamp", "ExitCode", "ErrorMessage", "Version")

    def to_dict(self) -> Dict[str, Optional[Union[str, int]]]:
        return {
            "step_name": self.step_name,
            "status": self.status.value,
            "timestamp": self.timestamp,
            "exit_code": self.exit_code,
            "error_message": self.error_message,
            "version": self.version,
        }

    def to_csv_row(self) -> List[str]:
        return [
            self.step_name,
            self.status.value,
            self.timestamp or "",
            "" if self.exit_code is None else str(self.exit_code),
            self.error_message or "",
            self.version or "",
        ]


# =============================================================================
# Backends
# =============================================================================


class TreeBackend(ABC):
    """Typed hierarchical key/value persistence."""

    @abstractmethod
    def set_value(self, path: KeyPath, name: str, value: Value) -> None:
        """Durably write a value; must be flushed before returning."""

    @abstractmethod
    def get_values(self, path: KeyPath) -> Dict[str, Value]:
        """Read all values of a key. Raises RecordNotFound if the key is absent."""

    @abstractmethod
    def delete_value(self, path: KeyPath, name: str) -> None:
        """Remove a value if present."""

    @abstractmethod
    def list_keys(self, path: KeyPath) -> List[str]:
        """Names of the subkeys of a key (empty if the key is absent)."""

    @abstractmethod
    def delete_tree(self, path: KeyPath) -> None:
        """Remove a key and everything below it, if present."""


class MemoryTreeBackend(TreeBackend):
    """Dict-backed tree; nothing survives the process."""

    def __init__(self) -> None:
        self._keys: Dict[KeyPath, Dict[str, Value]] = {}

    def set_value(self, path: KeyPath, name: str, value: Value) -> None:
        for i in range(1, len(path) + 1):
            self._keys.setdefault(path[:i], {})
        self._keys[path][name] = value

    def get_values(self, path: KeyPath) -> Dict[str, Value]:
        if path not in self._keys:
            raise RecordNotFound("/".join(path))
        return dict(self._keys[path])

    def delete_value(self, path: KeyPath, name: str) -> None:
        self._keys.get(path, {}).pop(name, None)

    def list_keys(self, path: KeyPath) -> List[str]:
        depth = len(path) + 1
        return sorted(k[-1] for k in self._keys if len(k) == depth and k[: len(path)] == path)

    def delete_tree(self, path: KeyPath) -> None:
        for key in [k for k in self._keys if k[: len(path)] == path]:
            del self._keys[key]


class FileTreeBackend(TreeBackend):
    """
    Directory tree under `root`; each value is a UTF-8 text file.

    Args:
        root: Root directory of the tree (created on first write)
    """

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root)

    def _dir(self, path: KeyPath) -> Path:
        return self.root.joinpath(*path)

    def set_value(self, path: KeyPath, name: str, value: Value) -> None:
        directory = self._dir(path)
        try:
            directory.mkdir(parents=True, exist_ok=True)
            fd, temp_path = tempfile.mkstemp(dir=directory, prefix=f".{name}-", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    f.write(str(value))
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(temp_path, directory / name)
            except BaseException:
                if os.path.exists(temp_path):
                    os.unlink(temp_path)
                raise
            self._fsync_dir(directory)
        except OSError as e:
            raise PersistenceError(f"Cannot write {directory / name}: {e}") from e

    @staticmethod
    def _fsync_dir(directory: Path) -> None:
        # Directory fsync persists the rename; not supported on Windows.
        if sys.platform == "win32":
            return
        dir_fd = os.open(directory, os.O_RDONLY)
        try:
            os.fsync(dir_fd)
        finally:
            os.close(dir_fd)

    def get_values(self, path: KeyPath) -> Dict[str, Value]:
        directory = self._dir(path)
        if not directory.is_dir():
            raise RecordNotFound("/".join(path))
        values: Dict[str, Value] = {}
        try:
            for entry in directory.iterdir():
                if entry.is_file() and not entry.name.startswith("."):
                    values[entry.name] = entry.read_text(encoding="utf-8")
        except OSError as e:
            raise PersistenceError(f"Cannot read {directory}: {e}") from e
        return values

    def delete_value(self, path: KeyPath, name: str) -> None:
        try:
            (self._dir(path) / name).unlink(missing_ok=True)
        except OSError as e:
            raise PersistenceError(f"Cannot delete {self._dir(path) / name}: {e}") from e

    def list_keys(self, path: KeyPath) -> List[str]:
        directory = self._dir(path)
        if not directory.is_dir():
            return []
        try:
            return sorted(p.name for p in directory.iterdir() if p.is_dir())
        except OSError as e:
            raise PersistenceError(f"Cannot list {directory}: {e}") from e

    def delete_tree(self, path: KeyPath) -> None:
        directory = self._dir(path)
        if not directory.exists():
            return
        try:
            shutil.rmtree(directory)
        except OSError as e:
            raise PersistenceError(f"Cannot delete {directory}: {e}") from e


class RegistryTreeBackend(TreeBackend):
    """
    Windows registry tree under HKEY_LOCAL_MACHINE\\<root>.

    Integers are stored as REG_DWORD, strings as REG_SZ. Registry writes are
    flushed with FlushKey before returning.
    """

    def __init__(self, root: str):
        if sys.platform != "win32":
            raise ConfigurationError("Registry backend is only available on Windows")
        import winreg

        self._winreg = winreg
        self.root = root

    def _subkey(self, path: KeyPath) -> str:
        return "\\".join((self.root,) + tuple(path))

    def set_value(self, path: KeyPath, name: str, value: Value) -> None:
        winreg = self._winreg
        try:
            with winreg.CreateKeyEx(
                winreg.HKEY_LOCAL_MACHINE, self._subkey(path), 0, winreg.KEY_WRITE
            ) as key:
                if isinstance(value, int):
                    winreg.SetValueEx(key, name, 0, winreg.REG_DWORD, value & 0xFFFFFFFF)
                else:
                    winreg.SetValueEx(key, name, 0, winreg.REG_SZ, value)
                winreg.FlushKey(key)
        except OSError as e:
            raise PersistenceError(f"Cannot write registry value {self._subkey(path)}\\{name}: {e}") from e

    def get_values(self, path: KeyPath) -> Dict[str, Value]:
        winreg = self._winreg
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, self._subkey(path)) as key:
                values: Dict[str, Value] = {}
                index = 0
                while True:
                    try:
                        name, data, kind = winreg.EnumValue(key, index)
                    except OSError:
                        break
                    values[name] = to_signed32(data) if kind == winreg.REG_DWORD else data
                    index += 1
                return values
        except FileNotFoundError:
            raise RecordNotFound("/".join(path))
        except OSError as e:
            raise PersistenceError(f"Cannot read registry key {self._subkey(path)}: {e}") from e

    def delete_value(self, path: KeyPath, name: str) -> None:
        winreg = self._winreg
        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, self._subkey(path), 0, winreg.KEY_SET_VALUE
            ) as key:
                winreg.DeleteValue(key, name)
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(f"Cannot delete registry value {name}: {e}") from e

    def list_keys(self, path: KeyPath) -> List[str]:
        winreg = self._winreg
        try:
            with winreg.OpenKey(winreg.HKEY_LOCAL_MACHINE, self._subkey(path)) as key:
                names = []
                index = 0
                while True:
                    try:
                        names.append(winreg.EnumKey(key, index))
                    except OSError:
                        break
                    index += 1
                return sorted(names)
        except FileNotFoundError:
            return []
        except OSError as e:
            raise PersistenceError(f"Cannot list registry key {self._subkey(path)}: {e}") from e

    def delete_tree(self, path: KeyPath) -> None:
        for child in self.list_keys(path):
            self.delete_tree(path + (child,))
        try:
            self._winreg.DeleteKey(self._winreg.HKEY_LOCAL_MACHINE, self._subkey(path))
        except FileNotFoundError:
            return
        except OSError as e:
            raise PersistenceError(f"Cannot delete registry key {self._subkey(path)}: {e}") from e


# =============================================================================
# Store
# =============================================================================


class StatusStore:
    """
    Per-step status records on top of a TreeBackend.

    Args:
        backend: Persistence medium
        clock: Wall clock used for record timestamps
    """

    def __init__(
        self,
        backend: TreeBackend,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.backend = backend
        self._clock = clock

    @classmethod
    def from_config(cls, config) -> "StatusStore":
        """Create a store for the backend named in a ProvisionConfig."""
        if config.store_backend == "memory":
            backend: TreeBackend = MemoryTreeBackend()
        elif config.store_backend == "registry":
            backend = RegistryTreeBackend(config.registry_root)
        else:
            backend = FileTreeBackend(config.get_state_path())
        return cls(backend)

    def write(
        self,
        step_name: str,
        status: StepStatus,
        exit_code: Optional[int] = None,
        error_message: Optional[str] = None,
        version: Optional[str] = None,
    ) -> StepRecord:
        """
        Write a step's record, replacing any previous one.

        Optional fields that are not supplied are removed so the stored record
        always equals the latest write. Status is written last so a reader
        that sees the new status also sees the new detail fields.

        Raises:
            PersistenceError: If the backend rejects the write
        """
        validate_key_name(step_name)
        status = StepStatus(status)
        timestamp = self._clock().strftime(TIMESTAMP_FORMAT)
        path = (STEPS_KEY, step_name)

        optional: Dict[str, Optional[Value]] = {
            FIELD_EXIT_CODE: exit_code,
            FIELD_ERROR_MESSAGE: error_message,
            FIELD_VERSION: version,
        }
        for name, value in optional.items():
            if value is None:
                self.backend.delete_value(path, name)
            else:
                self.backend.set_value(path, name, value)
        self.backend.set_value(path, FIELD_TIMESTAMP, timestamp)
        self.backend.set_value(path, FIELD_STATUS, status.value)

        logger.debug("Recorded %s=%s (exit_code=%s)", step_name, status.value, exit_code)
        return StepRecord(
            step_name=step_name,
            status=status,
            timestamp=timestamp,
            exit_code=exit_code,
            error_message=error_message,
            version=version,
        )

    def read(self, step_name: str) -> StepRecord:
        """
        Read a step's record.

        Raises:
            RecordNotFound: If no record exists
            PersistenceError: If the backend cannot be read
        """
        values = self.backend.get_values((STEPS_KEY, step_name))
        if FIELD_STATUS not in values:
            raise RecordNotFound(step_name)
        return self._to_record(step_name, values)

    def get(self, step_name: str) -> Optional[StepRecord]:
        """Like read(), but returns None when there is no record."""
        try:
            return self.read(step_name)
        except RecordNotFound:
            return None

    @staticmethod
    def _to_record(step_name: str, values: Dict[str, Value]) -> StepRecord:
        raw_code = values.get(FIELD_EXIT_CODE)
        exit_code: Optional[int] = None
        if raw_code is not None and str(raw_code).strip() != "":
            try:
                exit_code = to_signed32(int(raw_code))
            except ValueError:
                logger.warning("Ignoring malformed exit code %r for %s", raw_code, step_name)
        try:
            status = StepStatus(str(values[FIELD_STATUS]))
        except ValueError:
            raise PersistenceError(
                f"Unrecognized status {values[FIELD_STATUS]!r} for {step_name}"
            )
        return StepRecord(
            step_name=step_name,
            status=status,
            timestamp=_opt_str(values.get(FIELD_TIMESTAMP)),
            exit_code=exit_code,
            error_message=_opt_str(values.get(FIELD_ERROR_MESSAGE)),
            version=_opt_str(values.get(FIELD_VERSION)),
        )

    def read_all(self, order: Optional[Sequence[str]] = None) -> List[StepRecord]:
        """
        All step records.

        Args:
            order: Pipeline order; listed names come first in that order,
                remaining records follow sorted by name

        Raises:
            PersistenceError: If the backend cannot be read
        """
        names = self.backend.list_keys((STEPS_KEY,))
        rank = {name: i for i, name in enumerate(order or [])}
        names.sort(key=lambda n: (rank.get(n, len(rank)), n))

        records = []
        for name in names:
            record = self.get(name)
            if record is not None:
                records.append(record)
        return records

    def clear(self, dry_run: bool = False) -> List[str]:
        """
        Remove all step records (explicit operator action).

        Args:
            dry_run: Only report what would be removed

        Returns:
            Names of the removed (or to-be-removed) step records
        """
        names = self.backend.list_keys((STEPS_KEY,))
        if dry_run:
            logger.info("Dry run: would clear %d step record(s)", len(names))
            return names
        self.backend.delete_tree((STEPS_KEY,))
        logger.info("Cleared %d step record(s)", len(names))
        return names

    def record_app(self, app_name: str, version: str) -> bool:
        """
        Record a successfully installed app version in the AppRecord ledger.

        Returns:
            False if this version was already recorded (no write performed)
        """
        validate_key_name(app_name)
        current = self.read_apps().get(app_name)
        if current == version:
            return False
        self.backend.set_value((APPS_KEY,), app_name, version)
        logger.info("Recorded %s version %s", app_name, version)
        return True

    def read_apps(self) -> Dict[str, str]:
        """AppRecord ledger as {app name: version}."""
        try:
            values = self.backend.get_values((APPS_KEY,))
        except RecordNotFound:
            return {}
        return {k: str(v) for k, v in values.items()}

    def export_csv(self, path: Union[str, Path], order: Optional[Sequence[str]] = None) -> int:
        """
        Write all step records to a CSV file.

        Returns:
            Number of records written
        """
        records = self.read_all(order)
        out = Path(path)
        out.parent.mkdir(parents=True, exist_ok=True)
        with open(out, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(StepRecord.CSV_FIELDS)
            for record in records:
                writer.writerow(record.to_csv_row())
        return len(records)


def _opt_str(value: Optional[Value]) -> Optional[str]:
    if value is None:
        return None
    return str(value)
