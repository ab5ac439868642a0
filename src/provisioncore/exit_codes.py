"""
Exit code classification for the vendor tools provisioning integrates with.

Two tool families are covered:

**PACKAGE_MANAGER_TOOL** - winget. Codes are HRESULTs in the 0x8A15xxxx
facility, reported as signed 32-bit integers (0x8A150014 == -1978335212).

**INSTALLER_PACKAGE** - Windows Installer (msiexec) packages, which report
Win32 system error codes.

Classification categories:

    | Category  | Meaning                                          |
    |-----------|--------------------------------------------------|
    | SUCCESS   | Operation achieved its goal                      |
    | RETRYABLE | Transient; may succeed later or from another source |
    | FATAL     | Will not succeed without intervention            |
    | UNKNOWN   | Code is not in the table                         |

Some non-zero codes mean the goal was reached anyway ("already installed",
"reboot required"). Those are promoted to SUCCESS through an explicit
allow-list (SUCCESS_ALLOWLIST) versioned by SUCCESS_ALLOWLIST_VERSION.
Entries are never inferred; add new ones here and bump the version.

Usage:
    from provisioncore.exit_codes import ToolKind, classify

    info = classify(-1978335212, ToolKind.PACKAGE_MANAGER_TOOL)
    info.category      # ExitCategory.RETRYABLE
    info.source_miss   # True - try the next source
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, FrozenSet, Tuple

__all__ = [
    "ToolKind",
    "ExitCategory",
    "ExitCodeInfo",
    "SUCCESS_ALLOWLIST",
    "SUCCESS_ALLOWLIST_VERSION",
    "SOURCE_MISS_CODES",
    "UNKNOWN_DESCRIPTION",
    "classify",
    "describe",
    "to_signed32",
]

UNKNOWN_DESCRIPTION = "Unknown exit code"


class ToolKind(str, Enum):
    """Vendor tool family whose exit code table applies."""
    PACKAGE_MANAGER_TOOL = "package_manager"
    INSTALLER_PACKAGE = "installer_package"


class ExitCategory(str, Enum):
    """Actionable outcome of an exit code."""
    SUCCESS = "success"
    RETRYABLE = "retryable"
    FATAL = "fatal"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ExitCodeInfo:
    """Classified exit code."""
    code: int
    name: str
    description: str
    category: ExitCategory
    source_miss: bool = False

    @property
    def is_success(self) -> bool:
        return self.category == ExitCategory.SUCCESS


_S = ExitCategory.SUCCESS
_R = ExitCategory.RETRYABLE
_F = ExitCategory.FATAL

# code -> (name, description, category)
_PACKAGE_MANAGER_TABLE: Dict[int, Tuple[str, str, ExitCategory]] = {
    -1978335231: ("INTERNAL_ERROR", "Internal error", _F),
    -1978335230: ("INVALID_CL_ARGUMENTS", "Invalid command line arguments", _F),
    -1978335229: ("COMMAND_FAILED", "Executing command failed", _R),
    -1978335228: ("MANIFEST_FAILED", "Opening manifest failed", _F),
    -1978335227: ("CTRL_SIGNAL_RECEIVED", "Cancellation signal received", _F),
    -1978335226: ("SHELLEXEC_INSTALL_FAILED", "Running ShellExecute failed", _R),
    -1978335225: ("UNSUPPORTED_MANIFESTVERSION", "Manifest version is higher than supported", _F),
    -1978335224: ("DOWNLOAD_FAILED", "Downloading installer failed", _R),
    -1978335216: ("MULTIPLE_APPLICATIONS_FOUND", "Multiple packages found matching the criteria", _F),
    -1978335215: ("INSTALLER_HASH_MISMATCH", "Installer hash does not match the manifest", _R),
    -1978335212: ("NO_APPLICATIONS_FOUND", "No packages found matching the criteria", _R),
    -1978335189: ("UPDATE_NOT_APPLICABLE", "No applicable upgrade found", _S),
    -1978335135: ("PACKAGE_ALREADY_INSTALLED", "Package is already installed", _S),
    -1978334975: ("INSTALL_PACKAGE_IN_USE", "Application is currently running", _R),
    -1978334974: ("INSTALL_INSTALL_IN_PROGRESS", "Another installation is already in progress", _R),
    -1978334973: ("INSTALL_FILE_IN_USE", "One or more files are in use", _R),
    -1978334972: ("INSTALL_MISSING_DEPENDENCY", "Package has a dependency missing from the system", _F),
    -1978334971: ("INSTALL_DISK_FULL", "There is no more space on the disk", _F),
    -1978334970: ("INSTALL_INSUFFICIENT_MEMORY", "Not enough memory available to install", _R),
    -1978334969: ("INSTALL_NO_NETWORK", "Installation requires internet connectivity", _R),
    -1978334967: ("INSTALL_REBOOT_REQUIRED_TO_FINISH", "Restart required to finish installation", _S),
    -1978334966: ("INSTALL_REBOOT_REQUIRED_TO_INSTALL", "Restart required before installation", _R),
    -1978334965: ("INSTALL_REBOOT_INITIATED", "Installation succeeded; restart initiated", _S),
    -1978334964: ("INSTALL_CANCELLED_BY_USER", "Installation cancelled by user", _F),
    -1978334963: ("INSTALL_ALREADY_INSTALLED", "Another version is already installed", _S),
    -1978334962: ("INSTALL_DOWNGRADE", "A higher version is already installed", _S),
    -1978334961: ("INSTALL_BLOCKED_BY_POLICY", "Installation blocked by organization policy", _F),
    -1978334960: ("INSTALL_DEPENDENCIES", "Failed to install package dependencies", _R),
    -1978334959: ("INSTALL_PACKAGE_IN_USE_BY_APPLICATION", "Package in use by another application", _R),
    -1978334958: ("INSTALL_INVALID_PARAMETER", "Invalid parameter", _F),
    -1978334957: ("INSTALL_SYSTEM_NOT_SUPPORTED", "Package not supported by the system", _F),
}

_INSTALLER_PACKAGE_TABLE: Dict[int, Tuple[str, str, ExitCategory]] = {
    1: ("ERROR_INVALID_FUNCTION", "Incorrect function", _F),
    2: ("ERROR_FILE_NOT_FOUND", "The system cannot find the file specified", _F),
    5: ("ERROR_ACCESS_DENIED", "Access is denied", _F),
    87: ("ERROR_INVALID_PARAMETER", "One of the parameters was invalid", _F),
    1460: ("ERROR_TIMEOUT", "Operation timed out", _R),
    1601: ("ERROR_INSTALL_SERVICE_FAILURE", "Windows Installer service could not be accessed", _R),
    1602: ("ERROR_INSTALL_USEREXIT", "User cancelled installation", _F),
    1603: ("ERROR_INSTALL_FAILURE", "Fatal error during installation", _F),
    1604: ("ERROR_INSTALL_SUSPEND", "Installation suspended, incomplete", _R),
    1605: ("ERROR_UNKNOWN_PRODUCT", "Action only valid for products that are currently installed", _F),
    1612: ("ERROR_INSTALL_SOURCE_ABSENT", "Installation source for this product is not available", _R),
    1618: ("ERROR_INSTALL_ALREADY_RUNNING", "Another installation is already in progress", _R),
    1619: ("ERROR_INSTALL_PACKAGE_OPEN_FAILED", "Installation package could not be opened", _F),
    1620: ("ERROR_INSTALL_PACKAGE_INVALID", "Installation package is invalid", _F),
    1622: ("ERROR_INSTALL_LOG_FAILURE", "Error opening installation log file", _F),
    1625: ("ERROR_INSTALL_PACKAGE_REJECTED", "Installation prohibited by system policy", _F),
    1633: ("ERROR_INSTALL_PLATFORM_UNSUPPORTED", "Installation package not supported on this platform", _F),
    1638: ("ERROR_PRODUCT_VERSION", "Another version of this product is already installed", _S),
    1639: ("ERROR_INVALID_COMMAND_LINE", "Invalid command line argument", _F),
    1641: ("ERROR_SUCCESS_REBOOT_INITIATED", "Installer has initiated a restart", _S),
    3010: ("ERROR_SUCCESS_REBOOT_REQUIRED", "Restart required to complete the install", _S),
}

_TABLES: Dict[ToolKind, Dict[int, Tuple[str, str, ExitCategory]]] = {
    ToolKind.PACKAGE_MANAGER_TOOL: _PACKAGE_MANAGER_TABLE,
    ToolKind.INSTALLER_PACKAGE: _INSTALLER_PACKAGE_TABLE,
}

# Non-zero codes accepted as success. Reviewed list; bump the version when
# it changes.
SUCCESS_ALLOWLIST_VERSION = "2024.1"
SUCCESS_ALLOWLIST: Dict[ToolKind, FrozenSet[int]] = {
    ToolKind.PACKAGE_MANAGER_TOOL: frozenset({
        -1978335189,  # UPDATE_NOT_APPLICABLE
        -1978335135,  # PACKAGE_ALREADY_INSTALLED
        -1978334967,  # INSTALL_REBOOT_REQUIRED_TO_FINISH
        -1978334965,  # INSTALL_REBOOT_INITIATED
        -1978334963,  # INSTALL_ALREADY_INSTALLED
        -1978334962,  # INSTALL_DOWNGRADE
    }),
    ToolKind.INSTALLER_PACKAGE: frozenset({
        1638,  # ERROR_PRODUCT_VERSION
        1641,  # ERROR_SUCCESS_REBOOT_INITIATED
        3010,  # ERROR_SUCCESS_REBOOT_REQUIRED
    }),
}

# Retryable codes meaning "not available from this source": move on to the
# next candidate source rather than retrying the same one.
SOURCE_MISS_CODES: Dict[ToolKind, FrozenSet[int]] = {
    ToolKind.PACKAGE_MANAGER_TOOL: frozenset({
        -1978335212,  # NO_APPLICATIONS_FOUND
    }),
    ToolKind.INSTALLER_PACKAGE: frozenset({
        1612,  # ERROR_INSTALL_SOURCE_ABSENT
    }),
}


def to_signed32(code: int) -> int:
    """Normalize an unsigned 32-bit exit code (as some shells report it) to signed."""
    if code > 0x7FFFFFFF and code <= 0xFFFFFFFF:
        return code - 0x100000000
    return code


def classify(exit_code: int, table: ToolKind) -> ExitCodeInfo:
    """
    Classify an exit code against a tool family's table.

    Args:
        exit_code: Raw process exit code (signed or unsigned 32-bit)
        table: Tool family whose table applies

    Returns:
        ExitCodeInfo. Zero is always SUCCESS; unmapped codes are UNKNOWN
        with description "Unknown exit code".
    """
    code = to_signed32(exit_code)
    if code == 0:
        return ExitCodeInfo(code=0, name="SUCCESS", description="Success", category=_S)

    entry = _TABLES[table].get(code)
    if entry is None:
        return ExitCodeInfo(
            code=code,
            name="UNKNOWN",
            description=UNKNOWN_DESCRIPTION,
            category=ExitCategory.UNKNOWN,
        )

    name, description, category = entry
    if code in SUCCESS_ALLOWLIST[table]:
        category = _S
    elif category == _S:
        # Success-like table entries only count when allow-listed.
        category = _R
    return ExitCodeInfo(
        code=code,
        name=name,
        description=description,
        category=category,
        source_miss=code in SOURCE_MISS_CODES[table],
    )


def describe(exit_code: int, table: ToolKind) -> str:
    """Human-readable code with its classified description."""
    info = classify(exit_code, table)
    return f"{info.code} ({info.name}: {info.description})"
