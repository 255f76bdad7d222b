"""
Local tool checks. Make sure the transfer tools exist before we pay
for a worker instance.

Checks for:
  - ssh   (device readiness probe and the privileged device write)
  - rsync (image upload)

Each check reports whether the tool is on PATH, its version, and a
platform-specific install hint.
"""

from __future__ import annotations

import platform
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional


class ToolStatus(str, Enum):
    """Status of a local tool."""
    INSTALLED = "installed"
    MISSING = "missing"


@dataclass
class ToolCheck:
    """Result of checking a single local tool."""

    name: str
    status: ToolStatus
    version: str = ""
    install_cmd: str = ""

    @property
    def installed(self) -> bool:
        """Whether the tool is installed."""
        return self.status == ToolStatus.INSTALLED


@dataclass
class PreflightResult:
    """Combined result of all tool checks."""

    checks: List[ToolCheck] = field(default_factory=list)

    @property
    def all_ok(self) -> bool:
        """True if every tool is installed."""
        return all(c.installed for c in self.checks)

    @property
    def missing(self) -> List[ToolCheck]:
        """Tools that are not installed."""
        return [c for c in self.checks if not c.installed]


# Package that provides each tool, per package manager.
_PACKAGES: Dict[str, Dict[str, str]] = {
    "ssh": {"apt": "openssh-client", "dnf": "openssh-clients", "pacman": "openssh",
            "zypper": "openssh-clients", "apk": "openssh-client", "brew": "openssh"},
    "rsync": {"apt": "rsync", "dnf": "rsync", "pacman": "rsync",
              "zypper": "rsync", "apk": "rsync", "brew": "rsync"},
}

_INSTALL_TEMPLATES = {
    "apt": "sudo apt install -y {pkg}",
    "dnf": "sudo dnf install -y {pkg}",
    "pacman": "sudo pacman -S --noconfirm {pkg}",
    "zypper": "sudo zypper install -y {pkg}",
    "apk": "sudo apk add {pkg}",
    "brew": "brew install {pkg}",
}

# Flags that print a version without side effects.
_VERSION_ARGS = {"ssh": ["-V"], "rsync": ["--version"]}


def _detect_pkg_manager() -> Optional[str]:
    """Detect the platform package manager."""
    if platform.system() == "Darwin":
        return "brew" if shutil.which("brew") else None
    for mgr in ("apt", "dnf", "pacman", "zypper", "apk"):
        if shutil.which(mgr):
            return mgr
    return None


def _version(binary: str) -> str:
    try:
        result = subprocess.run(
            [binary, *_VERSION_ARGS.get(binary, ["--version"])],
            capture_output=True, text=True, timeout=5,
        )
    except (OSError, subprocess.TimeoutExpired):
        return ""
    # ssh -V prints to stderr
    output = (result.stdout or result.stderr or "").strip()
    return output.split("\n")[0][:60]


def check_tool(name: str) -> ToolCheck:
    """Check whether one tool is on PATH.

    Args:
        name: Binary name.

    Returns:
        ToolCheck for the tool.
    """
    if shutil.which(name):
        return ToolCheck(name=name, status=ToolStatus.INSTALLED, version=_version(name))

    mgr = _detect_pkg_manager()
    install_cmd = ""
    if mgr:
        pkg = _PACKAGES.get(name, {}).get(mgr, name)
        install_cmd = _INSTALL_TEMPLATES[mgr].format(pkg=pkg)
    return ToolCheck(name=name, status=ToolStatus.MISSING, install_cmd=install_cmd)


def check_tools(tools: tuple = ("ssh", "rsync")) -> PreflightResult:
    """Run all local tool checks.

    Returns:
        PreflightResult with one ToolCheck per tool.
    """
    return PreflightResult(checks=[check_tool(t) for t in tools])
