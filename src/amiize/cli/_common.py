"""Shared utilities for all CLI command modules.

Provides the Rich console instance, logging setup, signal handling and
the factory that wires provider wrappers into an orchestrator.
"""

from __future__ import annotations

import logging
import signal
from typing import Optional

from rich.console import Console

from ..cleanup import CleanupGuard
from ..config import RegistrationConfig
from ..models import Attempt
from ..orchestrator import PHASE_TITLES, Phase, PhaseListener, RegistrationOrchestrator
from ..providers import ComputeProvisioner, EC2Session, ImageRegistrar, StorageLifecycle
from ..transfer import SSHTransferAgent

console = Console()

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_USAGE = 2
EXIT_INTERRUPTED = 130

LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"


def configure_logging(verbose: bool = False, quiet: bool = False) -> None:
    """Configure root logging once for the process."""
    level = logging.INFO
    if verbose:
        level = logging.DEBUG
    elif quiet:
        level = logging.WARNING
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # boto's own debug output drowns ours
    for noisy in ("botocore", "boto3", "urllib3"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def _raise_interrupt(signum, frame):
    raise KeyboardInterrupt(signal.Signals(signum).name)


def install_signal_handlers() -> None:
    """Treat SIGTERM like Ctrl-C so cleanup runs before exit."""
    signal.signal(signal.SIGTERM, _raise_interrupt)


def print_phase(phase: Phase, attempt: Optional[Attempt]) -> None:
    """Print a banner for each workflow phase."""
    title = PHASE_TITLES.get(phase)
    if phase is Phase.PROVISIONING and attempt is not None:
        console.print(f"\n[bold bright_blue]Attempt {attempt.index}[/]")
    if title:
        console.print(f"[bold]* {title}[/]")


def build_orchestrator(
    config: RegistrationConfig,
    listener: Optional[PhaseListener] = print_phase,
) -> RegistrationOrchestrator:
    """Wire the EC2 wrappers and the ssh transfer agent for ``config``."""
    session = EC2Session(config.region)
    compute = ComputeProvisioner(session, device_name=config.device_name)
    storage = StorageLifecycle(session)
    registrar = ImageRegistrar(session)
    transfer = SSHTransferAgent(
        user=config.ssh_user,
        identity_file=config.ssh_identity,
        storage_dir=config.storage_dir,
    )
    return RegistrationOrchestrator(
        config,
        compute=compute,
        storage=storage,
        registrar=registrar,
        transfer=transfer,
        guard=CleanupGuard(compute, storage),
        listener=listener,
    )
