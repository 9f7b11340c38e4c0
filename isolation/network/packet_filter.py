"""
Packet Filter - host firewall chains for sandbox networks.

Each sandbox network gets its own iptables chain, jumped to from the
DOCKER-USER chain for traffic sourced from or destined to the network's
subnet. A chain always ends with a DROP so that anything not explicitly
allowed is denied. Rule sets are swapped in with a single
`iptables-restore --noflush` transaction, so a chain is never observed
without its DROP while a policy changes.

When iptables is missing or not usable (no root, no sudo) the filter runs
in an unavailable mode: a warning is logged once and chain operations
become no-ops. Policies are still recorded and evaluated in-process by
NetworkIsolationManager.check_traffic().
"""

import hashlib
import logging
import os
import shutil
import subprocess
import threading
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from ..constants import NetworkDefaults, Timeouts
from ..errors import ExternalToolError
from .models import Direction, NetworkRule, Protocol, RuleAction

logger = logging.getLogger(__name__)


def chain_name(network_id: str) -> str:
    """Stable chain name for a network (iptables limits names to 28 chars)."""
    digest = hashlib.sha256(network_id.encode()).hexdigest()[:16].upper()
    return f"{NetworkDefaults.CHAIN_PREFIX}{digest}"


class PacketFilter(ABC):
    """Backend that installs per-network filter chains."""

    @property
    @abstractmethod
    def is_available(self) -> bool:
        ...

    @abstractmethod
    def create_chain(self, chain: str, subnet: str) -> None:
        """Create `chain`, hook it for `subnet` and install the base DROP."""

    @abstractmethod
    def load_rules(self, chain: str, subnet: str,
                   entries: List[Tuple[Direction, NetworkRule]]) -> None:
        """Atomically replace the contents of `chain` with `entries` then DROP."""

    @abstractmethod
    def delete_chain(self, chain: str, subnet: str) -> None:
        """Unhook, flush and delete `chain`. Never raises."""

    def get_capabilities(self) -> Dict[str, Any]:
        return {'backend': 'none', 'available': self.is_available}


_TARGETS = {
    RuleAction.ALLOW: 'ACCEPT',
    RuleAction.DENY: 'DROP',
    RuleAction.LOG: 'LOG',
}


def _restore_quote(arg: str) -> str:
    """Quote an argument for an iptables-restore rule line."""
    if arg and not any(c.isspace() or c == '"' for c in arg):
        return arg
    return '"' + arg.replace('"', '') + '"'


class IptablesPacketFilter(PacketFilter):
    """
    PacketFilter backed by the iptables CLI.

    Args:
        use_sudo: Prefix every iptables call with `sudo -n`
        parent_chain: Chain the per-network chains are jumped from
    """

    def __init__(self, use_sudo: bool = NetworkDefaults.USE_SUDO,
                 parent_chain: str = NetworkDefaults.PARENT_CHAIN):
        self._use_sudo = use_sudo
        self._parent_chain = parent_chain
        self._lock = threading.Lock()
        self._has_root = os.geteuid() == 0 if os.name == 'posix' else False
        self._available = self._detect_backend()

        if not self._available:
            logger.warning(
                "iptables not available; sandbox network policies will be "
                "recorded but not enforced on the host"
            )

    def _base_command(self, binary: str = 'iptables') -> List[str]:
        if self._use_sudo and not self._has_root:
            return ['sudo', '-n', binary]
        return [binary]

    def _detect_backend(self) -> bool:
        """Check that iptables exists and can list rules."""
        if os.name != 'posix' or not shutil.which('iptables'):
            return False
        if not self._has_root and not self._use_sudo:
            return False

        try:
            result = subprocess.run(
                self._base_command() + ['-L', '-n'],
                capture_output=True,
                timeout=Timeouts.SUBPROCESS_SHORT,
            )
            return result.returncode == 0
        except (subprocess.TimeoutExpired, OSError):
            return False

    @property
    def is_available(self) -> bool:
        return self._available

    def get_capabilities(self) -> Dict[str, Any]:
        return {
            'backend': 'iptables' if self._available else 'none',
            'available': self._available,
            'has_root': self._has_root,
            'use_sudo': self._use_sudo,
            'parent_chain': self._parent_chain,
        }

    def _run_iptables(self, args: List[str], ignore_errors: bool = False,
                      binary: str = 'iptables',
                      stdin: Optional[str] = None) -> Optional[subprocess.CompletedProcess]:
        """Run an iptables command; raises ExternalToolError unless ignore_errors."""
        if not self._available:
            logger.debug(f"iptables unavailable, skipping: {binary} {' '.join(args)}")
            return None

        cmd = self._base_command(binary) + args
        logger.debug(f"Running: {' '.join(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                input=stdin,
                capture_output=True,
                text=True,
                timeout=Timeouts.SUBPROCESS_DEFAULT,
            )
        except (subprocess.TimeoutExpired, OSError) as e:
            if ignore_errors:
                return None
            raise ExternalToolError(cmd, None, str(e)) from e

        if result.returncode != 0 and not ignore_errors:
            raise ExternalToolError(cmd, result.returncode, result.stderr)

        return result

    def create_chain(self, chain: str, subnet: str) -> None:
        with self._lock:
            # DOCKER-USER only exists once docker has started; podman needs it created
            self._run_iptables(['-N', self._parent_chain], ignore_errors=True)
            self._run_iptables(['-N', chain], ignore_errors=True)
            self._run_iptables(['-F', chain])
            # DROP before the jumps so the hooked chain is never empty
            self._run_iptables(['-A', chain, '-j', 'DROP'])
            self._run_iptables(['-I', self._parent_chain, '-s', subnet, '-j', chain])
            self._run_iptables(['-I', self._parent_chain, '-d', subnet, '-j', chain])

        logger.debug(f"Created filter chain {chain} for {subnet}")

    def build_rule_args(self, chain: str, subnet: str, direction: Direction,
                        rule: NetworkRule) -> List[str]:
        """Translate a NetworkRule into `iptables -A` arguments."""
        args = ['-A', chain]

        if direction == Direction.OUTBOUND:
            source = rule.source_host or subnet
            destination = rule.destination_host
        else:
            source = rule.source_host
            destination = rule.destination_host or subnet

        if rule.protocol != Protocol.ALL:
            args.extend(['-p', rule.protocol.value])
        if source:
            args.extend(['-s', source])
        if destination:
            args.extend(['-d', destination])

        # Port matches require a tcp/udp protocol match
        if rule.protocol in (Protocol.TCP, Protocol.UDP):
            if rule.source_port is not None:
                args.extend(['--sport', str(rule.source_port)])
            if rule.destination_port is not None:
                args.extend(['--dport', str(rule.destination_port)])

        args.extend(['-m', 'comment', '--comment', rule.id[:200]])
        args.extend(['-j', _TARGETS[rule.action]])
        if rule.action == RuleAction.LOG:
            args.extend(['--log-prefix', f'[{chain}] '])
        return args

    def build_restore_input(self, chain: str, subnet: str,
                            entries: List[Tuple[Direction, NetworkRule]]) -> str:
        """
        iptables-restore input that redefines `chain`.

        With --noflush only the declared chain is flushed, and the flush and
        the new rules take effect together at COMMIT.
        """
        lines = ['*filter', f':{chain} - [0:0]']
        for direction, rule in entries:
            args = self.build_rule_args(chain, subnet, direction, rule)
            lines.append(' '.join(_restore_quote(arg) for arg in args))
        lines.append(f'-A {chain} -j DROP')
        lines.append('COMMIT')
        return '\n'.join(lines) + '\n'

    def load_rules(self, chain: str, subnet: str,
                   entries: List[Tuple[Direction, NetworkRule]]) -> None:
        restore_input = self.build_restore_input(chain, subnet, entries)
        with self._lock:
            self._run_iptables(['--noflush'], binary='iptables-restore', stdin=restore_input)

    def delete_chain(self, chain: str, subnet: str) -> None:
        with self._lock:
            self._run_iptables(
                ['-D', self._parent_chain, '-s', subnet, '-j', chain],
                ignore_errors=True,
            )
            self._run_iptables(
                ['-D', self._parent_chain, '-d', subnet, '-j', chain],
                ignore_errors=True,
            )
            self._run_iptables(['-F', chain], ignore_errors=True)
            self._run_iptables(['-X', chain], ignore_errors=True)

        logger.debug(f"Deleted filter chain {chain}")
