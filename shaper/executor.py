"""
Executor module - issues traffic-control commands for one interface.

This module implements tc command generation and execution for the HTB
hierarchy: root qdisc and class, leaf classes, SFQ queueing disciplines and
u32 classification filters.
"""

import subprocess
import logging
from typing import List


logger = logging.getLogger(__name__)

ROOT_HANDLE = "1:"
ROOT_CLASSID = "1:1"
DEFAULT_CLASS_ID = 9999
SFQ_PERTURB = 10
# u32 filters for different protocols need distinct priorities under one parent
FILTER_PRIO = {"ip": 1, "ipv6": 2}


class TrafficControlError(Exception):
    """Raised when a tc command that the policy depends on fails."""
    pass


def classid(class_id: int) -> str:
    """Return the full HTB class id for a minor number (e.g., 10 -> "1:10")."""
    return f"{ROOT_HANDLE}{class_id}"


class TrafficControl:
    """
    Traffic-control collaborator for a single interface.

    Builds tc command lines and runs them via subprocess. In dry-run mode
    commands are only logged and always reported as successful.

    Attributes:
        interface: Network interface name
        dry_run: Log commands instead of executing them
        timeout: Timeout for each tc invocation in seconds
        history: Commands issued so far, in order
    """

    def __init__(self, interface: str, dry_run: bool = False, timeout: int = 5):
        """
        Initialize TrafficControl.

        Args:
            interface: Network interface name (e.g., "eth0")
            dry_run: Only log commands (default: False)
            timeout: Per-command timeout in seconds (default: 5)
        """
        self.interface = interface
        self.dry_run = dry_run
        self.timeout = timeout
        self.history: List[List[str]] = []

        logger.info(f"TrafficControl initialized: interface={interface}, dry_run={dry_run}")

    def generate_qdisc_del_command(self, parent: str) -> List[str]:
        """
        Example: ["tc", "qdisc", "del", "dev", "eth0", "root"]
        """
        return ["tc", "qdisc", "del", "dev", self.interface, parent]

    def generate_root_qdisc_command(self, default_class_id: int = DEFAULT_CLASS_ID) -> List[str]:
        """
        Example: ["tc", "qdisc", "add", "dev", "eth0", "root", "handle", "1:", "htb", "default", "9999"]
        """
        return [
            "tc", "qdisc", "add", "dev", self.interface,
            "root", "handle", ROOT_HANDLE,
            "htb", "default", str(default_class_id)
        ]

    def generate_class_command(self, parent: str, class_id: str, rate: int, ceil: int) -> List[str]:
        """
        Generate an HTB class command. Rates are in Mbit/s.

        Example: ["tc", "class", "add", "dev", "eth0", "parent", "1:1", "classid", "1:10",
                  "htb", "rate", "31mbit", "ceil", "32mbit"]
        """
        return [
            "tc", "class", "add", "dev", self.interface,
            "parent", parent, "classid", class_id,
            "htb", "rate", f"{rate}mbit", "ceil", f"{ceil}mbit"
        ]

    def generate_sfq_command(self, class_id: int) -> List[str]:
        """
        Example: ["tc", "qdisc", "add", "dev", "eth0", "parent", "1:10", "handle", "10:",
                  "sfq", "perturb", "10"]
        """
        return [
            "tc", "qdisc", "add", "dev", self.interface,
            "parent", classid(class_id), "handle", f"{class_id}:",
            "sfq", "perturb", str(SFQ_PERTURB)
        ]

    def generate_filter_command(self, address: str, match: str, class_id: int) -> List[str]:
        """
        Generate a u32 filter routing one address to a class.

        IPv6 addresses are matched as /128 with the ip6 selector.

        Example: ["tc", "filter", "add", "dev", "eth0", "parent", "1:", "protocol", "ip",
                  "prio", "1", "u32", "match", "ip", "dst", "10.0.0.5", "flowid", "1:10"]
        """
        if ":" in address:
            protocol, selector, target = "ipv6", "ip6", f"{address}/128"
        else:
            protocol, selector, target = "ip", "ip", address

        return [
            "tc", "filter", "add", "dev", self.interface,
            "parent", ROOT_HANDLE, "protocol", protocol,
            "prio", str(FILTER_PRIO[protocol]),
            "u32", "match", selector, match, target,
            "flowid", classid(class_id)
        ]

    def _run(self, command: List[str], ignore_fails: bool = False) -> bool:
        """
        Execute a tc command.

        Args:
            command: Command as list of strings
            ignore_fails: Return False instead of raising on failure

        Returns:
            True if the command succeeded

        Raises:
            TrafficControlError: If the command failed and ignore_fails is False
        """
        self.history.append(command)
        cmd_str = ' '.join(command)

        if self.dry_run:
            logger.info(f"[DRY RUN] {cmd_str}")
            return True

        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError:
            error = "tc not found"
        except subprocess.TimeoutExpired:
            error = "timeout"
        else:
            if result.returncode == 0:
                logger.debug(f"Executed: {cmd_str}")
                return True
            error = result.stderr.strip() or f"exit status {result.returncode}"

        if ignore_fails:
            logger.debug(f"Ignored failure of '{cmd_str}': {error}")
            return False

        raise TrafficControlError(f"Command failed ({cmd_str}): {error}")

    def delete_root(self) -> bool:
        """Remove the root qdisc; missing qdisc is not an error."""
        return self._run(self.generate_qdisc_del_command("root"), ignore_fails=True)

    def delete_ingress(self) -> bool:
        """Remove the ingress qdisc; missing qdisc is not an error."""
        return self._run(self.generate_qdisc_del_command("ingress"), ignore_fails=True)

    def add_root_qdisc(self, default_class_id: int = DEFAULT_CLASS_ID) -> None:
        self._run(self.generate_root_qdisc_command(default_class_id))

    def add_class(self, parent: str, class_id: str, rate: int, ceil: int) -> None:
        self._run(self.generate_class_command(parent, class_id, rate, ceil))

    def add_sfq(self, class_id: int) -> None:
        self._run(self.generate_sfq_command(class_id))

    def add_filter(self, address: str, match: str, class_id: int) -> bool:
        """
        Install a classification filter.

        Returns:
            True on success, False if tc rejected the filter
        """
        return self._run(self.generate_filter_command(address, match, class_id), ignore_fails=True)
