"""
Host introspection for preflight checks.

Answers questions about the host that decide whether shaping can run:
loadable kernel modules, default routes, installed utilities and access to
the connection-tracking files under /proc/net.
"""

import logging
import os
import shutil
import subprocess
from typing import Iterable, List


logger = logging.getLogger(__name__)

CONNTRACK_PROC_FILES = ("/proc/net/nf_conntrack", "/proc/net/ip_tables_names")


class HostInspector:
    """
    Read-only view of host capabilities.

    Attributes:
        timeout: Timeout for each probe command in seconds
    """

    def __init__(self, timeout: int = 5):
        self.timeout = timeout

    def _probe(self, command: List[str]) -> subprocess.CompletedProcess:
        return subprocess.run(command, capture_output=True, text=True, timeout=self.timeout)

    def module_loadable(self, module: str) -> bool:
        """Check whether `modprobe -n -v <module>` would succeed."""
        try:
            result = self._probe(["modprobe", "-n", "-v", module])
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"modprobe check for {module} failed: {e}")
            return False
        return result.returncode == 0

    def has_default_route(self, family: str = "ipv4") -> bool:
        """
        Check for a default route in the given address family.

        `ip route show default` exits 0 even with no route, so the output
        must be non-empty as well.
        """
        command = ["ip", "-6", "route", "show", "default"] if family == "ipv6" \
            else ["ip", "route", "show", "default"]
        try:
            result = self._probe(command)
        except (FileNotFoundError, subprocess.TimeoutExpired) as e:
            logger.debug(f"Default route check ({family}) failed: {e}")
            return False
        return result.returncode == 0 and bool(result.stdout.strip())

    def has_command(self, name: str) -> bool:
        return shutil.which(name) is not None

    def unreadable_paths(self, paths: Iterable[str] = CONNTRACK_PROC_FILES) -> List[str]:
        """Return the paths that cannot be read by this process."""
        return [path for path in paths if not os.access(path, os.R_OK)]
