"""
Connection sampler - queries the kernel connection-tracking table.

This module runs `conntrack -L` for every monitored (protocol, port) pair,
parses the output into ConntrackRecord objects and extracts the client
address according to the configured match direction.
"""

import subprocess
import logging
from typing import Iterable, List, Optional

from models import ConntrackRecord, Observation


logger = logging.getLogger(__name__)

FAMILY_TOKENS = ("ipv4", "ipv6")


def parse_conntrack_line(line: str) -> Optional[ConntrackRecord]:
    """
    Parse a single line of `conntrack -L` output.

    Handles both the default format and the extended format that prefixes
    the layer 3 family:
        "tcp  6 431999 ESTABLISHED src=10.0.0.5 dst=10.0.0.1 sport=51234 dport=80 src=..."
        "ipv4 2 udp 17 29 src=10.0.0.7 dst=10.0.0.1 sport=5353 dport=53 [UNREPLIED] src=..."

    Only the first occurrence of each key is used, which belongs to the
    original direction tuple.

    Args:
        line: One line of conntrack output

    Returns:
        ConntrackRecord, or None for lines that are not flow entries
    """
    parts = line.split()
    if len(parts) < 3:
        return None

    if parts[0].lower() in FAMILY_TOKENS:
        parts = parts[2:]
        if not parts:
            return None

    fields = {}
    state = None
    for token in parts[1:]:
        if "=" in token:
            key, _, value = token.partition("=")
            fields.setdefault(key, value)
        elif not fields and token.isupper() and token.replace("_", "").isalpha():
            # TCP state, e.g. ESTABLISHED or TIME_WAIT
            state = token

    if "src" not in fields or "dst" not in fields:
        return None

    def _port(value: Optional[str]) -> Optional[int]:
        return int(value) if value and value.isdigit() else None

    return ConntrackRecord(
        protocol=parts[0].lower(),
        src=fields["src"],
        dst=fields["dst"],
        sport=_port(fields.get("sport")),
        dport=_port(fields.get("dport")),
        state=state,
    )


def parse_conntrack_output(output: str) -> List[ConntrackRecord]:
    """Parse full `conntrack -L` output, skipping summary and blank lines."""
    records = []
    for line in output.splitlines():
        line = line.strip()
        if not line:
            continue
        record = parse_conntrack_line(line)
        if record is not None:
            records.append(record)
    return records


class ConnectionSampler:
    """
    Read-only sampler over the connection-tracking subsystem.

    Attributes:
        ipv6: Also query the IPv6 conntrack table
        timeout: Timeout for each conntrack invocation in seconds
    """

    def __init__(self, ipv6: bool = False, timeout: int = 5):
        self.ipv6 = ipv6
        self.timeout = timeout

    def generate_list_command(self, protocol: str, port: int, family: str = "ipv4") -> List[str]:
        """
        Generate the conntrack query for one (protocol, port) pair.

        No state filter is added, so UDP entries that never saw a reply are
        listed too.

        Returns:
            Command as list of strings
            Example: ["conntrack", "-L", "-p", "udp", "--dport", "53"]
        """
        command = ["conntrack", "-L", "-p", protocol, "--dport", str(port)]
        if family == "ipv6":
            command += ["-f", "ipv6"]
        return command

    def list_connections(self, protocol: str, port: int, family: str = "ipv4") -> List[ConntrackRecord]:
        """
        Query tracked connections for one (protocol, port) pair.

        Failures are logged and treated as "no connections".
        """
        command = self.generate_list_command(protocol, port, family)
        try:
            result = subprocess.run(
                command,
                capture_output=True,
                text=True,
                timeout=self.timeout
            )
        except FileNotFoundError:
            logger.warning("conntrack not found, no clients can be sampled")
            return []
        except subprocess.TimeoutExpired:
            logger.warning(f"Timeout executing '{' '.join(command)}'")
            return []

        if result.returncode != 0:
            logger.warning(f"conntrack query failed for {protocol}/{port} ({family}): "
                           f"{result.stderr.strip()}")
            return []

        records = parse_conntrack_output(result.stdout)
        logger.debug(f"{protocol}/{port} ({family}): {len(records)} tracked connections")
        return records

    def sample(self, protocols: Iterable[str], ports: Iterable[int], match: str) -> List[Observation]:
        """
        Sample client addresses for all monitored (protocol, port) pairs.

        Args:
            protocols: Protocols to query ("tcp", "udp")
            ports: Destination ports to query
            match: Address field to extract ("src" or "dst")

        Returns:
            Raw observations; empty when nothing matches
        """
        if match not in ("src", "dst"):
            raise ValueError(f"Invalid match direction: {match}")

        families = ["ipv4", "ipv6"] if self.ipv6 else ["ipv4"]
        ports = list(ports)
        observations = []

        for protocol in protocols:
            for port in ports:
                for family in families:
                    for record in self.list_connections(protocol, port, family):
                        observations.append(Observation(
                            protocol=protocol,
                            port=port,
                            address=record.address(match)
                        ))

        logger.info(f"Sampled {len(observations)} observations")
        return observations
