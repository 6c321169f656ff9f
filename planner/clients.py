"""
Client set builder.

Turns raw connection-tracking observations into the canonical, ordered set of
client endpoints that the allocator and policy applier work on.
"""

import logging
import re
from typing import Iterable, List, Union

from models import Observation


logger = logging.getLogger(__name__)

# Loose on purpose: digit counts only, no octet range check
IPV4_PATTERN = re.compile(r'^([0-9]{1,3}\.){3}[0-9]{1,3}$')
IPV6_PATTERN = re.compile(r'^([0-9a-fA-F:]+:+)+[0-9a-fA-F]+$')


def is_ipv4(address: str) -> bool:
    """
    Check for a dotted quad of 1-3 digit groups.

    Examples:
        >>> is_ipv4("10.0.0.5")
        True
        >>> is_ipv4("999.1.1.1")
        True
        >>> is_ipv4("10.0.0")
        False
    """
    return bool(IPV4_PATTERN.match(address))


def is_ipv6(address: str) -> bool:
    """
    Loose syntactic IPv6 check: hex-colon groups ending in a hex group.

    Examples:
        >>> is_ipv6("2001:db8::1")
        True
        >>> is_ipv6("fe80::")
        False
    """
    return bool(IPV6_PATTERN.match(address))


def build_client_set(
    observations: Iterable[Union[Observation, str]],
    ipv6_enabled: bool
) -> List[str]:
    """
    Build the canonical client set from raw observations.

    Blank and malformed entries are dropped, IPv6 addresses are dropped unless
    IPv6 is enabled, duplicates collapse, and the result is sorted
    lexicographically so class ids are assigned deterministically.

    Args:
        observations: Observation records or bare address strings
        ipv6_enabled: Whether IPv6 addresses are accepted

    Returns:
        Sorted list of unique client addresses
    """
    accepted = set()
    dropped = 0

    for item in observations:
        address = item.address if isinstance(item, Observation) else item
        address = (address or "").strip()
        if not address:
            continue

        if is_ipv4(address) or (ipv6_enabled and is_ipv6(address)):
            accepted.add(address)
        else:
            dropped += 1

    if dropped:
        logger.debug(f"Discarded {dropped} observations with unsupported addresses")

    clients = sorted(accepted)
    logger.info(f"Clients found: {len(clients)}")
    return clients
