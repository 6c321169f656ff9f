"""
Bandwidth allocator.

This module partitions the total bandwidth budget between the active clients.
A fixed share is held back as reserve, the remainder is split evenly with
integer arithmetic, every client is guaranteed at least the configured floor,
and the result is rejected if the leaves would oversubscribe the root class.
"""

import logging
from typing import List, Union

from models import Allocation, BandwidthPlan, ClientShare, DefaultOnlyPlan, InterfaceContext


logger = logging.getLogger(__name__)

RESERVED_PERCENT = 5
# Client ceiling as a percentage of its guaranteed rate
CEIL_PERCENT = 105


class OversubscriptionError(Exception):
    """Raised when client rates plus the default rate exceed the total budget."""
    pass


def calculate_available(total: int, reserved_percent: int = RESERVED_PERCENT) -> int:
    """
    Bandwidth left for clients after the reserve is deducted.

    Examples:
        >>> calculate_available(100)
        95
        >>> calculate_available(10, 5)
        9
    """
    return total * (100 - reserved_percent) // 100


def calculate_ceiling(rate: int, ceil_percent: int = CEIL_PERCENT) -> int:
    """
    Burst ceiling for a guaranteed rate.

    Examples:
        >>> calculate_ceiling(31)
        32
        >>> calculate_ceiling(5)
        5
    """
    return rate * ceil_percent // 100


def validate_bandwidth(rate: int, client_count: int, default_rate: int, total: int) -> None:
    """
    Check that all leaves fit under the root class.

    Raises:
        OversubscriptionError: If rate * client_count + default_rate > total
    """
    allocated = rate * client_count + default_rate
    if allocated > total:
        raise OversubscriptionError(
            f"Allocated bandwidth ({allocated} Mbit/s) exceeds total ({total} Mbit/s)"
        )


def allocate(
    total: int,
    reserved_percent: int,
    floor: int,
    default_rate: int,
    client_count: int
) -> Union[Allocation, DefaultOnlyPlan]:
    """
    Compute the per-client rate and ceiling.

    Args:
        total: Total bandwidth in Mbit/s
        reserved_percent: Percentage of total held back as reserve
        floor: Minimum guaranteed rate per client in Mbit/s
        default_rate: Rate of the default class in Mbit/s
        client_count: Number of active clients

    Returns:
        DefaultOnlyPlan when there are no clients, otherwise an Allocation

    Raises:
        OversubscriptionError: If the (possibly clamped) rates do not fit

    Examples:
        >>> a = allocate(100, 5, 5, 1, 3)
        >>> (a.rate, a.ceiling)
        (31, 32)
    """
    if client_count < 0:
        raise ValueError("client_count must be non-negative")

    if client_count == 0:
        logger.info("No active clients, using default policy")
        return DefaultOnlyPlan(default_rate=default_rate)

    # Truncation residue stays in the reserve
    rate = calculate_available(total, reserved_percent) // client_count
    floor_clamped = False

    if rate < floor:
        logger.warning(f"Client rate {rate} Mbit/s is below the floor, using floor: {floor} Mbit/s")
        rate = floor
        floor_clamped = True

    validate_bandwidth(rate, client_count, default_rate, total)

    return Allocation(
        rate=rate,
        ceiling=calculate_ceiling(rate),
        default_rate=default_rate,
        client_count=client_count,
        floor_clamped=floor_clamped,
    )


def build_plan(allocation: Allocation, clients: List[str]) -> BandwidthPlan:
    """
    Expand an allocation into per-client shares in canonical client order.

    Args:
        allocation: Result of allocate() for len(clients) clients
        clients: Canonical client set

    Returns:
        BandwidthPlan with one share per client
    """
    if len(clients) != allocation.client_count:
        raise ValueError(
            f"Allocation computed for {allocation.client_count} clients, got {len(clients)}"
        )

    shares = [
        ClientShare(address=address, rate=allocation.rate, ceiling=allocation.ceiling)
        for address in clients
    ]
    return BandwidthPlan(
        clients=shares,
        default_rate=allocation.default_rate,
        floor_clamped=allocation.floor_clamped,
    )


class BandwidthAllocator:
    """
    Allocator bound to one interface context.

    Attributes:
        context: Interface context supplying total, reserve, floor and default rate
    """

    def __init__(self, context: InterfaceContext):
        self.context = context

    def allocate(self, client_count: int) -> Union[Allocation, DefaultOnlyPlan]:
        ctx = self.context
        return allocate(ctx.total, ctx.reserved_percent, ctx.floor, ctx.default_rate, client_count)

    def plan_for(self, clients: List[str]) -> Union[BandwidthPlan, DefaultOnlyPlan]:
        """
        Allocate bandwidth for the given client set.

        Returns:
            DefaultOnlyPlan for an empty set, otherwise a BandwidthPlan

        Raises:
            OversubscriptionError: If the clients cannot all be served
        """
        result = self.allocate(len(clients))
        if isinstance(result, DefaultOnlyPlan):
            return result

        plan = build_plan(result, clients)
        logger.info(f"Client rate: {result.rate} Mbit/s, ceiling: {result.ceiling} Mbit/s, "
                    f"clients: {result.client_count}, default: {result.default_rate} Mbit/s, "
                    f"committed: {plan.committed} Mbit/s")
        return plan
