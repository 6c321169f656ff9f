"""
Pydantic data models for Lite QoS.

These models define the per-run interface context, the typed records produced
from connection-tracking output, and the bandwidth plans handed to the policy
applier.
"""

from typing import List, Literal, Optional, Tuple, Union
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class InterfaceContext(BaseModel):
    """
    Immutable per-run configuration for one shaped interface.

    Attributes:
        interface: Network interface name (e.g., "eth0")
        match: Which conntrack address field identifies a client ("src" or "dst")
        protocols: Enabled transport protocols
        ipv6: Whether IPv6 clients are shaped as well
        ports: Monitored destination ports
        total: Total bandwidth budget in Mbit/s
        reserved_percent: Share of the total kept back as headroom
        floor: Guaranteed per-client rate in Mbit/s
        default_rate: Rate of the catch-all default class in Mbit/s
    """
    model_config = ConfigDict(frozen=True)

    interface: str = Field(..., min_length=1, description="Interface name")
    match: Literal["src", "dst"] = Field(..., description="Match direction")
    protocols: Tuple[Literal["tcp", "udp"], ...] = Field(..., min_length=1, description="Protocols")
    ipv6: bool = Field(False, description="IPv6 enabled")
    ports: Tuple[int, ...] = Field(..., min_length=1, description="Monitored ports")
    total: int = Field(..., gt=0, description="Total bandwidth (Mbit/s)")
    reserved_percent: int = Field(5, ge=0, lt=100, description="Reserved percentage")
    floor: int = Field(..., gt=0, description="Per-client floor (Mbit/s)")
    default_rate: int = Field(..., gt=0, description="Default class rate (Mbit/s)")

    @field_validator('protocols')
    @classmethod
    def dedupe_protocols(cls, v):
        """Keep the first occurrence of each protocol."""
        return tuple(dict.fromkeys(v))

    @field_validator('ports')
    @classmethod
    def validate_ports(cls, v):
        """Ports must be in 1-65535; duplicates are collapsed."""
        for port in v:
            if not 1 <= port <= 65535:
                raise ValueError(f"Invalid port: {port}")
        return tuple(sorted(set(v)))

    @model_validator(mode='after')
    def validate_default_rate(self):
        """The default class must leave room for clients under the root."""
        if self.default_rate >= self.total:
            raise ValueError("default_rate must be lower than total")
        return self


class ConntrackRecord(BaseModel):
    """
    One tracked flow parsed from `conntrack -L` output.

    Only the original direction tuple is kept; the reply tuple mirrors it.
    """
    protocol: str
    src: str
    dst: str
    sport: Optional[int] = None
    dport: Optional[int] = None
    state: Optional[str] = None

    def address(self, match: str) -> str:
        """Return the endpoint address selected by the match direction."""
        return self.src if match == "src" else self.dst


class Observation(BaseModel):
    """A raw (protocol, port, address) sample taken from connection tracking."""
    protocol: str
    port: int
    address: str


class Allocation(BaseModel):
    """
    Per-client bandwidth share computed by the allocator.

    Attributes:
        rate: Guaranteed rate per client in Mbit/s
        ceiling: Burst ceiling per client in Mbit/s
        default_rate: Rate of the default class in Mbit/s
        client_count: Number of clients the share was computed for
        floor_clamped: True when the fair share fell below the floor
    """
    rate: int = Field(..., gt=0)
    ceiling: int = Field(..., gt=0)
    default_rate: int = Field(..., gt=0)
    client_count: int = Field(..., gt=0)
    floor_clamped: bool = False


class DefaultOnlyPlan(BaseModel):
    """Plan used when no clients are active: only the default class exists."""
    default_rate: int = Field(..., gt=0)

    @property
    def default_ceiling(self) -> int:
        return self.default_rate


class ClientShare(BaseModel):
    """Rate and ceiling assigned to one client endpoint."""
    address: str
    rate: int = Field(..., gt=0)
    ceiling: int = Field(..., gt=0)


class BandwidthPlan(BaseModel):
    """
    Per-cycle bandwidth plan: ordered client shares plus the default class.

    Attributes:
        clients: Client shares in canonical client order
        default_rate: Rate of the default class in Mbit/s
        floor_clamped: True when client rates were raised to the floor
    """
    clients: List[ClientShare] = Field(..., min_length=1)
    default_rate: int = Field(..., gt=0)
    floor_clamped: bool = False

    @property
    def default_ceiling(self) -> int:
        return self.default_rate

    @property
    def committed(self) -> int:
        """Sum of guaranteed rates including the default class."""
        return sum(share.rate for share in self.clients) + self.default_rate


class ReconcileReport(BaseModel):
    """
    Outcome of one successful reconciliation cycle.

    Attributes:
        interface: Interface the policy was applied to
        clients: Canonical client set that was shaped
        plan: Applied plan (BandwidthPlan or DefaultOnlyPlan)
        failed_filters: Clients whose classification filter could not be installed
        dry_run: True when tc commands were only logged
    """
    interface: str
    clients: List[str] = Field(default_factory=list)
    plan: Union[BandwidthPlan, DefaultOnlyPlan]
    failed_filters: List[str] = Field(default_factory=list)
    dry_run: bool = False
