"""
Main reconciliation program for Lite QoS.

This module runs preflight checks and one reconciliation cycle:
sample connections, build the client set, allocate bandwidth and apply the
HTB policy. It is meant to be invoked periodically by an external timer.
"""

import logging
import sys
from typing import Optional

from config.parser import DEFAULT_CONFIG_PATH, DEFAULT_LOG_FILE, ConfigurationError, QosConfig
from models import InterfaceContext, ReconcileReport
from planner.allocator import BandwidthAllocator, OversubscriptionError
from planner.clients import build_client_set
from shaper.conntrack import ConnectionSampler
from shaper.executor import TrafficControl, TrafficControlError
from shaper.host import HostInspector
from shaper.policy import PolicyApplier


logger = logging.getLogger(__name__)

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
SHAPING_MODULE = "sch_htb"
IPV6_FILTER_MODULE = "ip6_tables"


class PreflightError(Exception):
    """Raised when the host cannot support the requested shaping policy."""
    pass


class Reconciler:
    """
    Reconciliation driver for one interface.

    Sequences sampling, client set building, allocation and policy
    application. Any fatal condition is raised as an exception; warnings are
    logged and the cycle continues.

    Attributes:
        context: Immutable interface context
        sampler: Connection-tracking sampler
        tc: Traffic-control collaborator
        inspector: Host introspection used by preflight checks
        allow_restricted: Proceed when conntrack files under /proc/net are unreadable
    """

    def __init__(
        self,
        context: InterfaceContext,
        sampler: Optional[ConnectionSampler] = None,
        tc: Optional[TrafficControl] = None,
        inspector: Optional[HostInspector] = None,
        allow_restricted: bool = False
    ):
        self.context = context
        self.sampler = sampler or ConnectionSampler(ipv6=context.ipv6)
        self.tc = tc or TrafficControl(context.interface)
        self.inspector = inspector or HostInspector()
        self.allow_restricted = allow_restricted

        self.allocator = BandwidthAllocator(context)
        self.applier = PolicyApplier(self.tc, context.total, context.match)

        logger.info(f"Reconciler initialized: interface={context.interface}, "
                    f"match={context.match}, protocols={list(context.protocols)}, "
                    f"ports={list(context.ports)}, ipv6={context.ipv6}")

    def check_preflight(self) -> None:
        """
        Verify host prerequisites before touching any state.

        Raises:
            PreflightError: If a required module or route is missing, or
                conntrack access is restricted without explicit confirmation
        """
        if not self.inspector.module_loadable(SHAPING_MODULE):
            raise PreflightError(f"Kernel module {SHAPING_MODULE} cannot be loaded")

        if self.context.ipv6:
            if not self.inspector.has_default_route("ipv6"):
                raise PreflightError("IPv6 is not configured: no IPv6 default route")
            if not self.inspector.module_loadable(IPV6_FILTER_MODULE):
                raise PreflightError(f"Kernel module {IPV6_FILTER_MODULE} cannot be loaded")
            if not self.inspector.has_command("ip6tables"):
                logger.warning("ip6tables is not installed; advanced IPv6 filtering is unavailable")

        unreadable = self.inspector.unreadable_paths()
        if unreadable:
            message = f"Restricted access to conntrack data: {', '.join(unreadable)}"
            if not self.allow_restricted:
                raise PreflightError(
                    f"{message}. Set conntrack.allow_restricted to proceed anyway"
                )
            logger.warning(f"{message}; client discovery may be incomplete")

    def run_once(self) -> ReconcileReport:
        """
        Run one full reconciliation cycle.

        Returns:
            ReconcileReport describing the applied policy

        Raises:
            PreflightError: If preflight checks fail
            OversubscriptionError: If the clients cannot all be served
            TrafficControlError: If the HTB tree could not be created
        """
        ctx = self.context
        self.check_preflight()

        logger.info("Collecting clients...")
        observations = self.sampler.sample(ctx.protocols, ctx.ports, ctx.match)
        clients = build_client_set(observations, ctx.ipv6)

        plan = self.allocator.plan_for(clients)
        _, failed_filters = self.applier.apply(plan)

        logger.info("Setup completed successfully!")
        return ReconcileReport(
            interface=ctx.interface,
            clients=clients,
            plan=plan,
            failed_filters=failed_filters,
            dry_run=self.tc.dry_run,
        )


def configure_logging(log_file: Optional[str] = None, level: str = "INFO") -> None:
    """
    Configure console logging plus an optional durable log file.

    An unwritable log file is reported and skipped.
    """
    handlers = [logging.StreamHandler()]
    file_error = None
    if log_file:
        try:
            handlers.append(logging.FileHandler(log_file))
        except OSError as e:
            file_error = e

    logging.basicConfig(
        level=getattr(logging, level, logging.INFO),
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )

    if file_error is not None:
        logger.warning(f"Cannot open log file {log_file}: {file_error}")


def main(argv=None) -> int:
    """
    Main entry point.

    Usage: python -m shaper.main --non-interactive [--dry-run] [config_file]

    Returns:
        Process exit status: 0 on success, 1 on any fatal error
    """
    args = list(sys.argv[1:] if argv is None else argv)
    non_interactive = "--non-interactive" in args
    dry_run = "--dry-run" in args
    positional = [a for a in args if not a.startswith("--")]
    config_file = positional[0] if positional else DEFAULT_CONFIG_PATH

    if not non_interactive:
        configure_logging(DEFAULT_LOG_FILE)
        logger.error("Interactive setup is not available; "
                     "usage: python -m shaper.main --non-interactive [--dry-run] [config_file]")
        return 1

    try:
        config = QosConfig.from_file(config_file)
    except ConfigurationError as e:
        configure_logging(DEFAULT_LOG_FILE)
        logger.error(f"Configuration not found or invalid: {e}")
        return 1

    configure_logging(config.log_file, config.log_level)

    try:
        context = config.to_context()
        reconciler = Reconciler(
            context,
            tc=TrafficControl(context.interface, dry_run=dry_run),
            allow_restricted=config.allow_restricted_conntrack
        )
        reconciler.run_once()
    except (ConfigurationError, PreflightError, OversubscriptionError, TrafficControlError) as e:
        logger.error(f"Error: {e}")
        return 1

    return 0


if __name__ == "__main__":
    sys.exit(main())
