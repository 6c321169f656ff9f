"""
Shared test doubles for the traffic-control, conntrack and host collaborators.

The doubles subclass the real collaborators and replace only the subprocess
seam, so command generation and the surrounding logic stay under test.
"""

from typing import Dict, List, Tuple

import pytest
from hypothesis import HealthCheck, settings

from shaper.conntrack import ConnectionSampler
from shaper.executor import TrafficControl, TrafficControlError
from shaper.host import HostInspector

# The first st.text() draw builds Hypothesis' unicode charmap cache, which can
# trip the too_slow health check on a clean checkout.
settings.register_profile("default", suppress_health_check=[HealthCheck.too_slow])
settings.load_profile("default")


class FakeTrafficControl(TrafficControl):
    """
    TrafficControl that simulates kernel tc state instead of running tc.

    Commands containing any of the `fail_on` substrings fail.
    """

    def __init__(self, interface: str = "eth0", fail_on: Tuple[str, ...] = ()):
        super().__init__(interface)
        self.fail_on = fail_on
        self.root_qdisc = None
        self.ingress = False
        self.qdiscs: Dict[str, str] = {}
        self.classes: Dict[str, Tuple[str, str, str]] = {}
        self.filters: List[Tuple[str, str, str, str]] = []

    def _run(self, command, ignore_fails=False):
        self.history.append(command)
        cmd_str = " ".join(command)

        ok = not any(pattern in cmd_str + " " for pattern in self.fail_on) and self._simulate(command)
        if ok:
            return True
        if ignore_fails:
            return False
        raise TrafficControlError(f"Command failed ({cmd_str})")

    def _simulate(self, command) -> bool:
        obj, action = command[1], command[2]
        args = command[5:]

        if obj == "qdisc" and action == "del":
            if args[0] == "root":
                if self.root_qdisc is None:
                    return False
                self.root_qdisc = None
                self.qdiscs.clear()
                self.classes.clear()
                self.filters.clear()
                return True
            if args[0] == "ingress":
                if not self.ingress:
                    return False
                self.ingress = False
                return True

        if obj == "qdisc" and action == "add":
            if args[0] == "root":
                if self.root_qdisc is not None:
                    return False
                self.root_qdisc = " ".join(args)
                return True
            parent, handle = args[1], args[3]
            if parent not in self.classes or handle in self.qdiscs:
                return False
            self.qdiscs[handle] = parent
            return True

        if obj == "class" and action == "add":
            parent, class_id = args[1], args[3]
            rate, ceil = args[6], args[8]
            parent_exists = (parent == "1:" and self.root_qdisc) or parent in self.classes
            if not parent_exists or class_id in self.classes:
                return False
            self.classes[class_id] = (parent, rate, ceil)
            return True

        if obj == "filter" and action == "add":
            protocol = args[3]
            selector_match, address, flowid = args[9], args[10], args[12]
            if flowid not in self.classes:
                return False
            self.filters.append((protocol, selector_match, address, flowid))
            return True

        return False

    def snapshot(self):
        return (
            self.root_qdisc,
            dict(self.qdiscs),
            dict(self.classes),
            sorted(self.filters),
        )


class FakeConnectionSampler(ConnectionSampler):
    """ConnectionSampler serving canned records per (protocol, port, family)."""

    def __init__(self, records=None, ipv6: bool = False):
        super().__init__(ipv6=ipv6)
        self.records = records or {}
        self.queries = []

    def list_connections(self, protocol, port, family="ipv4"):
        self.queries.append((protocol, port, family))
        return list(self.records.get((protocol, port, family), []))


class FakeHostInspector(HostInspector):
    """HostInspector with fixed answers."""

    def __init__(self, modules=("sch_htb", "ip6_tables"), ipv6_route=True,
                 commands=("ip6tables",), unreadable=()):
        super().__init__()
        self.modules = set(modules)
        self.ipv6_route = ipv6_route
        self.commands = set(commands)
        self.unreadable = list(unreadable)

    def module_loadable(self, module):
        return module in self.modules

    def has_default_route(self, family="ipv4"):
        return self.ipv6_route if family == "ipv6" else True

    def has_command(self, name):
        return name in self.commands

    def unreadable_paths(self, paths=()):
        return list(self.unreadable)


@pytest.fixture
def fake_tc():
    return FakeTrafficControl()


@pytest.fixture
def make_tc():
    return FakeTrafficControl


@pytest.fixture
def make_sampler():
    return FakeConnectionSampler


@pytest.fixture
def make_host():
    return FakeHostInspector


@pytest.fixture
def fake_host():
    return FakeHostInspector()
