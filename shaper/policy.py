"""
Policy builder and applier.

This module translates a bandwidth plan into an HTB policy tree and applies it
to an interface. The tree is modelled as a NetworkX DiGraph whose edges point
from a parent object to the objects that depend on it, so a topological walk
yields a valid installation order.

Tree layout:
    qdisc 1: (htb, default 9999)
      class 1:1         rate = ceil = total
        class 1:<id>    one per client, rate/ceil from the plan
          qdisc <id>:   sfq
          filter        u32 match on the client address -> 1:<id>
        class 1:9999    default leaf, installed last
          qdisc 9999:   sfq
"""

import itertools
import logging
from typing import Dict, List, Tuple, Union

import networkx as nx

from models import BandwidthPlan, DefaultOnlyPlan
from shaper.executor import (
    DEFAULT_CLASS_ID,
    ROOT_CLASSID,
    ROOT_HANDLE,
    TrafficControl,
    TrafficControlError,
    classid,
)


logger = logging.getLogger(__name__)

CLIENT_CLASS_BASE = 10

ROOT_QDISC_NODE = "qdisc:1:"
ROOT_CLASS_NODE = f"class:{ROOT_CLASSID}"


class ClassIdExhausted(TrafficControlError):
    """Raised when client class ids would collide with the default class."""
    pass


class ClassIdSequence:
    """
    Monotonic class id generator scoped to one policy build.

    Ids start at CLIENT_CLASS_BASE and never reach the reserved default id.
    """

    def __init__(self, start: int = CLIENT_CLASS_BASE, reserved: int = DEFAULT_CLASS_ID):
        self._next = start
        self._reserved = reserved

    def next(self) -> int:
        if self._next >= self._reserved:
            raise ClassIdExhausted(f"No class id left below reserved id {self._reserved}")
        value = self._next
        self._next += 1
        return value


def build_policy_tree(
    plan: Union[BandwidthPlan, DefaultOnlyPlan],
    total: int,
    match: str
) -> nx.DiGraph:
    """
    Build the policy tree for a plan.

    Args:
        plan: BandwidthPlan or DefaultOnlyPlan
        total: Root class rate and ceiling in Mbit/s
        match: Address field the filters match on ("src" or "dst")

    Returns:
        DiGraph with an 'order' attribute on every node giving the install order

    Raises:
        ClassIdExhausted: If the plan has more clients than available class ids
    """
    tree = nx.DiGraph()
    order = itertools.count()

    tree.add_node(ROOT_QDISC_NODE, kind="root_qdisc", handle=ROOT_HANDLE,
                  default=DEFAULT_CLASS_ID, order=next(order))
    tree.add_node(ROOT_CLASS_NODE, kind="class", role="root", classid=ROOT_CLASSID,
                  parent=ROOT_HANDLE, rate=total, ceil=total, order=next(order))
    tree.add_edge(ROOT_QDISC_NODE, ROOT_CLASS_NODE)

    def add_leaf(class_id: int, role: str, rate: int, ceil: int, address: str = None) -> str:
        class_node = f"class:{classid(class_id)}"
        tree.add_node(class_node, kind="class", role=role, classid=classid(class_id),
                      class_id=class_id, parent=ROOT_CLASSID, rate=rate, ceil=ceil,
                      address=address, order=next(order))
        tree.add_edge(ROOT_CLASS_NODE, class_node)

        qdisc_node = f"qdisc:{class_id}:"
        tree.add_node(qdisc_node, kind="qdisc", class_id=class_id, order=next(order))
        tree.add_edge(class_node, qdisc_node)
        return class_node

    if isinstance(plan, BandwidthPlan):
        sequence = ClassIdSequence()
        for share in plan.clients:
            class_id = sequence.next()
            class_node = add_leaf(class_id, "client", share.rate, share.ceiling, share.address)

            filter_node = f"filter:{share.address}"
            tree.add_node(filter_node, kind="filter", address=share.address, match=match,
                          class_id=class_id, order=next(order))
            tree.add_edge(class_node, filter_node)

    add_leaf(DEFAULT_CLASS_ID, "default", plan.default_rate, plan.default_ceiling)
    return tree


def client_leaves(tree: nx.DiGraph) -> List[str]:
    return [n for n, d in tree.nodes(data=True) if d.get("role") == "client"]


def filter_bindings(tree: nx.DiGraph) -> Dict[str, int]:
    """Map each filtered address to the class id it is routed to."""
    return {
        d["address"]: d["class_id"]
        for _, d in tree.nodes(data=True) if d["kind"] == "filter"
    }


def validate_policy_tree(tree: nx.DiGraph) -> None:
    """
    Check structural invariants of a policy tree.

    Raises:
        TrafficControlError: If the tree is not a valid HTB policy
    """
    if not nx.is_arborescence(tree):
        raise TrafficControlError("Policy tree is not a single rooted tree")

    roots = [n for n, deg in tree.in_degree() if deg == 0]
    if roots != [ROOT_QDISC_NODE]:
        raise TrafficControlError(f"Unexpected policy roots: {roots}")

    defaults = [n for n, d in tree.nodes(data=True) if d.get("role") == "default"]
    if len(defaults) != 1:
        raise TrafficControlError(f"Expected exactly one default class, found {len(defaults)}")

    for node, data in tree.nodes(data=True):
        if data["kind"] != "class" or data["role"] == "root":
            continue
        qdiscs = [c for c in tree.successors(node) if tree.nodes[c]["kind"] == "qdisc"]
        if len(qdiscs) != 1:
            raise TrafficControlError(f"Leaf {data['classid']} must own exactly one qdisc")
        filters = [c for c in tree.successors(node) if tree.nodes[c]["kind"] == "filter"]
        if data["role"] == "default" and filters:
            raise TrafficControlError("Default class must not have filters")
        if data["role"] == "client" and len(filters) != 1:
            raise TrafficControlError(f"Client leaf {data['classid']} must own exactly one filter")


def install_order(tree: nx.DiGraph) -> List[str]:
    """Return nodes parents-first, ties broken by build order."""
    return list(nx.lexicographical_topological_sort(tree, key=lambda n: tree.nodes[n]["order"]))


class PolicyApplier:
    """
    Applies policy trees to one interface via a TrafficControl collaborator.

    Every apply tears the existing tree down first; there is no incremental
    update and no rollback of a partially applied tree.

    Attributes:
        tc: Traffic-control collaborator bound to the interface
        total: Root bandwidth in Mbit/s
        match: Filter match direction
    """

    def __init__(self, tc: TrafficControl, total: int, match: str):
        self.tc = tc
        self.total = total
        self.match = match

    def teardown(self) -> None:
        logger.info("Clearing old rules...")
        self.tc.delete_root()
        self.tc.delete_ingress()

    def apply(self, plan: Union[BandwidthPlan, DefaultOnlyPlan]) -> Tuple[nx.DiGraph, List[str]]:
        """
        Rebuild the interface policy from a plan.

        Args:
            plan: BandwidthPlan or DefaultOnlyPlan

        Returns:
            Tuple of (applied tree, addresses whose filter failed)

        Raises:
            TrafficControlError: If a qdisc or class could not be created
        """
        tree = build_policy_tree(plan, self.total, self.match)
        validate_policy_tree(tree)

        self.teardown()

        logger.info("Configuring HTB...")
        failed_filters = []
        for node in install_order(tree):
            data = tree.nodes[node]
            kind = data["kind"]

            if kind == "root_qdisc":
                self.tc.add_root_qdisc(data["default"])
            elif kind == "class":
                if data["role"] == "client":
                    logger.info(f"Configuring {data['address']}: {data['rate']}mbit")
                elif data["role"] == "default":
                    logger.info(f"Default class: {data['rate']}mbit")
                self.tc.add_class(data["parent"], data["classid"], data["rate"], data["ceil"])
            elif kind == "qdisc":
                self.tc.add_sfq(data["class_id"])
            elif kind == "filter":
                if not self.tc.add_filter(data["address"], data["match"], data["class_id"]):
                    logger.warning(f"Failed to create filter for {data['address']}, "
                                   f"traffic falls back to the default class")
                    failed_filters.append(data["address"])

        if isinstance(plan, DefaultOnlyPlan):
            logger.info("No active clients, default policy applied")
        else:
            logger.info(f"Policy applied: {len(client_leaves(tree))} client classes, "
                        f"{len(failed_filters)} failed filters")
        return tree, failed_filters
