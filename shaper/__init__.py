"""
Shaper module for Lite QoS.
Handles connection sampling, host checks and traffic-control execution.
"""

from shaper.conntrack import ConnectionSampler
from shaper.executor import TrafficControl, TrafficControlError
from shaper.host import HostInspector
from shaper.policy import PolicyApplier, ClassIdSequence, ClassIdExhausted
from shaper.main import Reconciler, PreflightError

__all__ = [
    'ConnectionSampler',
    'TrafficControl',
    'TrafficControlError',
    'HostInspector',
    'PolicyApplier',
    'ClassIdSequence',
    'ClassIdExhausted',
    'Reconciler',
    'PreflightError',
]
