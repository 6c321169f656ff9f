"""
Property-based tests for data models.
Tests validation and data integrity properties using Hypothesis.
"""

import pytest
from hypothesis import given, settings, strategies as st
from pydantic import ValidationError

from models import BandwidthPlan, ConntrackRecord, DefaultOnlyPlan, InterfaceContext, ReconcileReport


@st.composite
def interface_context_kwargs(draw):
    """Generate keyword arguments for a valid InterfaceContext."""
    total = draw(st.integers(min_value=2, max_value=100000))
    return {
        'interface': draw(st.sampled_from(['eth0', 'ens3', 'wlan0', 'br-lan'])),
        'match': draw(st.sampled_from(['src', 'dst'])),
        'protocols': tuple(draw(st.lists(st.sampled_from(['tcp', 'udp']), min_size=1, max_size=4))),
        'ipv6': draw(st.booleans()),
        'ports': tuple(draw(st.lists(st.integers(min_value=1, max_value=65535), min_size=1, max_size=10))),
        'total': total,
        'reserved_percent': draw(st.integers(min_value=0, max_value=99)),
        'floor': draw(st.integers(min_value=1, max_value=total)),
        'default_rate': draw(st.integers(min_value=1, max_value=total - 1)),
    }


@settings(max_examples=100)
@given(kwargs=interface_context_kwargs())
def test_property_context_normalization(kwargs):
    """
    For any valid context, protocols are unique in first-seen order and ports
    are unique and sorted.
    """
    context = InterfaceContext(**kwargs)

    assert len(set(context.protocols)) == len(context.protocols)
    assert list(context.protocols) == list(dict.fromkeys(kwargs['protocols']))
    assert list(context.ports) == sorted(set(kwargs['ports']))
    assert context.default_rate < context.total


@settings(max_examples=50)
@given(kwargs=interface_context_kwargs(), port=st.one_of(
    st.integers(max_value=0), st.integers(min_value=65536)
))
def test_property_context_rejects_invalid_ports(kwargs, port):
    kwargs['ports'] = kwargs['ports'] + (port,)

    with pytest.raises(ValidationError):
        InterfaceContext(**kwargs)


class TestModelValidation:
    """Test individual model constraints."""

    def test_context_default_rate_below_total(self):
        with pytest.raises(ValidationError):
            InterfaceContext(interface="eth0", match="dst", protocols=("tcp",), ports=(80,),
                             total=10, floor=1, default_rate=10)

    def test_context_rejects_unknown_protocol(self):
        with pytest.raises(ValidationError):
            InterfaceContext(interface="eth0", match="dst", protocols=("icmp",), ports=(80,),
                             total=10, floor=1, default_rate=1)

    def test_context_rejects_unknown_match(self):
        with pytest.raises(ValidationError):
            InterfaceContext(interface="eth0", match="any", protocols=("tcp",), ports=(80,),
                             total=10, floor=1, default_rate=1)

    def test_bandwidth_plan_requires_clients(self):
        with pytest.raises(ValidationError):
            BandwidthPlan(clients=[], default_rate=1)

    def test_conntrack_record_address(self):
        record = ConntrackRecord(protocol="udp", src="10.0.0.2", dst="10.0.0.1")

        assert record.address("src") == "10.0.0.2"
        assert record.address("dst") == "10.0.0.1"

    def test_report_keeps_plan_type(self):
        report = ReconcileReport(interface="eth0", plan=DefaultOnlyPlan(default_rate=1))

        assert isinstance(report.plan, DefaultOnlyPlan)
        assert report.clients == []
        assert report.failed_filters == []
