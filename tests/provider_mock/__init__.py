"""Mock providers for engine integration testing.

This package provides in-memory resource providers so that plan/apply
scenarios can be tested without any real infrastructure.

Key Features:
- In-memory resources keyed by external ID
- Call log and start/end event log for ordering assertions
- Failure injection (transient or permanent, limited or unlimited)
- Per-operation delays and peak concurrency tracking
- Out-of-band drift and deletion

Usage:
    from provider_mock import MockCloud, register_mock_kinds

    cloud = MockCloud()
    registry = ResourceDescriptorRegistry()
    register_mock_kinds(registry, cloud)

    cloud.fail("create", "static_ip", name="ingress")
"""

from .cloud import CallRecord, FailureRule, MockCloud, MockCloudResource
from .providers import (
    HTTP_ROUTE,
    IAM_BINDING,
    SERVICE_ACCOUNT,
    STATIC_IP,
    MockProvider,
    register_mock_kinds,
)

__all__ = [
    "CallRecord",
    "FailureRule",
    "HTTP_ROUTE",
    "IAM_BINDING",
    "MockCloud",
    "MockCloudResource",
    "MockProvider",
    "SERVICE_ACCOUNT",
    "STATIC_IP",
    "register_mock_kinds",
]
