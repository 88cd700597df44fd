"""
Pytest Configuration and Fixtures
"""

import os
import sys
from datetime import datetime, timezone
from decimal import Decimal

import pytest

# Add src to path
sys.path.insert(0, os.path.join(os.path.dirname(os.path.dirname(__file__)), 'src'))

# Set test environment
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["API_KEY"] = "test-key-12345"

from meter_rail.billing.rules import UnitRule  # noqa: E402
from meter_rail.core.clock import ManualClock  # noqa: E402
from meter_rail.core.types import EndpointKey, RequestInfo  # noqa: E402

START = datetime(2025, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock():
    """Manual clock starting at a fixed instant."""
    return ManualClock(START)


@pytest.fixture
def loan_rules():
    """Two overlapping loan rules; the amortize rule is more specific."""
    return [
        UnitRule(
            prefix="/v1/loans",
            base_units=Decimal("1.00"),
            per_item_units=Decimal("0.02"),
            item_key="periods",
            rule_id="loans",
        ),
        UnitRule(
            prefix="/v1/loans/amortize",
            base_units=Decimal("1.10"),
            per_item_units=Decimal("0.02"),
            item_key="periods",
            rule_id="loans-amortize",
        ),
    ]


@pytest.fixture
def make_request():
    """Factory for RequestInfo snapshots."""

    def _make(
        path="/v1/loans/amortize",
        endpoint="Loans.Amortize",
        items=None,
        method="POST",
        status_code=200,
    ):
        return RequestInfo(
            method=method,
            path=path,
            timestamp=START,
            endpoint=EndpointKey(endpoint),
            status_code=status_code,
            items=items if items is not None else {},
        )

    return _make
