"""
Unit Test Fixtures for Campaign Engine

Uses CampaignTestDataFactory from the data contract.
"""

import pytest
from datetime import datetime, timezone

import sys
import os

# Add project root to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../../.."))

from tests.contracts.campaign.data_contract import CampaignTestDataFactory


@pytest.fixture
def factory():
    """Test data factory"""
    return CampaignTestDataFactory()


@pytest.fixture
def fixed_now():
    """A fixed reference instant"""
    return datetime(2024, 4, 16, 12, 0, tzinfo=timezone.utc)
