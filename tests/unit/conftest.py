"""
Unit Test Layer Configuration

Unit tests cover pure functions and models only: no I/O, no event loop
beyond what pytest-asyncio provides.

Usage:
    pytest tests/unit -v
"""
import os
import sys

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

