"""
Component Test Layer Configuration

Component tests exercise the engine's services, workers and HTTP API with
in-memory dependencies. No database, Redis or downstream service is needed.

Usage:
    pytest tests/component -v
"""
import os
import sys

# Set testing environment BEFORE any imports
os.environ["ENV"] = "testing"
os.environ["ENVIRONMENT"] = "testing"
os.environ.setdefault("REDIS_URL", "")

# Add project root
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.dirname(os.path.abspath(__file__)))))

