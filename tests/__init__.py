"""Test suite for Clarity-Pilot.

This package contains hermetic tests following the pytest framework.
Tests are structured to mirror the clarity_pilot/ package hierarchy for
discoverability.

Testing Philosophy:
    - Use pytest-mock for browser isolation; no test touches the network
    - Extraction heuristics are exercised against static HTML snapshots
    - Focus coverage on the booking state machine and value ranking
"""
