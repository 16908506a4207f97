"""
Test suite for the Hospital Scheduling Service.

Unit tests for the slot calendar, policy engine, booking ledger and waitlist,
plus HTTP tests through the FastAPI application.
"""
import os

# Set environment for testing
os.environ["TESTING"] = "1"
