"""
Hospital Scheduling Service

FastAPI service owning the appointment scheduling core of the hospital
platform: slot generation, conflict-free booking, cancellation and
reschedule policy, and waitlist-to-opening matching.
"""

__version__ = "1.0.0"
