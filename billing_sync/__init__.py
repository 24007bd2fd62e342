"""Resilient Stripe event ingestion and outbound-call subsystem."""

__version__ = "1.0.0"
