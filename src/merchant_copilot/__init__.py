"""Merchant copilot: query understanding and task orchestration for merchant analysis."""

__version__ = "0.1.0"
