"""Relay vending-machine payment requests to ABA PayWay and track settlement."""

__version__ = "0.2.0"
