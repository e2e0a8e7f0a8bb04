"""Wallet custody and transaction signing for the prediction-market gateway."""

__version__ = "0.1.0"
