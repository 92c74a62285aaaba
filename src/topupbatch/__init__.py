"""Batch FSL TOPUP distortion correction for BIDS datasets."""

__version__ = "0.1.0"
