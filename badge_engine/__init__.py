"""Open Badges credential signing, verification and revocation engine."""

__version__ = "0.1.0"
