"""LIMS Custody Engine — specimen chain-of-custody and compliance audit service."""

__version__ = "0.1.0"
