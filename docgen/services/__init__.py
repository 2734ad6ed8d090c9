"""Clients for the terminology and schema validation services."""

from .terminology import TerminologyClient, TerminologyError
from .validator import ValidatorClient

__all__ = ["TerminologyClient", "TerminologyError", "ValidatorClient"]
