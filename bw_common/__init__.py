"""
buildwatch common module.

This module contains the domain models, error taxonomy and credential
collaborator interface shared by the polling engine and its hosts
(HTTP server, CLI).

The common module has no dependencies on other bw_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .credentials import CredentialProvider, Credentials
from .models import AdapterKey, BuildEvent, BuildStreamItem, BuildTarget, QueryFilter

__all__ = [
    "AdapterKey",
    "BuildEvent",
    "BuildStreamItem",
    "BuildTarget",
    "CredentialProvider",
    "Credentials",
    "QueryFilter",
]
