"""
Credential collaborator interface.

The adapter never stores or inspects credentials beyond turning them into a
requests auth object. Hosts decide where credentials come from (environment,
keyring, interactive prompt) by implementing CredentialProvider.
"""

import os
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from requests.auth import HTTPBasicAuth

from .models import AdapterKey


@dataclass(frozen=True)
class Credentials:
    """Username plus password or API token for a build server."""

    username: str
    secret: str = field(repr=False)

    def to_auth(self) -> HTTPBasicAuth:
        """Return the requests auth object for these credentials."""
        return HTTPBasicAuth(self.username, self.secret)


class CredentialProvider(ABC):
    """
    Abstract source of build server credentials.

    Called once eagerly when an adapter initializes (interactive=False, only
    stored credentials should be returned) and again whenever the server
    challenges a request (interactive=True, the provider may prompt).
    """

    @abstractmethod
    def get_credentials(
        self, key: AdapterKey, interactive: bool
    ) -> Credentials | None:
        """
        Get credentials for the given adapter.

        Args:
            key: Identity of the adapter asking
            interactive: True if the user may be prompted

        Returns:
            Credentials, or None if none are available or the user declined
        """
        pass


class StaticCredentialProvider(CredentialProvider):
    """Always returns the same credentials (or None for anonymous access)."""

    def __init__(self, credentials: Credentials | None = None):
        self.credentials = credentials

    def get_credentials(
        self, key: AdapterKey, interactive: bool
    ) -> Credentials | None:
        return self.credentials


class EnvCredentialProvider(CredentialProvider):
    """
    Read credentials from environment variables.

    Environment variables:
    - BW_USERNAME: Build server user name
    - BW_API_TOKEN: Password or API token for that user
    """

    def get_credentials(
        self, key: AdapterKey, interactive: bool
    ) -> Credentials | None:
        username = os.environ.get("BW_USERNAME")
        token = os.environ.get("BW_API_TOKEN")
        if not username or not token:
            return None
        return Credentials(username=username, secret=token)
