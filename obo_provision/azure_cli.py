"""Graph tokens borrowed from the operator's signed-in Azure CLI session."""
from __future__ import annotations

import logging
from typing import Any, Optional

from azure.core.exceptions import ClientAuthenticationError
from azure.identity import AzureCliCredential, CredentialUnavailableError

from .config import DirectoryConfig


logger = logging.getLogger(__name__)

GRAPH_DEFAULT_SCOPE = "https://graph.microsoft.com/.default"
CLI_TIMEOUT = 60


class AzureCliError(RuntimeError):
    """Raised when the Azure CLI session cannot provide a Graph token."""


class AzureCliTokenProvider:
    """Delegated Graph tokens for whoever is signed in to the Azure CLI."""

    caller_path = "/me"

    def __init__(self, config: DirectoryConfig, credential: Optional[Any] = None) -> None:
        self._credential = credential or AzureCliCredential(
            tenant_id=config.tenant_id or "",
            process_timeout=CLI_TIMEOUT,
        )

    def acquire(self) -> str:
        try:
            access_token = self._credential.get_token(GRAPH_DEFAULT_SCOPE)
        except CredentialUnavailableError as exc:
            raise AzureCliError(f"Azure CLI session unavailable ({exc}). Run 'az login' first.") from exc
        except ClientAuthenticationError as exc:
            raise AzureCliError(f"Azure CLI could not issue a Graph token: {exc}") from exc
        logger.debug("Acquired a Graph token from the Azure CLI session.")
        return str(access_token.token)


__all__ = ["AzureCliError", "AzureCliTokenProvider"]
