"""Session bootstrap — service-principal credentials and Azure management clients.

Public API:
    clients = create_session()          # reads CLIENT_ID, CLIENT_SECRET, TENANT_ID, SUBSCRIPTION_ID
    clients.network.network_watchers.list_all()

Fails fast with AuthenticationFailedError before any resource is provisioned.
"""

import os
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from azure.core.exceptions import ClientAuthenticationError, ServiceRequestError
from azure.identity import ClientSecretCredential
from azure.mgmt.compute import ComputeManagementClient
from azure.mgmt.network import NetworkManagementClient
from azure.mgmt.resource import ResourceManagementClient
from azure.mgmt.storage import StorageManagementClient


# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENV_CLIENT_ID = "CLIENT_ID"
ENV_CLIENT_SECRET = "CLIENT_SECRET"
ENV_TENANT_ID = "TENANT_ID"
ENV_SUBSCRIPTION_ID = "SUBSCRIPTION_ID"

REQUIRED_ENV_VARS = (ENV_CLIENT_ID, ENV_CLIENT_SECRET, ENV_TENANT_ID, ENV_SUBSCRIPTION_ID)

ARM_SCOPE = "https://management.azure.com/.default"


class AuthenticationFailedError(RuntimeError):
    """Credentials are missing or were rejected by Microsoft Entra ID."""


@dataclass
class AzureClients:
    """Management clients bound to one subscription, sharing one credential."""

    credential: Any
    subscription_id: str
    resource: Any
    network: Any
    compute: Any
    storage: Any


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def read_credentials(environ: Optional[Mapping[str, str]] = None) -> Dict[str, str]:
    """Read the four service-principal settings; raise if any is missing or blank."""
    if environ is None:
        environ = os.environ
    values = {name: (environ.get(name) or "").strip() for name in REQUIRED_ENV_VARS}
    missing: List[str] = [name for name, value in values.items() if not value]
    if missing:
        raise AuthenticationFailedError(
            f"Authentication failed: missing environment variable(s) {', '.join(missing)}"
        )
    return values


def create_session(environ: Optional[Mapping[str, str]] = None,
                   credential_factory=ClientSecretCredential) -> AzureClients:
    """Authenticate and build the management clients.

    The ARM token is acquired eagerly so a bad secret or tenant surfaces here
    rather than inside the first create call.
    """
    creds = read_credentials(environ)

    # A malformed tenant id is rejected by the constructor, an unreachable
    # token endpoint by get_token.
    try:
        credential = credential_factory(
            tenant_id=creds[ENV_TENANT_ID],
            client_id=creds[ENV_CLIENT_ID],
            client_secret=creds[ENV_CLIENT_SECRET],
        )
        credential.get_token(ARM_SCOPE)
    except ClientAuthenticationError as e:
        raise AuthenticationFailedError(f"Authentication failed: {e.message}") from e
    except (ServiceRequestError, ValueError) as e:
        raise AuthenticationFailedError(f"Authentication failed: {e}") from e

    subscription_id = creds[ENV_SUBSCRIPTION_ID]
    log(f"Authenticated client {creds[ENV_CLIENT_ID]} for subscription {subscription_id}")

    return AzureClients(
        credential=credential,
        subscription_id=subscription_id,
        resource=ResourceManagementClient(credential, subscription_id),
        network=NetworkManagementClient(credential, subscription_id),
        compute=ComputeManagementClient(credential, subscription_id),
        storage=StorageManagementClient(credential, subscription_id),
    )


def log(message: str):
    """Print to stderr with prefix. Every module of the sample logs through here."""
    print(f"[Network Watcher] {message}", file=sys.stderr)
