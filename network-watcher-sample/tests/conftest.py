"""Pytest fixtures for Network Watcher sample tests."""
import os
import sys
import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))
sys.path.insert(0, os.path.dirname(__file__))

from helpers import make_clients
from watcher_operations import (
    new_context, provision_network_fabric, provision_network_watcher,
    provision_resource_group, provision_storage_account,
)


@pytest.fixture
def clients():
    """Fake Azure where every call succeeds and no watcher pre-exists."""
    return make_clients()


@pytest.fixture
def ctx():
    return new_context("westus", "rg-test")


@pytest.fixture
def provisioned(clients, ctx):
    """Context after every provisioning step has run."""
    provision_resource_group(clients, ctx)
    provision_network_watcher(clients, ctx)
    provision_network_fabric(clients, ctx, admin_password="Aa1!test-password")
    provision_storage_account(clients, ctx)
    return ctx
