"""Shared test helpers: fake pollers, fake SDK records, a happy-path fake Azure.

Importable by both conftest.py and test modules.
"""
import copy
import os
import sys
from types import SimpleNamespace
from unittest.mock import MagicMock

# Make the sample modules importable from tests/
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

from watcher_session import AzureClients  # noqa: E402


SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
PRIVATE_IP = "192.168.2.4"


# ── Fake SDK plumbing ─────────────────────────────────────────────────

class FakePoller:
    """Stands in for azure.core.polling.LROPoller."""

    def __init__(self, value=None, error=None):
        self._value = value
        self._error = error
        self.waited = False

    def result(self):
        self.waited = True
        if self._error is not None:
            raise self._error
        return self._value


def record(**attrs):
    return SimpleNamespace(**attrs)


def resource_id(rg, provider_type, name):
    return (f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{rg}"
            f"/providers/{provider_type}/{name}")


def watcher_record(name, location, rg="NetworkWatcherRG"):
    return record(name=name, location=location,
                  id=resource_id(rg, "Microsoft.Network/networkWatchers", name))


# ── Happy-path fake Azure ─────────────────────────────────────────────

def make_clients(existing_watchers=()):
    """AzureClients whose every call succeeds with a plausible record."""
    clients = AzureClients(
        credential=MagicMock(), subscription_id=SUBSCRIPTION_ID,
        resource=MagicMock(), network=MagicMock(), compute=MagicMock(), storage=MagicMock(),
    )

    # Resource groups
    groups = clients.resource.resource_groups
    groups.create_or_update.side_effect = lambda name, params: record(
        name=name, location=params["location"],
        id=f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/{name}")
    groups.begin_delete.return_value = FakePoller()

    network = clients.network

    # Watchers
    watchers = network.network_watchers
    watchers.list_all.return_value = list(existing_watchers)
    watchers.create_or_update.side_effect = lambda rg, name, params: watcher_record(
        name, params["location"], rg)
    watchers.begin_delete.return_value = FakePoller()

    # Fabric
    network.network_security_groups.begin_create_or_update.side_effect = \
        lambda rg, name, params: FakePoller(record(
            name=name, location=params["location"],
            security_rules=params["security_rules"],
            id=resource_id(rg, "Microsoft.Network/networkSecurityGroups", name)))

    def _vnet(rg, name, params):
        vnet_id = resource_id(rg, "Microsoft.Network/virtualNetworks", name)
        subnets = [record(name=s["name"], id=f"{vnet_id}/subnets/{s['name']}")
                   for s in params["subnets"]]
        return FakePoller(record(name=name, id=vnet_id, location=params["location"],
                                 subnets=subnets))
    network.virtual_networks.begin_create_or_update.side_effect = _vnet

    network.public_ip_addresses.begin_create_or_update.side_effect = \
        lambda rg, name, params: FakePoller(record(
            name=name, location=params["location"],
            id=resource_id(rg, "Microsoft.Network/publicIPAddresses", name)))

    def _nic(rg, name, private_ip=None):
        return record(
            name=name, location="westus",
            id=resource_id(rg, "Microsoft.Network/networkInterfaces", name),
            ip_configurations=[record(name="primary", private_ip_address=private_ip)])
    network.network_interfaces.begin_create_or_update.side_effect = \
        lambda rg, name, params: FakePoller(_nic(rg, name))
    network.network_interfaces.get.side_effect = lambda rg, name: _nic(rg, name, PRIVATE_IP)

    compute = clients.compute
    compute.virtual_machines.begin_create_or_update.side_effect = \
        lambda rg, name, params: FakePoller(record(
            name=name, location=params["location"],
            id=resource_id(rg, "Microsoft.Compute/virtualMachines", name)))
    compute.virtual_machine_extensions.begin_create_or_update.side_effect = \
        lambda rg, vm, ext, params: FakePoller(record(name=ext, **params))

    clients.storage.storage_accounts.begin_create.side_effect = \
        lambda rg, name, params: FakePoller(record(
            name=name, location=params["location"],
            id=resource_id(rg, "Microsoft.Storage/storageAccounts", name)))

    # Packet captures
    captures = network.packet_captures
    captured = {}

    def _create_capture(rg, nw, name, params):
        captured[name] = record(
            name=name, target=params["target"],
            time_limit_in_seconds=params["time_limit_in_seconds"],
            storage_location=record(
                storage_id=params["storage_location"]["storage_id"],
                storage_path=f"https://sa.blob.core.windows.net/network-watcher-logs/{name}.cap"),
            filters=[record(protocol=f["protocol"]) for f in params["filters"]],
            provisioning_state="Succeeded")
        return FakePoller(captured[name])
    captures.begin_create.side_effect = _create_capture
    captures.begin_stop.return_value = FakePoller()
    captures.get.side_effect = lambda rg, nw, name: captured[name]
    captures.begin_get_status.return_value = FakePoller(record(packet_capture_status="Stopped"))
    captures.begin_delete.return_value = FakePoller()

    # Diagnostic queries
    watchers.begin_verify_ip_flow.return_value = FakePoller(record(
        access="Allow", rule_name="defaultSecurityRules/AllowInternetOutBound"))
    watchers.begin_get_next_hop.return_value = FakePoller(record(
        next_hop_type="Internet", next_hop_ip_address=None, route_table_id="System Route"))
    watchers.get_topology.side_effect = lambda rg, nw, params: record(
        id="topology-0001",
        resources=[record(
            name="vnet", location="westus",
            associations=[record(name="subnet1", association_type="Contains",
                                 resource_id="subnet-id")])])
    watchers.begin_get_vm_security_rules.return_value = FakePoller(record(
        network_interfaces=[record(
            id="nic-id",
            security_rule_associations=record(effective_security_rules=[
                record(name="DenyInternetInComing", access="Deny", direction="Inbound",
                       protocol="Tcp", priority=100),
                record(name="AllowInternetOutBound", access="Allow", direction="Outbound",
                       protocol="All", priority=65001),
            ]))]))

    # Flow logs: stored per NSG, disabled until the first write
    flow_logs = {}

    def _get_flow_log(rg, nw, params):
        nsg_id = params["target_resource_id"]
        stored = flow_logs.get(nsg_id) or record(
            target_resource_id=nsg_id, storage_id=None, enabled=False,
            retention_policy=None, format=record(type="JSON", version=2))
        return FakePoller(copy.deepcopy(stored))

    def _set_flow_log(rg, nw, params):
        flow_logs[params.target_resource_id] = copy.deepcopy(params)
        return FakePoller(copy.deepcopy(params))

    watchers.begin_get_flow_log_status.side_effect = _get_flow_log
    watchers.begin_set_flow_log_configuration.side_effect = _set_flow_log

    return clients


def call_names(mock_obj) -> list:
    """Flatten mock_calls into dotted method names, e.g. 'network_watchers.begin_delete'."""
    return [name for name, _args, _kwargs in mock_obj.mock_calls if name]
