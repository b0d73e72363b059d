"""Network Watcher operations — provisioning, diagnostics and teardown steps.

Public API:
    ctx = new_context("westus")
    provision_resource_group(clients, ctx)
    provision_network_watcher(clients, ctx)
    provision_network_fabric(clients, ctx)
    provision_storage_account(clients, ctx)
    ...diagnostics...
    report = teardown(clients, ctx)

Every step is one synchronous call: long-running operations are waited with
poller.result() before the step returns. Steps record what they created on the
SampleContext so teardown can delete exactly that and nothing else.
"""

import copy
import secrets
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from azure.core.exceptions import ResourceNotFoundError
from azure.mgmt.core.tools import parse_resource_id
from azure.mgmt.network.models import RetentionPolicyParameters

from watcher_session import log


# ---------------------------------------------------------------------------
# Constants — Topology of the sample
# ---------------------------------------------------------------------------

DEFAULT_LOCATION = "westus"

VNET_ADDRESS_SPACE = "192.168.0.0/16"
SUBNET_ADDRESS_PREFIX = "192.168.2.0/24"
SUBNET_NAME = "subnet1"

DENY_HTTPS_INBOUND_RULE = {
    "name": "DenyInternetInComing",
    "description": "Deny inbound HTTPS from any source",
    "access": "Deny",
    "direction": "Inbound",
    "protocol": "Tcp",
    "source_address_prefix": "*",
    "source_port_range": "*",
    "destination_address_prefix": "*",
    "destination_port_range": "443",
    "priority": 100,
}

# ---------------------------------------------------------------------------
# Constants — Virtual machine
# ---------------------------------------------------------------------------

VM_SIZE = "Standard_D2a_v4"
VM_IMAGE_REFERENCE = {
    "publisher": "Canonical",
    "offer": "0001-com-ubuntu-server-jammy",
    "sku": "22_04-lts-gen2",
    "version": "latest",
}
VM_ADMIN_USERNAME = "tirekicker"

AGENT_EXTENSION_NAME = "packetCapture"
AGENT_EXTENSION_PUBLISHER = "Microsoft.Azure.NetworkWatcher"
AGENT_EXTENSION_TYPE = "NetworkWatcherAgentLinux"
AGENT_EXTENSION_VERSION = "1.4"

STORAGE_SKU = "Standard_LRS"
STORAGE_KIND = "StorageV2"

# ---------------------------------------------------------------------------
# Constants — Diagnostics
# ---------------------------------------------------------------------------

DEFAULT_CAPTURE_TIME_LIMIT = 1500
DEFAULT_CAPTURE_PROTOCOL = "TCP"
PROBE_IP_ADDRESS = "8.8.8.8"
PROBE_PORT = "443"
FLOW_LOG_RETENTION_DAYS = 5

# Packet capture lifecycle states
CAPTURE_ABSENT = "absent"
CAPTURE_RUNNING = "running"
CAPTURE_STOPPED = "stopped"

# Teardown outcomes
CLEANUP_COMPLETED = "completed"
CLEANUP_PARTIAL = "partial"
CLEANUP_SKIPPED = "skipped"

# Azure storage account names: 3-24 chars, lowercase letters and digits only
NAME_MAX_LENGTH = 24


class WatcherCollisionError(RuntimeError):
    """A Network Watcher already exists in the target region."""


class PacketCaptureStateError(RuntimeError):
    """A packet capture operation was requested from the wrong lifecycle state."""


# ---------------------------------------------------------------------------
# Local handles
# ---------------------------------------------------------------------------

@dataclass
class ResourceHandle:
    name: str
    id: str
    location: Optional[str] = None


@dataclass
class WatcherHandle(ResourceHandle):
    resource_group: str = ""
    created: bool = True


@dataclass
class TeardownReport:
    status: str
    deleted: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)


@dataclass
class SampleContext:
    """Everything the pipeline has learned so far; read by teardown on exit."""

    location: str
    names: Dict[str, str]
    resource_group: Optional[ResourceHandle] = None
    watcher: Optional[WatcherHandle] = None
    nsg: Optional[ResourceHandle] = None
    vnet: Optional[ResourceHandle] = None
    subnet: Optional[ResourceHandle] = None
    public_ip: Optional[ResourceHandle] = None
    nic: Optional[ResourceHandle] = None
    vm: Optional[ResourceHandle] = None
    storage_account: Optional[ResourceHandle] = None
    private_ip: Optional[str] = None
    teardown_report: Optional[TeardownReport] = None


# ---------------------------------------------------------------------------
# Naming
# ---------------------------------------------------------------------------

def generate_name(prefix: str, max_length: int = NAME_MAX_LENGTH) -> str:
    """Random per-run name: lowercase prefix + hex suffix, truncated to max_length.

    Lowercase alphanumerics starting with a letter satisfy every resource kind the
    sample creates, including storage accounts and public IP DNS labels.
    """
    return (prefix.lower() + uuid.uuid4().hex)[:max_length]


def generate_admin_password() -> str:
    """Password meeting Azure's Linux VM complexity rules (upper, lower, digit, symbol)."""
    return "Aa1!" + secrets.token_urlsafe(18)


def new_context(location: str = DEFAULT_LOCATION,
                resource_group_name: Optional[str] = None) -> SampleContext:
    """Generate the names for one run."""
    names = {
        "resource_group": resource_group_name or generate_name("rg"),
        "watcher": generate_name("watcher"),
        "vnet": generate_name("vnet"),
        "nsg": generate_name("nsg"),
        "public_ip": generate_name("pip"),
        "dns_label": generate_name("pipdns"),
        "nic": generate_name("nic"),
        "storage_account": generate_name("sa"),
        "vm": generate_name("vm", max_length=15),
        "packet_capture": generate_name("pc"),
    }
    return SampleContext(location=location, names=names)


def _handle(resource: Any) -> ResourceHandle:
    return ResourceHandle(name=resource.name, id=resource.id,
                          location=getattr(resource, "location", None))


def _normalize_location(location: Optional[str]) -> str:
    """'West US' and 'westus' name the same region."""
    return (location or "").replace(" ", "").lower()


# ---------------------------------------------------------------------------
# Provisioning — resource group and watcher
# ---------------------------------------------------------------------------

def provision_resource_group(clients, ctx: SampleContext) -> ResourceHandle:
    """Create or update the sample's resource group; the root of teardown."""
    name = ctx.names["resource_group"]
    log(f"Creating resource group {name} in {ctx.location}...")
    group = clients.resource.resource_groups.create_or_update(name, {"location": ctx.location})
    ctx.resource_group = _handle(group)
    log(f"Created resource group: {group.name}")
    return ctx.resource_group


def find_watcher_in_region(clients, location: str):
    """Return the subscription's Network Watcher in `location`, or None."""
    wanted = _normalize_location(location)
    for watcher in clients.network.network_watchers.list_all():
        if _normalize_location(watcher.location) == wanted:
            return watcher
    return None


def provision_network_watcher(clients, ctx: SampleContext,
                              reuse_existing: bool = False) -> WatcherHandle:
    """Create the regional Network Watcher.

    Azure allows one watcher per region per subscription. An existing one is
    either adopted (reuse_existing=True, never deleted by teardown) or reported
    as WatcherCollisionError.
    """
    location = ctx.resource_group.location or ctx.location
    existing = find_watcher_in_region(clients, location)
    if existing is not None:
        if not reuse_existing:
            raise WatcherCollisionError(
                f"Network Watcher '{existing.name}' already exists in {location}; "
                f"only one watcher is allowed per region. Re-run with --reuse-watcher "
                f"to use it."
            )
        ctx.watcher = WatcherHandle(
            name=existing.name, id=existing.id, location=existing.location,
            resource_group=parse_resource_id(existing.id)["resource_group"],
            created=False,
        )
        log(f"Reusing existing network watcher {existing.name} "
             f"(resource group {ctx.watcher.resource_group})")
        return ctx.watcher

    name = ctx.names["watcher"]
    rg_name = ctx.resource_group.name
    log(f"Creating network watcher {name} in {location}...")
    watcher = clients.network.network_watchers.create_or_update(
        rg_name, name, {"location": location}
    )
    ctx.watcher = WatcherHandle(name=watcher.name, id=watcher.id,
                                location=watcher.location, resource_group=rg_name)
    log(f"Created network watcher: {watcher.name}")
    return ctx.watcher


# ---------------------------------------------------------------------------
# Provisioning — network fabric and VM
# ---------------------------------------------------------------------------

def provision_network_fabric(clients, ctx: SampleContext,
                             admin_password: Optional[str] = None) -> ResourceHandle:
    """NSG -> VNet/subnet -> public IP -> NIC -> VM -> agent extension.

    Each create is waited to completion and feeds the next; the first failure
    propagates and leaves the rest to resource-group deletion.
    """
    network = clients.network
    rg = ctx.resource_group.name
    location = ctx.location
    names = ctx.names

    log("Creating network security group...")
    nsg = network.network_security_groups.begin_create_or_update(rg, names["nsg"], {
        "location": location,
        "security_rules": [dict(DENY_HTTPS_INBOUND_RULE)],
    }).result()
    ctx.nsg = _handle(nsg)
    log(f"Created network security group: {nsg.name}")

    log("Creating virtual network...")
    vnet = network.virtual_networks.begin_create_or_update(rg, names["vnet"], {
        "location": location,
        "address_space": {"address_prefixes": [VNET_ADDRESS_SPACE]},
        "subnets": [{
            "name": SUBNET_NAME,
            "address_prefix": SUBNET_ADDRESS_PREFIX,
            "network_security_group": {"id": nsg.id},
        }],
    }).result()
    ctx.vnet = _handle(vnet)
    ctx.subnet = ResourceHandle(name=vnet.subnets[0].name, id=vnet.subnets[0].id,
                                location=location)
    log(f"Created virtual network: {vnet.name}")

    log("Creating public IP address...")
    pip = network.public_ip_addresses.begin_create_or_update(rg, names["public_ip"], {
        "location": location,
        "sku": {"name": "Standard"},
        "public_ip_allocation_method": "Static",
        "dns_settings": {"domain_name_label": names["dns_label"]},
    }).result()
    ctx.public_ip = _handle(pip)

    log("Creating network interface...")
    nic = network.network_interfaces.begin_create_or_update(rg, names["nic"], {
        "location": location,
        "ip_configurations": [{
            "name": "primary",
            "subnet": {"id": ctx.subnet.id},
            "private_ip_allocation_method": "Dynamic",
            "public_ip_address": {"id": pip.id},
        }],
    }).result()
    ctx.nic = _handle(nic)

    log("Creating virtual machine...")
    vm = clients.compute.virtual_machines.begin_create_or_update(rg, names["vm"], {
        "location": location,
        "hardware_profile": {"vm_size": VM_SIZE},
        "storage_profile": {"image_reference": dict(VM_IMAGE_REFERENCE)},
        "os_profile": {
            "computer_name": names["vm"],
            "admin_username": VM_ADMIN_USERNAME,
            "admin_password": admin_password or generate_admin_password(),
        },
        "network_profile": {"network_interfaces": [{"id": nic.id, "primary": True}]},
    }).result()
    ctx.vm = _handle(vm)
    log(f"Created virtual machine: {vm.name}")

    log(f"Installing {AGENT_EXTENSION_TYPE} extension...")
    clients.compute.virtual_machine_extensions.begin_create_or_update(
        rg, vm.name, AGENT_EXTENSION_NAME, {
            "location": location,
            "publisher": AGENT_EXTENSION_PUBLISHER,
            "type_properties_type": AGENT_EXTENSION_TYPE,
            "type_handler_version": AGENT_EXTENSION_VERSION,
            "auto_upgrade_minor_version": True,
        },
    ).result()

    # The dynamic private IP is only final once the VM is attached.
    attached_nic = network.network_interfaces.get(rg, nic.name)
    ctx.private_ip = attached_nic.ip_configurations[0].private_ip_address
    log(f"VM private IP: {ctx.private_ip}")
    return ctx.vm


def provision_storage_account(clients, ctx: SampleContext) -> ResourceHandle:
    """Standard_LRS account receiving packet captures and flow logs."""
    name = ctx.names["storage_account"]
    log(f"Creating storage account {name}...")
    account = clients.storage.storage_accounts.begin_create(ctx.resource_group.name, name, {
        "location": ctx.location,
        "sku": {"name": STORAGE_SKU},
        "kind": STORAGE_KIND,
    }).result()
    ctx.storage_account = _handle(account)
    log(f"Created storage account: {account.name}")
    return ctx.storage_account


# ---------------------------------------------------------------------------
# Packet capture
# ---------------------------------------------------------------------------

@dataclass
class CaptureSnapshot:
    record: Any
    status: Optional[str]


class PacketCaptureSession:
    """One packet capture on one watcher: absent -> running -> stopped -> absent.

    Out-of-order calls raise PacketCaptureStateError without reaching Azure.
    """

    def __init__(self, clients, watcher: WatcherHandle, name: str):
        self._captures = clients.network.packet_captures
        self._watcher = watcher
        self.name = name
        self.state = CAPTURE_ABSENT
        self._deleted = False

    def start(self, target_id: str, storage_id: str,
              time_limit_seconds: int = DEFAULT_CAPTURE_TIME_LIMIT,
              protocol: str = DEFAULT_CAPTURE_PROTOCOL):
        self._require({CAPTURE_ABSENT}, "start")
        if self._deleted:
            raise PacketCaptureStateError(f"Packet capture {self.name} was already deleted")
        log(f"Creating packet capture {self.name} "
             f"(time limit {time_limit_seconds}s, protocol {protocol})...")
        record = self._captures.begin_create(
            self._watcher.resource_group, self._watcher.name, self.name, {
                "target": target_id,
                "storage_location": {"storage_id": storage_id},
                "time_limit_in_seconds": time_limit_seconds,
                "filters": [{"protocol": protocol}],
            },
        ).result()
        self.state = CAPTURE_RUNNING
        log("Created packet capture")
        return record

    def stop(self):
        self._require({CAPTURE_RUNNING}, "stop")
        log("Stopping packet capture...")
        self._captures.begin_stop(self._watcher.resource_group, self._watcher.name,
                                  self.name).result()
        self.state = CAPTURE_STOPPED

    def fetch(self) -> CaptureSnapshot:
        """Read the capture back together with its runtime status."""
        self._require({CAPTURE_RUNNING, CAPTURE_STOPPED}, "fetch")
        log("Getting packet capture...")
        rg, watcher = self._watcher.resource_group, self._watcher.name
        record = self._captures.get(rg, watcher, self.name)
        status = self._captures.begin_get_status(rg, watcher, self.name).result()
        return CaptureSnapshot(record=record, status=status.packet_capture_status)

    def delete(self):
        self._require({CAPTURE_RUNNING, CAPTURE_STOPPED}, "delete")
        log(f"Deleting packet capture {self.name}")
        self._captures.begin_delete(self._watcher.resource_group, self._watcher.name,
                                    self.name).result()
        self.state = CAPTURE_ABSENT
        self._deleted = True

    def _require(self, allowed: set, operation: str):
        if self.state not in allowed:
            detail = "deleted" if self._deleted else self.state
            raise PacketCaptureStateError(
                f"Cannot {operation} packet capture {self.name}: capture is {detail}"
            )


# ---------------------------------------------------------------------------
# Diagnostic queries
# ---------------------------------------------------------------------------

def verify_ip_flow(clients, watcher: WatcherHandle, target_id: str, local_ip: str,
                   remote_ip: str = PROBE_IP_ADDRESS, local_port: str = PROBE_PORT,
                   remote_port: str = PROBE_PORT, direction: str = "Outbound",
                   protocol: str = "TCP"):
    """Would this flow be allowed? Returns access ('Allow'/'Deny') and rule_name."""
    log(f"Verifying IP flow for vm id {target_id}...")
    return clients.network.network_watchers.begin_verify_ip_flow(
        watcher.resource_group, watcher.name, {
            "target_resource_id": target_id,
            "direction": direction,
            "protocol": protocol,
            "local_port": local_port,
            "remote_port": remote_port,
            "local_ip_address": local_ip,
            "remote_ip_address": remote_ip,
        },
    ).result()


def get_next_hop(clients, watcher: WatcherHandle, target_id: str, source_ip: str,
                 destination_ip: str = PROBE_IP_ADDRESS):
    log("Calculating next hop...")
    return clients.network.network_watchers.begin_get_next_hop(
        watcher.resource_group, watcher.name, {
            "target_resource_id": target_id,
            "source_ip_address": source_ip,
            "destination_ip_address": destination_ip,
        },
    ).result()


def get_topology(clients, watcher: WatcherHandle, resource_group_name: str):
    log("Getting topology...")
    return clients.network.network_watchers.get_topology(
        watcher.resource_group, watcher.name,
        {"target_resource_group_name": resource_group_name},
    )


def get_security_group_view(clients, watcher: WatcherHandle, target_id: str):
    """Effective security rules per network interface of the VM."""
    log("Getting security group view for a vm")
    return clients.network.network_watchers.begin_get_vm_security_rules(
        watcher.resource_group, watcher.name, {"target_resource_id": target_id},
    ).result()


# ---------------------------------------------------------------------------
# NSG flow logs
# ---------------------------------------------------------------------------

def get_flow_log_settings(clients, watcher: WatcherHandle, nsg_id: str):
    log("Getting flow log settings...")
    return clients.network.network_watchers.begin_get_flow_log_status(
        watcher.resource_group, watcher.name, {"target_resource_id": nsg_id},
    ).result()


def enable_flow_log(clients, watcher: WatcherHandle, settings, storage_id: str,
                    retention_days: int = FLOW_LOG_RETENTION_DAYS):
    """Write back the full settings record with logging and retention switched on."""
    updated = copy.deepcopy(settings)
    updated.enabled = True
    updated.storage_id = storage_id
    updated.retention_policy = RetentionPolicyParameters(days=retention_days, enabled=True)
    log("Enabling NSG flow log...")
    return _set_flow_log(clients, watcher, updated)


def disable_flow_log(clients, watcher: WatcherHandle, settings):
    """Write back the full settings record with only `enabled` turned off."""
    updated = copy.deepcopy(settings)
    updated.enabled = False
    log("Disabling NSG flow log...")
    return _set_flow_log(clients, watcher, updated)


def _set_flow_log(clients, watcher: WatcherHandle, settings):
    # No sparse updates for this record: always send the whole thing.
    return clients.network.network_watchers.begin_set_flow_log_configuration(
        watcher.resource_group, watcher.name, settings,
    ).result()


# ---------------------------------------------------------------------------
# Teardown
# ---------------------------------------------------------------------------

def _build_cleanup_plan(clients, ctx: SampleContext) -> List[dict]:
    """Watcher first, then the resource group that holds everything else."""
    plan = []

    watcher = ctx.watcher
    if watcher is not None and watcher.created:
        plan.append({
            "slot": "watcher",
            "label": f"network watcher {watcher.name}",
            "delete": lambda: clients.network.network_watchers.begin_delete(
                watcher.resource_group, watcher.name).result(),
        })

    group = ctx.resource_group
    if group is not None:
        plan.append({
            "slot": "resource_group",
            "label": f"resource group {group.name}",
            "delete": lambda: clients.resource.resource_groups.begin_delete(
                group.name).result(),
        })

    return plan


def teardown(clients, ctx: SampleContext) -> TeardownReport:
    """Delete what this run created. Never raises.

    Deleted (or already missing) resources are cleared from the context, so a
    second call finds nothing to do.
    """
    plan = _build_cleanup_plan(clients, ctx)
    if not plan:
        log("Did not create any resources in Azure. No clean up is necessary")
        return TeardownReport(status=CLEANUP_SKIPPED)

    report = TeardownReport(status=CLEANUP_COMPLETED)
    for entry in plan:
        label = entry["label"]
        log(f"Deleting {label}...")
        try:
            entry["delete"]()
        except ResourceNotFoundError:
            log(f"{label} not found; already deleted")
        except Exception as e:
            report.errors.append(f"{label}: {e}")
            log(f"[WARN] Cleanup of {label} failed: {e}")
            continue
        setattr(ctx, entry["slot"], None)
        report.deleted.append(label)
        log(f"Deleted {label}")

    if report.errors:
        report.status = CLEANUP_PARTIAL
    return report
