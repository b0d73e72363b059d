#!/usr/bin/env python3
"""Network Watcher sample CLI — provision, diagnose, tear down.

Usage:
    python network_watcher_sample.py [--location REGION] [--resource-group NAME]
                                     [--reuse-watcher] [--capture-time-limit SECONDS]

Creates a resource group, a Network Watcher, an NSG-protected VNet with one
Linux VM and a storage account; runs a packet capture, IP flow verification,
next hop, topology, security group view and NSG flow log configuration; then
deletes the watcher and the resource group. Credentials come from CLIENT_ID,
CLIENT_SECRET, TENANT_ID and SUBSCRIPTION_ID (a local .env file is honoured).

Exit code 0 when every step succeeded, 1 otherwise.
"""

import argparse
import sys
from typing import Optional

from dotenv import load_dotenv

from watcher_operations import (
    DEFAULT_CAPTURE_TIME_LIMIT, DEFAULT_LOCATION, FLOW_LOG_RETENTION_DAYS,
    PROBE_IP_ADDRESS, PacketCaptureSession, SampleContext, disable_flow_log,
    enable_flow_log, get_flow_log_settings, get_next_hop, get_security_group_view,
    get_topology, new_context, provision_network_fabric, provision_network_watcher,
    provision_resource_group, provision_storage_account, teardown, verify_ip_flow,
)
from watcher_session import AuthenticationFailedError, create_session, log

load_dotenv()

EXIT_OK = 0
EXIT_FAILED = 1


# ---------------------------------------------------------------------------
# Result summaries (stdout)
# ---------------------------------------------------------------------------

def describe_fabric(ctx: SampleContext) -> str:
    return (f"Network fabric:\n"
            f"\tNetwork security group: {ctx.nsg.name}\n"
            f"\tVirtual network: {ctx.vnet.name}\n"
            f"\tSubnet id: {ctx.subnet.id}\n"
            f"\tPublic IP address: {ctx.public_ip.name}\n"
            f"\tNetwork interface: {ctx.nic.name}\n"
            f"\tVirtual machine: {ctx.vm.name} ({ctx.private_ip})")


def describe_packet_capture(snapshot) -> str:
    record = snapshot.record
    storage = getattr(record, "storage_location", None)
    protocols = [f.protocol for f in (getattr(record, "filters", None) or [])]
    lines = [
        f"Packet capture: {record.name}",
        f"\tTarget id: {record.target}",
        f"\tTime limit in seconds: {record.time_limit_in_seconds}",
        f"\tStorage account id: {getattr(storage, 'storage_id', None)}",
        f"\tStorage account path: {getattr(storage, 'storage_path', None)}",
        f"\tFilter protocols: {', '.join(str(p) for p in protocols) or 'none'}",
        f"\tProvisioning state: {getattr(record, 'provisioning_state', None)}",
        f"\tCapture status: {snapshot.status}",
    ]
    return "\n".join(lines)


def describe_ip_flow(result) -> str:
    return (f"IP flow verification:\n"
            f"\tAccess: {result.access}\n"
            f"\tRule name: {result.rule_name}")


def describe_next_hop(result) -> str:
    return (f"Next hop:\n"
            f"\tNext hop type: {result.next_hop_type}\n"
            f"\tNext hop IP address: {result.next_hop_ip_address}\n"
            f"\tRoute table id: {result.route_table_id}")


def describe_topology(topology) -> str:
    resources = topology.resources or []
    lines = [f"Topology: {topology.id}",
             f"\tResources count: {len(resources)}"]
    for resource in resources:
        associations = resource.associations or []
        lines.append(f"\tResource {resource.name} ({resource.location}): "
                     f"{len(associations)} association(s)")
        for assoc in associations:
            lines.append(f"\t\t{assoc.association_type} -> {assoc.name}")
    return "\n".join(lines)


def describe_security_group_view(view) -> str:
    interfaces = view.network_interfaces or []
    lines = [f"Security group view: {len(interfaces)} network interface(s)"]
    for nic in interfaces:
        rules = nic.security_rule_associations.effective_security_rules or []
        lines.append(f"\tNetwork interface {nic.id}")
        for rule in rules:
            lines.append(f"\t\t{rule.name}: {rule.access} {rule.direction} "
                         f"{rule.protocol} priority {rule.priority}")
    return "\n".join(lines)


def describe_flow_log(settings) -> str:
    retention = getattr(settings, "retention_policy", None)
    return (f"Flow log settings:\n"
            f"\tTarget resource id: {settings.target_resource_id}\n"
            f"\tFlow logging enabled: {settings.enabled}\n"
            f"\tStorage account id: {settings.storage_id}\n"
            f"\tRetention policy enabled: {getattr(retention, 'enabled', None)}\n"
            f"\tRetention policy days: {getattr(retention, 'days', None)}")


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------

def _run_pipeline(clients, ctx: SampleContext, reuse_watcher: bool,
                  capture_time_limit: int) -> dict:
    results = {}

    provision_resource_group(clients, ctx)
    log("To note: one subscription only has a Network Watcher in the same region")
    watcher = provision_network_watcher(clients, ctx, reuse_existing=reuse_watcher)

    vm = provision_network_fabric(clients, ctx)
    print(describe_fabric(ctx))
    storage = provision_storage_account(clients, ctx)

    # Packet capture lifecycle
    capture = PacketCaptureSession(clients, watcher, ctx.names["packet_capture"])
    capture.start(vm.id, storage.id, time_limit_seconds=capture_time_limit)
    capture.stop()
    snapshot = capture.fetch()
    print(describe_packet_capture(snapshot))
    if snapshot.status != "Stopped":
        log(f"[WARN] Packet capture reports status {snapshot.status} after stop")
    capture.delete()
    results["packet_capture"] = snapshot

    results["ip_flow"] = verify_ip_flow(clients, watcher, vm.id, ctx.private_ip)
    print(describe_ip_flow(results["ip_flow"]))

    results["next_hop"] = get_next_hop(clients, watcher, vm.id, ctx.private_ip,
                                       PROBE_IP_ADDRESS)
    print(describe_next_hop(results["next_hop"]))

    results["topology"] = get_topology(clients, watcher, ctx.resource_group.name)
    print(describe_topology(results["topology"]))

    results["security_group_view"] = get_security_group_view(clients, watcher, vm.id)
    print(describe_security_group_view(results["security_group_view"]))

    settings = get_flow_log_settings(clients, watcher, ctx.nsg.id)
    print(describe_flow_log(settings))
    enabled = enable_flow_log(clients, watcher, settings, storage.id,
                              retention_days=FLOW_LOG_RETENTION_DAYS)
    print(describe_flow_log(enabled))
    current = get_flow_log_settings(clients, watcher, ctx.nsg.id)
    disabled = disable_flow_log(clients, watcher, current)
    print(describe_flow_log(disabled))
    results["flow_log"] = {"initial": settings, "enabled": enabled, "disabled": disabled}

    return results


def run_sample(clients, ctx: SampleContext, reuse_watcher: bool = False,
               capture_time_limit: int = DEFAULT_CAPTURE_TIME_LIMIT) -> dict:
    """Run the whole scenario. Teardown runs on every exit path; its report lands on ctx."""
    try:
        return _run_pipeline(clients, ctx, reuse_watcher, capture_time_limit)
    finally:
        ctx.teardown_report = teardown(clients, ctx)
        report = ctx.teardown_report
        log(f"Teardown {report.status}: {len(report.deleted)} deleted, "
             f"{len(report.errors)} error(s)")


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def main(argv: Optional[list] = None) -> int:
    parser = argparse.ArgumentParser(description="Azure Network Watcher sample: provision, diagnose, tear down")
    parser.add_argument("--location",           default=DEFAULT_LOCATION,
                        help=f"Azure region for every resource (default: {DEFAULT_LOCATION})")
    parser.add_argument("--resource-group",     default=None, metavar="NAME",
                        help="Resource group name (default: generated per run)")
    parser.add_argument("--reuse-watcher",      action="store_true",
                        help="Use the region's existing Network Watcher instead of failing")
    parser.add_argument("--capture-time-limit", type=int, default=DEFAULT_CAPTURE_TIME_LIMIT,
                        metavar="SECONDS",
                        help=f"Packet capture time limit (default: {DEFAULT_CAPTURE_TIME_LIMIT})")
    args = parser.parse_args(argv)

    # Nothing exists yet on this path, so there is nothing to tear down.
    try:
        clients = create_session()
    except AuthenticationFailedError as e:
        log(f"[ERROR] {e}")
        return EXIT_FAILED

    ctx = new_context(args.location, args.resource_group)
    try:
        run_sample(clients, ctx, reuse_watcher=args.reuse_watcher,
                   capture_time_limit=args.capture_time_limit)
    except Exception as e:
        log(f"[ERROR] {type(e).__name__}: {e}")
        return EXIT_FAILED

    log("Sample completed")
    return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
