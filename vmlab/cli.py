"""CLI entry points for vmlab."""

from __future__ import annotations

import argparse
import dataclasses
import signal
import time
import uuid
from typing import List, Optional

from vmlab.config import LabConfig, parse_env
from vmlab.constants import _SENSITIVE_FIELDS
from vmlab.exceptions import LabError
from vmlab.lab import Lab
from vmlab.store import LabStore, load_inventory
from vmlab.utils import kvm_available, log, set_verbose

LOG_LEVELS = ("DEBUG", "INFO")


def list_images(store: LabStore) -> None:
    images = store.list_images()
    if not images:
        log("WARN", "No images found")
        return
    width = max(len(image.name) for image in images)
    for image in images:
        parent = store.get_image(image.parent_id).name if image.parent_id else "-"
        description = f"  {image.description}" if image.description else ""
        print(f"  {image.name:<{width}}  {image.path}  (parent={parent}){description}")


def list_nodes(store: LabStore) -> None:
    nodes = store.list_nodes()
    if not nodes:
        log("WARN", "No nodes found")
        return
    width = max(len(node.name) for node in nodes)
    for node in nodes:
        image = store.get_image(node.image_id)
        vnc = f", vnc={node.vnc_port}" if node.vnc_port else ""
        print(f"  {node.name:<{width}}  {node.status.value}  (image={image.name}{vnc})")


def show_config(cfg) -> None:
    """Print a resolved configuration dataclass, masking secrets."""
    for field in dataclasses.fields(cfg):
        value = getattr(cfg, field.name)
        if field.name in _SENSITIVE_FIELDS and value is not None:
            print(f"  {field.name}: ********")
        elif dataclasses.is_dataclass(value):
            print(f"  {field.name}:")
            for sub_field in dataclasses.fields(value):
                sub_value = getattr(value, sub_field.name)
                if sub_field.name in _SENSITIVE_FIELDS:
                    sub_value = "********"
                print(f"    {sub_field.name}: {sub_value}")
        else:
            print(f"  {field.name}: {value}")


def dry_run(cfg: LabConfig, lab: Lab) -> int:
    log("INFO", "=== Configuration ===")
    show_config(cfg)
    log("INFO", "=== Environment Checks ===")
    if kvm_available():
        log("SUCCESS", "KVM:      available (/dev/kvm)")
    elif cfg.qemu.enable_kvm:
        log("ERROR", "KVM:      NOT available but ENABLE_KVM is set")
    else:
        log("WARN", "KVM:      NOT available (will use TCG)")
    failures = 0
    for node in lab.store.list_nodes():
        try:
            chain = lab.image_chain(node.image_id)
            lab.overlays.image_path(chain[-1])
        except LabError as exc:
            log("ERROR", f"Node {node.name}: {exc}")
            failures += 1
            continue
        log("INFO", f"Node {node.name}: {' -> '.join(image.name for image in chain)}")
    if failures:
        log("ERROR", f"=== Dry-run found {failures} broken node(s) ===")
        return 1
    log("INFO", "=== Dry-run complete (no node started) ===")
    return 0


def wait_until_stopped(lab: Lab, node_id: uuid.UUID, poll_interval: float = 1.0) -> None:
    """Block until the node's QEMU process exits; SIGTERM/SIGINT stop it gracefully."""
    shutdown_requested = False

    def _request_shutdown(signum, frame):
        nonlocal shutdown_requested
        log("INFO", f"{signal.Signals(signum).name} received, shutting down node")
        shutdown_requested = True

    prev_sigterm = signal.signal(signal.SIGTERM, _request_shutdown)
    prev_sigint = signal.signal(signal.SIGINT, _request_shutdown)
    try:
        while True:
            instance = lab.supervisor.get_instance(node_id)
            if instance is None or not lab.supervisor.is_running(instance):
                lab.reap()
                log("INFO", f"Node {node_id} is no longer running")
                return
            if shutdown_requested:
                lab.stop_node(node_id)
                return
            time.sleep(poll_interval)
    finally:
        signal.signal(signal.SIGTERM, prev_sigterm)
        signal.signal(signal.SIGINT, prev_sigint)


def run_command(lab: Lab, args: argparse.Namespace) -> int:
    node = lab.store.find_node(args.node)
    qemu_config = dataclasses.replace(lab.config.qemu)
    if args.memory is not None:
        qemu_config.memory_mb = args.memory
    if args.cpus is not None:
        qemu_config.cpu_cores = args.cpus
    instance = lab.run_node(node.id, qemu_config, vnc=args.vnc)
    if instance.vnc_port is not None:
        log("INFO", f"VNC: {lab.config.vnc_host}:{instance.vnc_port}")
    if args.remote_view:
        connection = lab.open_remote_view(node.id)
        log("SUCCESS", f"Remote desktop: {connection.client_url}")
        log("INFO", f"Share link: {connection.share_url}")
    wait_until_stopped(lab, node.id)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="vmlab QEMU lab node manager")
    parser.add_argument("--list-images", action="store_true", help="List images from the inventory and exit")
    parser.add_argument("--list-nodes", action="store_true", help="List nodes from the inventory and exit")
    parser.add_argument("--show-config", action="store_true", help="Show resolved configuration and exit")
    parser.add_argument("--dry-run", action="store_true", help="Validate config, inventory and image chains, then exit")
    parser.add_argument("--log-level", type=str.upper, choices=LOG_LEVELS, default=None, help="Log verbosity (default: INFO)")

    sub = parser.add_subparsers(dest="command")
    run_parser = sub.add_parser("run", help="Start a node and wait until it stops")
    run_parser.add_argument("node", help="Node name or id")
    run_parser.add_argument("--vnc", action="store_true", help="Start with a VNC display allocated")
    run_parser.add_argument("--remote-view", action="store_true", help="Register the node with the gateway")
    run_parser.add_argument("--memory", type=int, default=None, metavar="MB")
    run_parser.add_argument("--cpus", type=int, default=None, metavar="N")

    wipe_parser = sub.add_parser("wipe", help="Reset a stopped node to its image")
    wipe_parser.add_argument("node", help="Node name or id")

    chain_parser = sub.add_parser("chain", help="Print the resolved chain of an image")
    chain_parser.add_argument("image", help="Image name or id")

    collapse_parser = sub.add_parser("collapse", help="Commit an overlay into its backing file")
    collapse_parser.add_argument("overlay", help="Overlay path relative to OVERLAY_DIR")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    if args.log_level is not None:
        set_verbose(args.log_level == "DEBUG")

    try:
        cfg = parse_env()
    except LabError as exc:
        log("ERROR", str(exc))
        return 1

    if args.show_config:
        show_config(cfg)
        return 0

    try:
        store = load_inventory(cfg.inventory_path)
    except LabError as exc:
        log("ERROR", str(exc))
        return 1

    if args.list_images:
        list_images(store)
        return 0
    if args.list_nodes:
        list_nodes(store)
        return 0

    lab = Lab(cfg, store)
    try:
        if args.dry_run:
            return dry_run(cfg, lab)
        if args.command == "run":
            return run_command(lab, args)
        if args.command == "wipe":
            node = store.find_node(args.node)
            overlay = lab.wipe_node(node.id)
            log("SUCCESS", f"Node {node.name} reset ({overlay})")
            return 0
        if args.command == "chain":
            image = store.find_image(args.image)
            for depth, item in enumerate(lab.image_chain(image.id)):
                print(f"  {'  ' * depth}{item.name}  {item.path}")
            return 0
        if args.command == "collapse":
            backing = lab.collapse_overlay(args.overlay)
            log("SUCCESS", f"Overlay committed into {backing}")
            return 0
        parser.print_help()
        return 2
    except LabError as exc:
        log("ERROR", str(exc))
        return 1
    except Exception as exc:
        log("ERROR", f"Unexpected error: {exc}")
        import traceback

        traceback.print_exc()
        return 1
    finally:
        lab.shutdown()
