"""CLI entry points for vm-manager."""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional, Tuple

from vm_manager.config import load_settings
from vm_manager.constants import GOLDEN_VM_MEMORY_MB, GOLDEN_VM_NAME, GOLDEN_VM_TEMPLATE, GOLDEN_VM_VCPUS
from vm_manager.descriptor import TEMPLATES
from vm_manager.dispatcher import CommandDispatcher
from vm_manager.exceptions import ManagerError
from vm_manager.lifecycle import LifecycleController, SlotRegistry
from vm_manager.models import Command, Settings
from vm_manager.server import daemon_running, send_command
from vm_manager.storage import StorageProvisioner
from vm_manager.tools import ViewerLauncher
from vm_manager.utils import log


class _ArgumentParser(argparse.ArgumentParser):
    """Usage errors exit with status 1 like every other failure."""

    def error(self, message: str) -> None:  # type: ignore[override]
        self.print_usage(sys.stderr)
        self.exit(1, f"{self.prog}: error: {message}\n")


def build_dispatcher(settings: Settings) -> Tuple[CommandDispatcher, object]:
    """Wire the gateway, provisioner and controller. Returns (dispatcher, gateway)."""
    from vm_manager.gateway import LibvirtGateway

    gateway = LibvirtGateway(settings.libvirt_uri, timeout=settings.gateway_timeout)
    gateway.connect()
    controller = LifecycleController(
        gateway,
        StorageProvisioner(settings),
        ViewerLauncher(settings.viewer_uri, timeout=settings.viewer_timeout),
        SlotRegistry(timeout=settings.slot_timeout),
    )
    return CommandDispatcher(controller, settings.default_template), gateway


def list_templates() -> None:
    max_key = max(len(k) for k in TEMPLATES)
    for key in sorted(TEMPLATES):
        template = TEMPLATES[key]
        print(f"  {key:<{max_key}}  {template.description}  (disk={template.storage_policy})")


def run_daemon(settings: Settings) -> int:
    from vm_manager.server import CommandServer

    dispatcher, gateway = build_dispatcher(settings)
    try:
        server = CommandServer(settings.socket_path, dispatcher)
        try:
            server.serve()
        except KeyboardInterrupt:
            log("INFO", "Shutting down")
    finally:
        gateway.close()
    return 0


def run_locally(command: Command, settings: Settings) -> bool:
    dispatcher, gateway = build_dispatcher(settings)
    try:
        return dispatcher.dispatch(command).ok
    finally:
        gateway.close()


def forward_to_daemon(command: Command, socket_path: Path) -> bool:
    """Hand the command to the running daemon so its per-VM locks apply."""
    log("DEBUG", f"Forwarding {command.verb} to the daemon at {socket_path}")
    try:
        reply = send_command({"command": command.verb, "params": command.params}, socket_path=socket_path)
    except (OSError, ValueError) as exc:
        raise ManagerError(f"Failed to talk to the daemon at {socket_path}: {exc}") from exc
    message = str(reply.get("message", ""))
    if reply.get("status") == "success":
        log("SUCCESS", message)
        return True
    log("ERROR", message)
    return False


def command_from_args(args: argparse.Namespace) -> Command:
    if args.action == "spin_up":
        params = {"vmName": args.name, "memoryMB": args.memory_mb, "vcpus": args.vcpus}
        if args.template:
            params["template"] = args.template
        return Command("create", params)
    if args.action == "golden_image":
        return Command(
            "create",
            {"vmName": GOLDEN_VM_NAME, "memoryMB": args.memory, "vcpus": args.vcpus, "template": GOLDEN_VM_TEMPLATE},
        )
    verb = {"start": "start", "stop": "pause", "open": "resume"}[args.action]
    return Command(verb, {"vmName": args.name})


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(prog="vm-manager", description="Provision and control libvirt VMs")
    parser.add_argument("--config", type=Path, default=None, help="Path to the YAML settings file")
    sub = parser.add_subparsers(dest="action", metavar="COMMAND", parser_class=_ArgumentParser)

    spin_up = sub.add_parser("spin_up", help="Create and start a new VM")
    spin_up.add_argument("name")
    spin_up.add_argument("memory_mb", type=int, metavar="memoryMB")
    spin_up.add_argument("vcpus", type=int)
    spin_up.add_argument("--template", choices=sorted(TEMPLATES), default=None)

    golden = sub.add_parser("golden_image", help=f"Create and start the installer VM '{GOLDEN_VM_NAME}'")
    golden.add_argument("--memory", type=int, default=GOLDEN_VM_MEMORY_MB, metavar="MB")
    golden.add_argument("--vcpus", type=int, default=GOLDEN_VM_VCPUS)

    for action, help_text in (
        ("start", "Start or resume a defined VM"),
        ("stop", "Save the VM state and stop it"),
        ("open", "Resume the VM and open its display"),
    ):
        sub.add_parser(action, help=help_text).add_argument("name")

    sub.add_parser("serve", help="Run the command daemon (default)")
    sub.add_parser("templates", help="List machine templates and exit")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)

    if args.action == "templates":
        list_templates()
        return 0

    try:
        settings = load_settings(args.config)
    except ManagerError as exc:
        log("ERROR", str(exc))
        return 1

    if args.action in (None, "serve"):
        try:
            return run_daemon(settings)
        except ManagerError as exc:
            log("ERROR", str(exc))
            return 1

    command = command_from_args(args)
    if command.verb == "create":
        params = command.params
        log("INFO", "VM Configuration:")
        log("INFO", f"Name: {params['vmName']} | Memory: {params['memoryMB']} MB | vCPUs: {params['vcpus']}")

    try:
        if daemon_running(settings.socket_path):
            ok = forward_to_daemon(command, settings.socket_path)
        else:
            ok = run_locally(command, settings)
    except ManagerError as exc:
        log("ERROR", str(exc))
        ok = False

    if args.action == "golden_image":
        if ok:
            log("SUCCESS", "Successfully created and started the Golden Image VM")
        else:
            log("ERROR", "Failed to create and start the Golden Image VM")
    return 0 if ok else 1
