"""Command validation and routing for vm-manager."""

from __future__ import annotations

import json
import traceback
from typing import Any, Dict, Union

from vm_manager.descriptor import get_template
from vm_manager.exceptions import ManagerError, ValidationError
from vm_manager.lifecycle import LifecycleController
from vm_manager.models import Command, Response, VmSpec
from vm_manager.utils import log, validate_vm_name

VERBS = ("create", "start", "pause", "resume")


def parse_command(payload: Any) -> Command:
    """Check the request envelope; parameter checks happen per verb."""
    if not isinstance(payload, dict):
        raise ValidationError("Request must be a JSON object")
    verb = payload.get("command")
    if not isinstance(verb, str) or not verb:
        raise ValidationError("Request is missing the 'command' field")
    params = payload.get("params", {})
    if params is None:
        params = {}
    if not isinstance(params, dict):
        raise ValidationError("'params' must be a JSON object")
    return Command(verb=verb, params=params)


def _positive_int(params: Dict[str, Any], key: str) -> int:
    if key not in params:
        raise ValidationError(f"Missing parameter '{key}'")
    value = params[key]
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"Parameter '{key}' must be an integer (got {value!r})")
    if value < 1:
        raise ValidationError(f"Parameter '{key}' must be >= 1 (got {value})")
    return value


def _vm_name(params: Dict[str, Any]) -> str:
    if "vmName" not in params:
        raise ValidationError("Missing parameter 'vmName'")
    return validate_vm_name(params["vmName"])


class CommandDispatcher:
    def __init__(self, controller: LifecycleController, default_template: str) -> None:
        self.controller = controller
        self.default_template = default_template

    def build_spec(self, params: Dict[str, Any]) -> VmSpec:
        template = params.get("template", self.default_template)
        get_template(template)
        return VmSpec(
            name=_vm_name(params),
            memory_mb=_positive_int(params, "memoryMB"),
            vcpus=_positive_int(params, "vcpus"),
            template=template,
        )

    def _route(self, command: Command) -> str:
        if command.verb == "create":
            return self.controller.create(self.build_spec(command.params))
        if command.verb == "start":
            return self.controller.start(_vm_name(command.params))
        if command.verb == "pause":
            return self.controller.pause(_vm_name(command.params))
        if command.verb == "resume":
            return self.controller.resume(_vm_name(command.params))
        raise ValidationError(f"Unrecognized command: {command.verb}")

    def dispatch(self, command: Union[Command, Any]) -> Response:
        """Run one command. Never raises; every failure becomes an error response."""
        try:
            if not isinstance(command, Command):
                command = parse_command(command)
            message = self._route(command)
        except ManagerError as exc:
            log("ERROR", str(exc))
            return Response.error(str(exc))
        except Exception as exc:
            log("ERROR", f"Unexpected error: {exc}")
            traceback.print_exc()
            return Response.error(f"Unexpected error: {exc}")
        log("SUCCESS", message)
        return Response.success(message)

    def handle_line(self, raw: Union[bytes, str]) -> str:
        """Decode one request line and return the encoded response line."""
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            payload = json.loads(raw)
        except (UnicodeDecodeError, ValueError, RecursionError) as exc:
            response = Response.error(f"Invalid JSON request: {exc}")
        else:
            response = self.dispatch(payload)
        return json.dumps(response.to_dict()) + "\n"
