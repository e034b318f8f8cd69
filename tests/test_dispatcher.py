"""Tests for vm_manager.dispatcher (request validation and routing)."""

from __future__ import annotations

import json

import pytest

from vm_manager.dispatcher import parse_command
from vm_manager.exceptions import ValidationError
from vm_manager.models import Command, Response, VmState


def _create(name="alpha", memory=2048, vcpus=2, **extra):
    params = {"vmName": name, "memoryMB": memory, "vcpus": vcpus}
    params.update(extra)
    return {"command": "create", "params": params}


class TestParseCommand:
    def test_valid(self):
        assert parse_command({"command": "start", "params": {"vmName": "a"}}) == Command("start", {"vmName": "a"})

    def test_params_default_to_empty(self):
        assert parse_command({"command": "start"}).params == {}
        assert parse_command({"command": "start", "params": None}).params == {}

    @pytest.mark.parametrize(
        "payload,message",
        [
            ([], "must be a JSON object"),
            ({}, "missing the 'command' field"),
            ({"command": 5}, "missing the 'command' field"),
            ({"command": "start", "params": [1]}, "'params' must be a JSON object"),
        ],
    )
    def test_rejects_malformed(self, payload, message):
        with pytest.raises(ValidationError, match=message):
            parse_command(payload)


class TestDispatch:
    def test_create_then_repeat(self, dispatcher, gateway, image_tool):
        first = dispatcher.dispatch(_create())
        assert first == Response.success("Successfully created and started VM alpha")

        second = dispatcher.dispatch(_create())
        assert second == Response.error("VM already exists. Use the 'start' command instead.")
        assert gateway.ops("define") == ["alpha"]
        assert len(image_tool.calls) == 1

    def test_start_unknown_vm(self, dispatcher):
        response = dispatcher.dispatch({"command": "start", "params": {"vmName": "ghost"}})
        assert response.status == "error"
        assert "ghost" in response.message

    def test_pause_unknown_vm(self, dispatcher):
        response = dispatcher.dispatch({"command": "pause", "params": {"vmName": "ghost"}})
        assert response.status == "error"
        assert "not found" in response.message

    def test_full_cycle(self, dispatcher, gateway, viewer):
        dispatcher.dispatch(_create())
        assert dispatcher.dispatch({"command": "pause", "params": {"vmName": "alpha"}}).message == (
            "VM alpha stopped successfully."
        )
        assert gateway.states["alpha"] == VmState.PAUSED
        assert dispatcher.dispatch({"command": "resume", "params": {"vmName": "alpha"}}).ok
        assert viewer.launched == ["alpha"]
        assert gateway.states["alpha"] == VmState.RUNNING

    def test_unknown_verb(self, dispatcher, gateway):
        response = dispatcher.dispatch({"command": "destroy", "params": {"vmName": "alpha"}})
        assert response == Response.error("Unrecognized command: destroy")
        assert gateway.calls == []

    @pytest.mark.parametrize(
        "payload,message",
        [
            ({"command": "create", "params": {"memoryMB": 1, "vcpus": 1}}, "Missing parameter 'vmName'"),
            ({"command": "create", "params": {"vmName": "a", "vcpus": 1}}, "Missing parameter 'memoryMB'"),
            (_create(memory="2048"), "'memoryMB' must be an integer"),
            (_create(vcpus=True), "'vcpus' must be an integer"),
            (_create(vcpus=0), "'vcpus' must be >= 1"),
            (_create(memory=-1), "'memoryMB' must be >= 1"),
            (_create(name=""), "VM name must be a non-empty string"),
            (_create(name="a/b"), "Invalid VM name"),
            ({"command": "pause", "params": {}}, "Missing parameter 'vmName'"),
        ],
    )
    def test_parameter_validation(self, dispatcher, gateway, payload, message):
        response = dispatcher.dispatch(payload)
        assert response.status == "error"
        assert message in response.message
        assert gateway.calls == []

    def test_template_parameter(self, dispatcher, gateway, seed_builder):
        assert dispatcher.dispatch(_create("beta", template="linux-cloudinit")).ok
        assert "beta-seed.iso" in gateway.definitions["beta"]

    def test_unknown_template_parameter(self, dispatcher, gateway):
        response = dispatcher.dispatch(_create(template="plan9"))
        assert "Unknown template 'plan9'" in response.message
        assert gateway.calls == []

    def test_unexpected_exception_becomes_error(self, dispatcher, gateway):
        gateway.fail_on["lookup"] = KeyError("boom")
        response = dispatcher.dispatch({"command": "start", "params": {"vmName": "alpha"}})
        assert response.status == "error"
        assert response.message.startswith("Unexpected error:")

    def test_accepts_command_objects(self, dispatcher):
        assert dispatcher.dispatch(Command("create", {"vmName": "alpha", "memoryMB": 512, "vcpus": 1})).ok


class TestHandleLine:
    def test_roundtrip(self, dispatcher):
        line = dispatcher.handle_line(json.dumps(_create()).encode() + b"\n")
        assert line.endswith("\n")
        assert json.loads(line) == {"status": "success", "message": "Successfully created and started VM alpha"}

    def test_invalid_json(self, dispatcher, gateway):
        reply = json.loads(dispatcher.handle_line(b"{not json"))
        assert reply["status"] == "error"
        assert reply["message"].startswith("Invalid JSON request")
        assert gateway.calls == []

    def test_invalid_utf8(self, dispatcher):
        reply = json.loads(dispatcher.handle_line(b"\xff\xfe"))
        assert reply["message"].startswith("Invalid JSON request")

    def test_deeply_nested_json(self, dispatcher, gateway):
        depth = 50000
        reply = json.loads(dispatcher.handle_line("[" * depth + "]" * depth))
        assert reply["status"] == "error"
        assert reply["message"].startswith("Invalid JSON request")
        assert gateway.calls == []
