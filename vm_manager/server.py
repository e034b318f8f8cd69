"""Unix-socket command server and client for vm-manager."""

from __future__ import annotations

import errno
import json
import socket
import socketserver
from pathlib import Path
from typing import Any, Dict, Optional

from vm_manager.constants import DEFAULT_SOCKET_PATH, MAX_REQUEST_BYTES
from vm_manager.dispatcher import CommandDispatcher
from vm_manager.exceptions import ManagerError
from vm_manager.models import Response
from vm_manager.utils import log


def daemon_running(path: Path) -> bool:
    """True when something accepts connections on the socket at ``path``."""
    if not path.exists() or not path.is_socket():
        return False
    try:
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
            client.settimeout(0.2)
            client.connect(str(path))
    except socket.timeout:
        return False
    except OSError as exc:
        if exc.errno in {errno.ECONNREFUSED, errno.ENOENT}:
            return False
        raise ManagerError(f"Cannot verify socket {path}: {exc}") from exc
    return True


def cleanup_socket(path: Path) -> None:
    """Remove a stale socket file; refuse to touch one a live daemon is serving."""
    if not path.exists():
        return
    if not path.is_socket():
        raise ManagerError(f"{path} exists and is not a socket; refusing to replace it")
    if daemon_running(path):
        raise ManagerError(f"Another vm-manager daemon is already listening on {path}")

    try:
        path.unlink()
        log("INFO", f"Removed stale socket {path}")
    except FileNotFoundError:
        return


class CommandHandler(socketserver.StreamRequestHandler):
    """One request line in, one response line out, then the connection closes."""

    def handle(self) -> None:
        line = self.rfile.readline(MAX_REQUEST_BYTES + 1)
        if len(line) > MAX_REQUEST_BYTES:
            reply = json.dumps(Response.error("Request too large").to_dict()) + "\n"
        elif not line.strip():
            reply = json.dumps(Response.error("Empty request").to_dict()) + "\n"
        else:
            reply = self.server.dispatcher.handle_line(line)
        try:
            self.wfile.write(reply.encode("utf-8"))
            self.wfile.flush()
        except OSError as exc:
            log("WARN", f"Client went away before the response was sent: {exc}")


class CommandServer(socketserver.ThreadingMixIn, socketserver.UnixStreamServer):
    """Accept loop on the main thread; every connection is handled on its own thread."""

    daemon_threads = True

    def __init__(self, socket_path: Path, dispatcher: CommandDispatcher) -> None:
        self.socket_path = Path(socket_path)
        self.dispatcher = dispatcher
        cleanup_socket(self.socket_path)
        try:
            super().__init__(str(self.socket_path), CommandHandler)
        except OSError as exc:
            raise ManagerError(f"Failed to bind command socket {self.socket_path}: {exc}") from exc

    def handle_error(self, request, client_address) -> None:
        log("ERROR", "Error handling connection")
        super().handle_error(request, client_address)

    def server_close(self) -> None:
        super().server_close()
        try:
            self.socket_path.unlink()
        except FileNotFoundError:
            pass

    def serve(self) -> None:
        log("INFO", f"VM Manager daemon is running, listening on {self.socket_path}")
        try:
            self.serve_forever()
        finally:
            self.server_close()


def send_command(
    payload: Dict[str, Any],
    socket_path: Path = DEFAULT_SOCKET_PATH,
    timeout: Optional[float] = None,
) -> Dict[str, Any]:
    """Send one request to a running daemon and return the decoded response."""
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as client:
        client.settimeout(timeout)
        client.connect(str(socket_path))
        client.sendall((json.dumps(payload) + "\n").encode("utf-8"))
        with client.makefile("rb") as stream:
            line = stream.readline()
    if not line:
        raise ManagerError(f"No response from daemon at {socket_path}")
    return json.loads(line)
