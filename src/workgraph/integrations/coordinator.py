"""Client side of the coordinator daemon's Unix socket."""

import json
import logging
import socket
from pathlib import Path

from workgraph.errors import best_effort

logger = logging.getLogger(__name__)


class CoordinatorError(Exception):
    pass


def service_state_path(wg_dir: Path) -> Path:
    return Path(wg_dir) / "service" / "state.json"


def load_service_state(wg_dir: Path) -> dict | None:
    path = service_state_path(wg_dir)
    if not path.exists():
        return None
    return json.loads(path.read_text(encoding="utf-8"))


def send_request(wg_dir: Path, request: dict, timeout: float = 2.0) -> dict:
    """Send one JSON request line to the coordinator and read one response line."""
    state = load_service_state(wg_dir)
    if not state or not state.get("socket_path"):
        raise CoordinatorError("Coordinator not running")

    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(timeout)
        sock.connect(state["socket_path"])
        sock.sendall((json.dumps(request) + "\n").encode())
        with sock.makefile("r", encoding="utf-8") as reader:
            for line in reader:
                if line.strip():
                    return json.loads(line)
    raise CoordinatorError("No response from coordinator")


def notify_graph_changed(wg_dir: Path):
    """Tell a running coordinator the graph changed. Never raises."""
    if not service_state_path(wg_dir).exists():
        return
    with best_effort("graph-changed notification", level=logging.DEBUG):
        send_request(wg_dir, {"cmd": "graph_changed"})
