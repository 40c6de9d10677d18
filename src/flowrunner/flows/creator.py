"""Script creators — compile a flow graph into an executable worker script."""

from __future__ import annotations

import asyncio
import json
import logging
import textwrap
from collections import deque
from pathlib import Path
from typing import Optional, Protocol, runtime_checkable

from flowrunner.config.constants import DEFAULT_SCRIPT_NAME
from flowrunner.flows.models import FlowEdge, FlowNode, NodeCollection

logger = logging.getLogger("flowrunner.flows.creator")


@runtime_checkable
class ScriptCreator(Protocol):
    """Anything that can turn nodes and edges into a script on disk."""

    async def create_script(
        self,
        target_dir: Path,
        nodes: list[FlowNode],
        edges: list[FlowEdge],
    ) -> Optional[Path]:
        """Write a script into ``target_dir`` and return its path, or None on failure."""
        ...


# Step bodies run with ``data`` (the node's data dict) and ``emit`` in scope
BUILTIN_ACTIONS: dict[str, str] = {
    "default": "pass",
    "start": "pass",
    "end": "pass",
    "log": 'emit({"log": data.get("message", "")})',
    "sleep": 'wait(float(data.get("seconds", 0)))',
}

_HEADER = textwrap.dedent(
    '''\
    """Generated by flowrunner. Do not edit: regenerated on every schedule."""

    import json
    import os
    import sys
    import threading

    _cancelled = threading.Event()


    def _listen():
        # Raw fd reads: a daemon thread must not hold the sys.stdin lock at exit
        buffer = b""
        while True:
            chunk = os.read(0, 4096)
            if not chunk:
                return
            buffer += chunk
            while b"\\n" in buffer:
                line, buffer = buffer.split(b"\\n", 1)
                try:
                    payload = json.loads(line)
                except ValueError:
                    continue
                if isinstance(payload, dict) and payload.get("cancel"):
                    _cancelled.set()
                    return


    def emit(message):
        print(json.dumps(message), flush=True)


    def wait(seconds):
        _cancelled.wait(seconds)

    '''
)

_FOOTER = textwrap.dedent(
    '''\


    def main():
        threading.Thread(target=_listen, daemon=True).start()
        for node_id, step, data in STEPS:
            if _cancelled.is_set():
                emit({"status": "cancelled", "node": node_id})
                return 0
            emit({"status": "running", "node": node_id})
            step(data)
        emit({"status": "done"})
        return 0


    if __name__ == "__main__":
        sys.exit(main())
    '''
)


def order_nodes(nodes: list[FlowNode], edges: list[FlowEdge]) -> Optional[list[FlowNode]]:
    """Topologically sort ``nodes`` along ``edges``.

    Ties keep the order nodes were declared in. Returns None if an edge
    points at an unknown node or the graph has a cycle.
    """
    by_id = {node.id: node for node in nodes}
    indegree = {node.id: 0 for node in nodes}
    children: dict[str, list[str]] = {node.id: [] for node in nodes}

    for edge in edges:
        if edge.source not in by_id or edge.target not in by_id:
            logger.warning("Edge %s -> %s references an unknown node", edge.source, edge.target)
            return None
        children[edge.source].append(edge.target)
        indegree[edge.target] += 1

    ready = deque(node.id for node in nodes if indegree[node.id] == 0)
    ordered: list[FlowNode] = []
    while ready:
        node_id = ready.popleft()
        ordered.append(by_id[node_id])
        for child in children[node_id]:
            indegree[child] -= 1
            if indegree[child] == 0:
                ready.append(child)

    if len(ordered) != len(nodes):
        logger.warning("Flow graph has a cycle; %d nodes unreachable", len(nodes) - len(ordered))
        return None
    return ordered


class PythonScriptCreator:
    """Renders a flow as a standalone Python script.

    Each node becomes a ``step_<n>(data)`` function whose body comes from the
    node collections (falling back to the built-in actions). The script
    streams JSON status lines on stdout and stops between steps once it reads
    ``{"cancel": true}`` on stdin.
    """

    def __init__(
        self,
        collections: list[NodeCollection] | None = None,
        script_name: str = DEFAULT_SCRIPT_NAME,
    ) -> None:
        self._actions = dict(BUILTIN_ACTIONS)
        for collection in collections or []:
            self._actions.update(collection.actions)
        self._script_name = script_name

    def render(self, nodes: list[FlowNode], edges: list[FlowEdge]) -> Optional[str]:
        ordered = order_nodes(nodes, edges)
        if ordered is None:
            return None

        chunks = [_HEADER]
        steps = []
        for index, node in enumerate(ordered):
            body = self._actions.get(node.type)
            if body is None:
                logger.warning("No action registered for node type %r", node.type)
                return None
            chunks.append(f"\ndef step_{index}(data):\n{textwrap.indent(body, '    ')}\n\n")
            payload = json.dumps(json.dumps(node.data))
            steps.append(f"    ({node.id!r}, step_{index}, json.loads({payload})),")

        chunks.append("\nSTEPS = [\n" + "\n".join(steps) + ("\n" if steps else "") + "]\n")
        chunks.append(_FOOTER)
        return "".join(chunks)

    async def create_script(
        self,
        target_dir: Path,
        nodes: list[FlowNode],
        edges: list[FlowEdge],
    ) -> Optional[Path]:
        source = self.render(nodes, edges)
        if source is None:
            return None
        path = Path(target_dir) / self._script_name
        await asyncio.to_thread(path.write_text, source, encoding="utf-8")
        logger.debug("Wrote %d-node script to %s", len(nodes), path)
        return path
