"""Flow payloads — encryption and compilation of node/edge graphs into scripts."""

from flowrunner.flows.creator import PythonScriptCreator, ScriptCreator
from flowrunner.flows.crypto import decrypt_flow, encrypt_flow
from flowrunner.flows.models import FlowEdge, FlowGraph, FlowNode, NodeCollection

__all__ = [
    "FlowEdge",
    "FlowGraph",
    "FlowNode",
    "NodeCollection",
    "PythonScriptCreator",
    "ScriptCreator",
    "decrypt_flow",
    "encrypt_flow",
]
