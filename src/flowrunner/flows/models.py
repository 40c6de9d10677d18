"""Pydantic models for decrypted flow graphs."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class FlowNode(BaseModel):
    """One step of a flow. ``type`` selects the action, ``data`` holds its inputs."""

    model_config = ConfigDict(extra="allow")

    id: str
    type: str = "default"
    data: dict[str, Any] = Field(default_factory=dict)


class FlowEdge(BaseModel):
    """A directed connection: ``target`` runs after ``source``."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    source: str
    target: str


class FlowGraph(BaseModel):
    nodes: list[FlowNode] = Field(default_factory=list)
    edges: list[FlowEdge] = Field(default_factory=list)


class NodeCollection(BaseModel):
    """A named set of node actions: node ``type`` → Python source of the step body."""

    name: str
    actions: dict[str, str] = Field(default_factory=dict)
