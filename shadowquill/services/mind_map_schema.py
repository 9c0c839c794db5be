"""Pydantic models describing a story mind map as exchanged with the browser.

The shape mirrors the node/edge format of the diagramming surface: nodes carry
an ``id``, a canvas ``position`` and ``data.label``; edges connect two node ids.
Presentation fields the surface adds (``type``, ``style``, ``animated`` ...)
are kept as extras so a save/load round trip returns exactly what was sent.
"""

from __future__ import annotations

from typing import Any, List, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError


class MindMapError(RuntimeError):
    """Base class for mind map failures."""


class MindMapSchemaError(MindMapError):
    """Raised when a graph payload does not match the expected structure."""


class NodePosition(BaseModel):
    x: float
    y: float


class NodeData(BaseModel):
    model_config = ConfigDict(extra="allow")

    label: str


class MindMapNode(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    position: Optional[NodePosition] = None
    data: NodeData


class MindMapEdge(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str = Field(min_length=1)
    source: str = Field(min_length=1)
    target: str = Field(min_length=1)
    label: Optional[str] = None


class Viewport(BaseModel):
    x: float = 0.0
    y: float = 0.0
    zoom: float = 1.0


class MindMapGraph(BaseModel):
    nodes: List[MindMapNode] = Field(default_factory=list)
    edges: List[MindMapEdge] = Field(default_factory=list)
    viewport: Optional[Viewport] = None

    @classmethod
    def from_payload(cls, payload: Any) -> "MindMapGraph":
        """Validate ``payload`` and raise :class:`MindMapSchemaError` on mismatch.

        ``nodes`` and ``edges`` are required and must both be lists; this is
        stricter than the model defaults, which only exist for building graphs
        in code.
        """

        if not isinstance(payload, Mapping):
            raise MindMapSchemaError("Mind map data must be a JSON object.")
        for key in ("nodes", "edges"):
            if key not in payload:
                raise MindMapSchemaError(f"Mind map data is missing the '{key}' array.")
            if not isinstance(payload[key], list):
                raise MindMapSchemaError(f"Mind map '{key}' must be an array.")
        try:
            return cls.model_validate(dict(payload))
        except ValidationError as exc:
            first = exc.errors()[0] if exc.errors() else {}
            location = ".".join(str(part) for part in first.get("loc", ()))
            message = first.get("msg", "invalid value")
            raise MindMapSchemaError(f"Invalid mind map data at '{location}': {message}") from exc

    def to_payload(self) -> dict:
        # Only the optional declared fields are dropped when empty; explicit
        # nulls in client extras (``parentNode``, ``sourceHandle`` ...) stay.
        payload = {
            "nodes": [
                node.model_dump(mode="json", exclude={"position"} if node.position is None else None)
                for node in self.nodes
            ],
            "edges": [
                edge.model_dump(mode="json", exclude={"label"} if edge.label is None else None)
                for edge in self.edges
            ],
        }
        if self.viewport is not None:
            payload["viewport"] = self.viewport.model_dump(mode="json")
        return payload

    def dangling_edges(self) -> List[MindMapEdge]:
        """Edges whose source or target does not name a node in this graph."""

        node_ids = {node.id for node in self.nodes}
        return [edge for edge in self.edges if edge.source not in node_ids or edge.target not in node_ids]

    def self_edges(self) -> List[MindMapEdge]:
        return [edge for edge in self.edges if edge.source == edge.target]

    def duplicate_node_ids(self) -> List[str]:
        seen: set = set()
        duplicates: List[str] = []
        for node in self.nodes:
            if node.id in seen and node.id not in duplicates:
                duplicates.append(node.id)
            seen.add(node.id)
        return duplicates


__all__ = [
    "MindMapEdge",
    "MindMapError",
    "MindMapGraph",
    "MindMapNode",
    "MindMapSchemaError",
    "NodeData",
    "NodePosition",
    "Viewport",
]
