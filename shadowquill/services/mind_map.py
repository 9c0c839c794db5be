"""In-memory editing model for a story mind map.

:class:`MindMapEditor` owns the node/edge/viewport graph of one story while it
is being edited. Rendering, hit-testing and dragging belong to the diagramming
surface; the editor only applies the resulting mutations and enforces the
rules around them:

* the two-click "add edge" interaction (``IDLE`` -> ``AWAITING_SOURCE`` ->
  ``AWAITING_TARGET`` -> ``IDLE``), which never produces a self-edge;
* adding nodes is refused while that interaction is in progress;
* saving and regenerating replace state only as a whole, never partially.

Persistence goes through a :class:`MindMapStore`; generation goes through any
callable returning a ``{"nodes": [...], "edges": [...]}`` mapping.
"""

from __future__ import annotations

import enum
import json
import logging
import random
import uuid
from typing import Any, Callable, Iterable, List, Mapping, Optional, Protocol, Sequence, Tuple, Union

from ..extensions import db
from ..models import Story
from .mind_map_schema import (
    MindMapEdge,
    MindMapError,
    MindMapGraph,
    MindMapNode,
    MindMapSchemaError,
    NodeData,
    NodePosition,
    Viewport,
)

LOGGER = logging.getLogger(__name__)



def _log_graph_problems(graph: MindMapGraph, subject: str) -> None:
    """Warn about edges and ids the editor itself would never produce; the graph is kept as is."""

    dangling = graph.dangling_edges()
    if dangling:
        LOGGER.warning(
            "%s has %d edge(s) pointing at missing nodes: %s",
            subject,
            len(dangling),
            ", ".join(edge.id for edge in dangling),
        )
    loops = graph.self_edges()
    if loops:
        LOGGER.warning("%s has %d self-edge(s): %s", subject, len(loops), ", ".join(edge.id for edge in loops))
    duplicates = graph.duplicate_node_ids()
    if duplicates:
        LOGGER.warning("%s repeats node id(s): %s", subject, ", ".join(duplicates))

DEFAULT_NODE_LABEL = "New Node"
FALLBACK_NODE_POSITION = NodePosition(x=250.0, y=250.0)
RANDOM_POSITION_BOUNDS = (500.0, 500.0)


class MindMapContextError(MindMapError):
    """Raised when generation is requested without the required story context."""


class MindMapGenerationError(MindMapError):
    """Raised when the generation collaborator fails."""


class MindMapPersistenceError(MindMapError):
    """Raised when a graph cannot be saved or loaded."""


class EdgeMode(enum.Enum):
    IDLE = "idle"
    AWAITING_SOURCE = "awaiting_source"
    AWAITING_TARGET = "awaiting_target"


class MindMapStore(Protocol):
    def load(self, story_id: int) -> MindMapGraph: ...

    def save(self, story_id: int, graph: MindMapGraph) -> None: ...


GraphGenerator = Callable[[str, str, str], Union[Mapping[str, Any], MindMapGraph]]


class MindMapEditor:
    def __init__(
        self,
        nodes: Optional[Iterable[MindMapNode]] = None,
        edges: Optional[Iterable[MindMapEdge]] = None,
        viewport: Optional[Viewport] = None,
        *,
        canvas_size: Optional[Tuple[float, float]] = None,
        id_factory: Optional[Callable[[str], str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.nodes: List[MindMapNode] = []
        self.edges: List[MindMapEdge] = []
        self.viewport = viewport
        self.canvas_size = canvas_size
        self._id_factory = id_factory or _default_id
        self._rng = rng or random.Random()
        self.edge_mode = EdgeMode.IDLE
        self.pending_source: Optional[str] = None
        self.replace_graph(nodes or [], edges or [], viewport)

    # ---------------- loading & saving ----------------
    @classmethod
    def from_graph(cls, graph: MindMapGraph, **kwargs: Any) -> "MindMapEditor":
        return cls(graph.nodes, graph.edges, graph.viewport, **kwargs)

    @classmethod
    def load(cls, store: MindMapStore, story_id: int, **kwargs: Any) -> "MindMapEditor":
        graph = store.load(story_id)
        _log_graph_problems(graph, f"Mind map for story {story_id}")
        return cls.from_graph(graph, **kwargs)

    def to_graph(self) -> MindMapGraph:
        return MindMapGraph(
            nodes=[node.model_copy(deep=True) for node in self.nodes],
            edges=[edge.model_copy(deep=True) for edge in self.edges],
            viewport=self.viewport.model_copy() if self.viewport else None,
        )

    def save(self, store: MindMapStore, story_id: int) -> MindMapGraph:
        """Persist nodes, edges and viewport as a single unit."""

        graph = self.to_graph()
        try:
            store.save(story_id, graph)
        except MindMapError:
            raise
        except Exception as exc:
            raise MindMapPersistenceError(f"Unable to save the mind map: {exc}") from exc
        return graph

    # ---------------- add-edge interaction ----------------
    @property
    def edge_mode_active(self) -> bool:
        return self.edge_mode is not EdgeMode.IDLE

    def begin_edge_mode(self) -> None:
        self.edge_mode = EdgeMode.AWAITING_SOURCE
        self.pending_source = None

    def cancel_edge_mode(self) -> None:
        self.edge_mode = EdgeMode.IDLE
        self.pending_source = None

    def select_node(self, node_id: str) -> Optional[MindMapEdge]:
        """Handle a click on ``node_id``; returns the edge created, if any."""

        if self.edge_mode is EdgeMode.AWAITING_SOURCE:
            if self._find_node(node_id) is None:
                return None
            self.pending_source = node_id
            self.edge_mode = EdgeMode.AWAITING_TARGET
            return None

        if self.edge_mode is EdgeMode.AWAITING_TARGET:
            if node_id == self.pending_source or self._find_node(node_id) is None:
                return None
            edge = self.connect(self.pending_source, node_id)
            self.cancel_edge_mode()
            return edge

        return None

    def is_highlighted(self, node_id: str) -> bool:
        return self.edge_mode_active and self.pending_source == node_id

    # ---------------- node & edge mutations ----------------
    def add_node(self, label: str = DEFAULT_NODE_LABEL) -> Optional[MindMapNode]:
        if self.edge_mode_active:
            return None
        node = MindMapNode(
            id=self._id_factory("node"),
            position=self._default_position(),
            data=NodeData(label=label),
        )
        self.nodes.append(node)
        return node

    def relabel_node(self, node_id: str, new_label: Optional[str]) -> bool:
        node = self._find_node(node_id)
        if node is None:
            return False
        label = (new_label or "").strip()
        if not label or label == node.data.label:
            return False
        node.data.label = label
        return True

    def move_node(self, node_id: str, position: Union[NodePosition, Mapping[str, float]]) -> bool:
        node = self._find_node(node_id)
        if node is None:
            return False
        node.position = _coerce_position(position)
        return True

    def apply_node_changes(self, changes: Sequence[Mapping[str, Any]]) -> None:
        """Apply a change set reported by the rendering surface.

        Supported change types are ``position``, ``select``, ``dimensions`` and
        ``remove``; unknown types are ignored.
        """

        for change in changes:
            change_type = change.get("type")
            node_id = change.get("id")
            if change_type == "remove":
                self.nodes = [node for node in self.nodes if node.id != node_id]
                continue
            node = self._find_node(node_id)
            if node is None:
                continue
            if change_type == "position" and change.get("position") is not None:
                node.position = _coerce_position(change["position"])
            elif change_type == "select":
                setattr(node, "selected", bool(change.get("selected")))
            elif change_type == "dimensions" and change.get("dimensions") is not None:
                dimensions = change["dimensions"]
                setattr(node, "width", dimensions.get("width"))
                setattr(node, "height", dimensions.get("height"))

    def apply_edge_changes(self, changes: Sequence[Mapping[str, Any]]) -> None:
        for change in changes:
            change_type = change.get("type")
            edge_id = change.get("id")
            if change_type == "remove":
                self.edges = [edge for edge in self.edges if edge.id != edge_id]
            elif change_type == "select":
                edge = next((item for item in self.edges if item.id == edge_id), None)
                if edge is not None:
                    setattr(edge, "selected", bool(change.get("selected")))

    def connect(self, source: Optional[str], target: Optional[str], label: Optional[str] = None) -> Optional[MindMapEdge]:
        if not source or not target or source == target:
            return None
        if self._find_node(source) is None or self._find_node(target) is None:
            return None
        edge = MindMapEdge(id=self._id_factory(f"edge-{source}-{target}"), source=source, target=target, label=label)
        self.edges.append(edge)
        return edge

    def set_viewport(self, viewport: Union[Viewport, Mapping[str, float], None]) -> None:
        if viewport is None or isinstance(viewport, Viewport):
            self.viewport = viewport
        else:
            self.viewport = Viewport.model_validate(dict(viewport))

    # ---------------- wholesale replacement ----------------
    def replace_graph(
        self,
        nodes: Iterable[MindMapNode],
        edges: Iterable[MindMapEdge],
        viewport: Optional[Viewport] = None,
    ) -> None:
        placed: List[MindMapNode] = []
        for node in nodes:
            copy = node.model_copy(deep=True)
            if copy.position is None:
                copy.position = self._random_position()
            placed.append(copy)
        self.nodes = placed
        self.edges = [edge.model_copy(deep=True) for edge in edges]
        if viewport is not None:
            self.viewport = viewport
        self.cancel_edge_mode()

    def generate(
        self,
        generator: GraphGenerator,
        world_context: str,
        character_context: str,
        outline_context: str,
    ) -> MindMapGraph:
        """Replace the graph with one produced by ``generator``.

        Nothing is mutated unless the collaborator returns a well-formed graph.
        """

        contexts = {
            "world": world_context,
            "character": character_context,
            "outline": outline_context,
        }
        missing = [name for name, value in contexts.items() if not (value or "").strip()]
        if missing:
            raise MindMapContextError(
                "Missing required context ({}) for mind map generation.".format(", ".join(missing))
            )

        try:
            response = generator(world_context, character_context, outline_context)
        except MindMapError:
            raise
        except Exception as exc:
            raise MindMapGenerationError(f"Mind map generation failed: {exc}") from exc

        graph = response if isinstance(response, MindMapGraph) else MindMapGraph.from_payload(response)
        _log_graph_problems(graph, "Generated mind map")
        self.replace_graph(graph.nodes, graph.edges)
        return self.to_graph()

    # ---------------- helpers ----------------
    def _find_node(self, node_id: Optional[str]) -> Optional[MindMapNode]:
        return next((node for node in self.nodes if node.id == node_id), None)

    def _default_position(self) -> NodePosition:
        if self.viewport is None or not self.canvas_size or not self.viewport.zoom:
            return FALLBACK_NODE_POSITION.model_copy()
        width, height = self.canvas_size
        zoom = self.viewport.zoom
        return NodePosition(
            x=(width / 2 - self.viewport.x) / zoom,
            y=(height / 2 - self.viewport.y) / zoom,
        )

    def _random_position(self) -> NodePosition:
        max_x, max_y = RANDOM_POSITION_BOUNDS
        return NodePosition(x=self._rng.uniform(0, max_x), y=self._rng.uniform(0, max_y))


class SqlMindMapStore:
    """Stores a story's graph as JSON text on :class:`~shadowquill.models.Story`."""

    def load(self, story_id: int) -> MindMapGraph:
        story = db.session.get(Story, story_id)
        if story is None:
            raise MindMapPersistenceError("Story not found.")
        if not story.mind_map_data:
            return MindMapGraph()
        try:
            payload = json.loads(story.mind_map_data)
        except json.JSONDecodeError as exc:
            raise MindMapPersistenceError("Failed to parse stored mind map data.") from exc
        if payload is None:
            return MindMapGraph()
        return MindMapGraph.from_payload(payload)

    def save(self, story_id: int, graph: MindMapGraph) -> None:
        story = db.session.get(Story, story_id)
        if story is None:
            raise MindMapPersistenceError("Story not found.")
        story.mind_map_data = json.dumps(graph.to_payload())
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise


def _coerce_position(position: Union[NodePosition, Mapping[str, float]]) -> NodePosition:
    if isinstance(position, NodePosition):
        return position.model_copy()
    return NodePosition(x=float(position["x"]), y=float(position["y"]))


def _default_id(prefix: str) -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


__all__ = [
    "EdgeMode",
    "MindMapContextError",
    "MindMapEditor",
    "MindMapGenerationError",
    "MindMapPersistenceError",
    "MindMapSchemaError",
    "MindMapStore",
    "SqlMindMapStore",
]
