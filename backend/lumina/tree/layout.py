"""Tree layout: 2-D positions and connecting edges for the node map.

Pure function of the node graph, recomputed in full whenever the graph
changes. Two depth-first passes:

1. Bottom-up subtree heights. A leaf takes one vertical unit; an inner node
   takes the sum of its children's heights (at least one unit).
2. Top-down placement from the root at (0, 0). Children are stacked inside
   the parent's vertical span in proportion to their own subtree heights,
   each centred in its slice, and shifted right by a horizontal step that
   shrinks slowly with depth.

Each node also gets a visual scale that decays geometrically with the depth
of its hierarchical label.
"""

from collections.abc import Mapping

from pydantic import BaseModel, Field

from lumina.models import ChatNode
from lumina.tree.labels import label_depth


class LayoutConfig(BaseModel):
    horizontal_spacing: float = 380.0
    vertical_spacing: float = 180.0
    spacing_decay: float = 0.95
    min_spacing_factor: float = 0.7
    scale_decay: float = 0.88
    min_scale: float = 0.5


class NodePlacement(BaseModel):
    node_id: str
    hierarchical_id: str
    title: str
    x: float
    y: float
    depth: int
    scale: float
    subtree_height: float
    is_current: bool = False


class LayoutEdge(BaseModel):
    id: str
    source: str
    target: str
    on_current_path: bool = False
    stroke_width: float = 2.0


class TreeLayout(BaseModel):
    nodes: list[NodePlacement] = Field(default_factory=list)
    edges: list[LayoutEdge] = Field(default_factory=list)


def compute_layout(
    nodes: Mapping[str, ChatNode],
    root_node_id: str | None,
    current_node_id: str | None = None,
    config: LayoutConfig | None = None,
) -> TreeLayout:
    """Place every node reachable from the root. Empty layout without a root."""
    cfg = config or LayoutConfig()
    if root_node_id is None or root_node_id not in nodes:
        return TreeLayout()

    heights = _subtree_heights(nodes, root_node_id, cfg.vertical_spacing)
    current_path = _path_ids(nodes, current_node_id)

    placements: list[NodePlacement] = []
    edges: list[LayoutEdge] = []
    visited: set[str] = set()

    # Explicit stack keeps deep trees clear of the recursion limit; children
    # are pushed in reverse so they are emitted in creation order.
    stack: list[tuple[str, float, float]] = [(root_node_id, 0.0, 0.0)]
    while stack:
        node_id, x, y = stack.pop()
        if node_id in visited:
            continue
        visited.add(node_id)
        node = nodes[node_id]

        depth = label_depth(node.hierarchical_id)
        scale = max(cfg.min_scale, cfg.scale_decay ** depth)
        placements.append(
            NodePlacement(
                node_id=node_id,
                hierarchical_id=node.hierarchical_id,
                title=node.title,
                x=x,
                y=y,
                depth=depth,
                scale=scale,
                subtree_height=heights[node_id],
                is_current=node_id == current_node_id,
            )
        )

        offset = cfg.horizontal_spacing * max(
            cfg.min_spacing_factor, cfg.spacing_decay ** depth
        )
        slot_top = y - heights[node_id] / 2 + cfg.vertical_spacing / 2
        children: list[tuple[str, float, float]] = []
        for child_id in node.children_ids:
            if child_id not in nodes or child_id in visited:
                continue
            child_height = heights[child_id]
            child_y = slot_top + child_height / 2 - cfg.vertical_spacing / 2
            edges.append(
                LayoutEdge(
                    id=f"e-{node_id}-{child_id}",
                    source=node_id,
                    target=child_id,
                    on_current_path=child_id in current_path,
                    stroke_width=2 * scale,
                )
            )
            children.append((child_id, x + offset, child_y))
            slot_top += child_height
        stack.extend(reversed(children))

    return TreeLayout(nodes=placements, edges=edges)


def _subtree_heights(
    nodes: Mapping[str, ChatNode], root_id: str, unit: float
) -> dict[str, float]:
    heights: dict[str, float] = {}
    # Post-order walk: a node is finished once all its children are.
    stack: list[tuple[str, bool]] = [(root_id, False)]
    on_stack: set[str] = set()
    while stack:
        node_id, expanded = stack.pop()
        node = nodes[node_id]
        if expanded:
            total = sum(heights[c] for c in node.children_ids if c in heights)
            heights[node_id] = max(unit, total)
            continue
        if node_id in on_stack:
            continue
        on_stack.add(node_id)
        stack.append((node_id, True))
        for child_id in node.children_ids:
            if child_id in nodes and child_id not in on_stack:
                stack.append((child_id, False))
    return heights


def _path_ids(nodes: Mapping[str, ChatNode], node_id: str | None) -> set[str]:
    path: set[str] = set()
    while node_id is not None and node_id in nodes and node_id not in path:
        path.add(node_id)
        node_id = nodes[node_id].parent_id
    return path
