"""In-memory conversation tree for the active conversation.

The store is the single owner of every ChatNode and Message in the
workspace. Each public mutation is self-contained: it either applies fully
or leaves the store untouched, so callers interleaving on the event loop
never observe a half-updated graph. Mutations aimed at missing nodes are
no-ops that return False; those races are expected (a node rolled back
while a stream was still delivering fragments, for example).
"""

import logging
from collections.abc import Mapping
from types import MappingProxyType
from typing import Any

from lumina.models import TITLE_SENTINEL, ChatNode, Message

logger = logging.getLogger(__name__)


class ConversationTreeStore:
    """Node graph plus the current-node and pending-branch pointers."""

    def __init__(self) -> None:
        self._nodes: dict[str, ChatNode] = {}
        self._root_node_id: str | None = None
        self._current_node_id: str | None = None
        self._branching_from_id: str | None = None
        self._conversation_id: str | None = None
        # Bumped whenever the workspace switches conversation. In-flight sends
        # compare it to decide whether their results still belong here.
        self._session = 0
        self._version = 0

    # -- Read side --

    @property
    def nodes(self) -> Mapping[str, ChatNode]:
        return MappingProxyType(self._nodes)

    @property
    def root_node_id(self) -> str | None:
        return self._root_node_id

    @property
    def current_node_id(self) -> str | None:
        return self._current_node_id

    @property
    def branching_from_id(self) -> str | None:
        return self._branching_from_id

    @property
    def conversation_id(self) -> str | None:
        return self._conversation_id

    @property
    def session(self) -> int:
        return self._session

    @property
    def version(self) -> int:
        """Monotonic change counter; layouts are recomputed when it moves."""
        return self._version

    def get(self, node_id: str | None) -> ChatNode | None:
        if node_id is None:
            return None
        return self._nodes.get(node_id)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    def __len__(self) -> int:
        return len(self._nodes)

    def children_count(self, node_id: str) -> int:
        node = self._nodes.get(node_id)
        return len(node.children_ids) if node else 0

    def path_to(self, node_id: str | None) -> list[ChatNode]:
        """Nodes from the root down to ``node_id``. Empty if the node is absent."""
        path: list[ChatNode] = []
        seen: set[str] = set()
        current_id = node_id
        while current_id is not None and current_id in self._nodes:
            if current_id in seen:
                logger.warning("Cycle detected in parent chain at node %s", current_id)
                break
            seen.add(current_id)
            node = self._nodes[current_id]
            path.append(node)
            current_id = node.parent_id
        path.reverse()
        return path

    def snapshot(self) -> dict[str, Any]:
        """Deep, comparable copy of the whole store state."""
        return {
            "nodes": {nid: n.model_dump() for nid, n in self._nodes.items()},
            "root_node_id": self._root_node_id,
            "current_node_id": self._current_node_id,
            "branching_from_id": self._branching_from_id,
            "conversation_id": self._conversation_id,
        }

    def check_integrity(self) -> list[str]:
        """Return a description of every violated tree invariant."""
        problems: list[str] = []
        roots = [n.id for n in self._nodes.values() if n.parent_id is None]
        if self._root_node_id is not None:
            root = self._nodes.get(self._root_node_id)
            if root is None:
                problems.append(f"root {self._root_node_id} is not a node")
            elif root.parent_id is not None:
                problems.append(f"root {self._root_node_id} has parent {root.parent_id}")
        if len(roots) > 1:
            problems.append(f"multiple roots: {sorted(roots)}")
        if self._current_node_id is not None and self._current_node_id not in self._nodes:
            problems.append(f"current {self._current_node_id} is not a node")

        for node in self._nodes.values():
            expected = {n.id for n in self._nodes.values() if n.parent_id == node.id}
            if set(node.children_ids) != expected or len(node.children_ids) != len(expected):
                problems.append(
                    f"children of {node.id} are {node.children_ids}, expected {sorted(expected)}"
                )
            ordinals = [m.ordinal for m in node.messages]
            if len(set(ordinals)) != len(ordinals):
                problems.append(f"duplicate ordinals in {node.id}: {ordinals}")

            seen: set[str] = set()
            current: ChatNode | None = node
            while current is not None and current.parent_id is not None:
                if current.id in seen:
                    problems.append(f"cycle through {node.id}")
                    break
                seen.add(current.id)
                current = self._nodes.get(current.parent_id)
                if current is None:
                    problems.append(f"{node.id} has a dangling ancestor")
            if current is not None and current.parent_id is None and current.id != self._root_node_id:
                problems.append(f"{node.id} does not reach root {self._root_node_id}")
        return problems

    # -- Write side --

    def replace_all(
        self,
        nodes: Mapping[str, ChatNode],
        root_node_id: str | None,
        current_node_id: str | None,
    ) -> None:
        """Full resynchronization from an authoritative copy."""
        self._nodes = {nid: n.model_copy(deep=True) for nid, n in nodes.items()}
        self._root_node_id = root_node_id
        self._current_node_id = current_node_id
        self._touch()

    def reset(self, conversation_id: str | None = None) -> None:
        """Switch the workspace to another (or no) conversation."""
        self._nodes = {}
        self._root_node_id = None
        self._current_node_id = None
        self._branching_from_id = None
        self._conversation_id = conversation_id
        self._session += 1
        self._touch()

    def set_conversation_id(self, conversation_id: str | None) -> None:
        self._conversation_id = conversation_id
        self._touch()

    def insert_node(self, node: ChatNode, parent_id: str | None) -> bool:
        """Insert ``node`` under ``parent_id`` (or as the root when None)."""
        if node.id in self._nodes:
            logger.debug("insert_node: %s already present", node.id)
            return False
        if parent_id is None:
            if self._root_node_id is not None:
                logger.debug("insert_node: tree already has root %s", self._root_node_id)
                return False
            self._nodes[node.id] = node.model_copy(
                update={"parent_id": None, "children_ids": []}, deep=True
            )
            self._root_node_id = node.id
            self._touch()
            return True

        parent = self._nodes.get(parent_id)
        if parent is None:
            logger.debug("insert_node: parent %s missing", parent_id)
            return False
        self._nodes[node.id] = node.model_copy(
            update={"parent_id": parent_id, "children_ids": []}, deep=True
        )
        parent.children_ids.append(node.id)
        self._touch()
        return True

    def append_message(self, node_id: str, message: Message) -> bool:
        node = self._nodes.get(node_id)
        if node is None:
            return False
        node.messages.append(message.model_copy())
        self._touch()
        return True

    def patch_last_message_content(self, node_id: str, content: str) -> bool:
        """Replace the newest message's content, leaving role/ordinal/timestamp."""
        node = self._nodes.get(node_id)
        if node is None or not node.messages:
            return False
        last = node.messages[-1]
        node.messages[-1] = last.model_copy(update={"content": content})
        self._touch()
        return True

    def truncate_messages(self, node_id: str, from_ordinal: int) -> bool:
        """Drop every message with ordinal >= ``from_ordinal`` (rollback)."""
        node = self._nodes.get(node_id)
        if node is None:
            return False
        kept = [m for m in node.messages if m.ordinal < from_ordinal]
        if len(kept) == len(node.messages):
            return False
        node.messages = kept
        self._touch()
        return True

    def remove_node(self, node_id: str) -> bool:
        """Remove a node (and anything beneath it) for optimistic rollback.

        The node is also pruned from its parent's children so the
        children/parent-pointer invariant holds afterwards.
        """
        node = self._nodes.get(node_id)
        if node is None:
            return False

        doomed: list[str] = []
        stack = [node_id]
        while stack:
            nid = stack.pop()
            if nid in doomed or nid not in self._nodes:
                continue
            doomed.append(nid)
            stack.extend(self._nodes[nid].children_ids)

        parent = self._nodes.get(node.parent_id) if node.parent_id else None
        if parent is not None:
            parent.children_ids = [c for c in parent.children_ids if c != node_id]
        for nid in doomed:
            del self._nodes[nid]
        if self._current_node_id in doomed:
            self._current_node_id = None
        if self._branching_from_id in doomed:
            self._branching_from_id = None
        if self._root_node_id in doomed:
            self._root_node_id = None
        self._touch()
        return True

    def patch_title(self, node_id: str, title: str) -> bool:
        """Set a node's title. The sentinel is never written back."""
        node = self._nodes.get(node_id)
        if node is None or not title or title == TITLE_SENTINEL:
            return False
        node.title = title
        self._touch()
        return True

    def set_current(self, node_id: str | None) -> bool:
        if node_id is not None and node_id not in self._nodes:
            return False
        self._current_node_id = node_id
        self._touch()
        return True

    def begin_branch(self, node_id: str) -> bool:
        if node_id not in self._nodes:
            return False
        self._branching_from_id = node_id
        self._touch()
        return True

    def cancel_branch(self) -> None:
        self._branching_from_id = None
        self._touch()

    def _touch(self) -> None:
        self._version += 1
