"""Rehydration: fold the authoritative server copy back into the local tree.

The fetched node map replaces the local one wholesale, with two
exceptions. The current-node pointer is pinned by the caller instead of
taken from the server, so a send finishing in the background never moves
the viewport. Nodes that are still generating keep their local copy, so a
side chat streaming into another node does not lose text it has not yet
persisted.
"""

import logging
from collections.abc import Collection, Mapping

from lumina.models import ChatNode
from lumina.tree.store import ConversationTreeStore

logger = logging.getLogger(__name__)


class Reconciler:
    """Applies fresh snapshots to a ConversationTreeStore."""

    def __init__(self, store: ConversationTreeStore) -> None:
        self._store = store

    def reconcile(
        self,
        fresh_nodes: Mapping[str, ChatNode],
        pinned_current_id: str | None,
        *,
        root_node_id: str | None = None,
        in_flight: Collection[str] = (),
    ) -> None:
        """Replace the store's nodes with ``fresh_nodes``.

        ``pinned_current_id`` becomes the current node when it is present in
        the merged tree; otherwise the current pointer is cleared. Calling
        this twice with the same arguments leaves the same state.
        """
        nodes = {nid: n.model_copy(deep=True) for nid, n in fresh_nodes.items()}

        for node_id in in_flight:
            self._keep_local(nodes, node_id)

        root = self._resolve_root(nodes, root_node_id)
        current = pinned_current_id if pinned_current_id in nodes else None
        if pinned_current_id is not None and current is None:
            logger.warning(
                "Pinned current node %s is absent from the snapshot; clearing it",
                pinned_current_id,
            )

        self._store.replace_all(nodes, root, current)
        if self._store.branching_from_id is not None and self._store.branching_from_id not in nodes:
            self._store.cancel_branch()

    def _keep_local(self, nodes: dict[str, ChatNode], node_id: str) -> None:
        """Carry a generating node over the snapshot, under its fresh parent."""
        local = self._store.get(node_id)
        if local is None:
            return
        fresh = nodes.get(node_id)
        if local.parent_id is not None and local.parent_id not in nodes:
            logger.warning("Dropping generating node %s: parent %s is gone", node_id, local.parent_id)
            return
        if local.parent_id is None and fresh is None and any(n.parent_id is None for n in nodes.values()):
            logger.warning("Dropping generating node %s: snapshot has another root", node_id)
            return

        children = list(fresh.children_ids) if fresh else []
        for child_id in local.children_ids:
            if child_id in nodes and child_id not in children:
                children.append(child_id)
        nodes[node_id] = local.model_copy(update={"children_ids": children}, deep=True)

        parent = nodes.get(local.parent_id) if local.parent_id else None
        if parent is not None and node_id not in parent.children_ids:
            parent.children_ids.append(node_id)

    def _resolve_root(self, nodes: Mapping[str, ChatNode], root_node_id: str | None) -> str | None:
        for candidate in (root_node_id, self._store.root_node_id):
            if candidate is not None and candidate in nodes and nodes[candidate].parent_id is None:
                return candidate
        roots = [n.id for n in nodes.values() if n.parent_id is None]
        return roots[0] if roots else None
