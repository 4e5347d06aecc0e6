# backend/knowledge_sync/core/documents/tree_service.py
"""
Tree operations over the mirrored document hierarchy.

All traversals are iterative and guarded by a visited set, so a corrupt
``parent_id`` cycle terminates instead of looping forever. Results are keyed
by document id; a node reached twice (the tree changed mid-walk) is reported
once.
"""

import logging
from typing import Dict, List, Optional, Set

from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sync.core.database.models import Document
from knowledge_sync.core.documents.document_store import DocumentStore, document_store

logger = logging.getLogger("knowledge_sync.tree")


class TreeService:
    """Descendant lookup, deletion closure and ancestor subscription checks."""

    def __init__(self, store: Optional[DocumentStore] = None):
        self.store = store or document_store

    async def descendants_of(
        self,
        session: AsyncSession,
        connection_id: str,
        node_id: str,
    ) -> List[Document]:
        """
        Every document whose ``parent_id`` chain leads to ``node_id``.

        Breadth-first, one query per level. ``node_id`` itself is not part of
        the result, even if a cycle leads back to it.
        """
        found: Dict[str, Document] = {}
        visited: Set[str] = {node_id}
        frontier = [node_id]

        while frontier:
            children = await self.store.get_children(session, connection_id, frontier)
            frontier = []
            for child in children:
                if child.id in visited:
                    continue
                visited.add(child.id)
                found[child.id] = child
                frontier.append(child.id)

        return list(found.values())

    async def deletion_closure(
        self,
        session: AsyncSession,
        connection_id: str,
        node_id: str,
    ) -> Set[str]:
        """Ids to remove when ``node_id`` is deleted: the node plus its descendants."""
        descendants = await self.descendants_of(session, connection_id, node_id)
        return {node_id} | {doc.id for doc in descendants}

    async def expand_selection(
        self,
        session: AsyncSession,
        connection_id: str,
        document_ids: List[str],
    ) -> Set[str]:
        """Expand a selection so each folder brings its whole subtree along."""
        expanded: Set[str] = set(document_ids)
        for doc in await self.store.get_documents(session, connection_id, document_ids):
            if doc.is_folder:
                descendants = await self.descendants_of(session, connection_id, doc.id)
                expanded.update(d.id for d in descendants)
        return expanded

    async def is_ancestor_subscribed(
        self,
        session: AsyncSession,
        connection_id: str,
        node_id: Optional[str],
    ) -> bool:
        """
        Walk upward from ``node_id`` (inclusive) looking for a subscribed node.

        Returns False on reaching a root, on a missing link in the chain, or
        on a cycle.
        """
        visited: Set[str] = set()
        current = node_id

        while current is not None:
            if current in visited:
                logger.warning(
                    f"Parent cycle detected at {current} in connection {connection_id}"
                )
                return False
            visited.add(current)

            doc = await self.store.get_document(session, connection_id, current)
            if doc is None:
                return False
            if doc.is_subscribed:
                return True
            current = doc.parent_id

        return False


# Global service instance
tree_service = TreeService()
