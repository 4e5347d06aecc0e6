# backend/knowledge_sync/core/documents/document_store.py
"""
Document Store Service.

Persistence operations for Document and SyncRecord rows. Every mutation that
can race with another actor (webhook handlers, the subscription cascade, the
download pipeline) is a single conditional UPDATE keyed by
``(connection_id, document_id)`` rather than a read-modify-write.

Usage:
    from knowledge_sync.core.documents.document_store import document_store

    async with database_service.get_session() as session:
        doc = await document_store.get_document(session, "c1", "f1")
        advanced = await document_store.advance_download_state(
            session, "c1", "f1", DownloadState.DOWNLOADING_FROM_URL
        )
"""

import logging
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence

from sqlalchemy import case, delete, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from knowledge_sync.core.database.models import (
    MIRRORED_FIELDS,
    Document,
    DownloadState,
    SyncRecord,
    SyncStatus,
    utcnow,
)

logger = logging.getLogger("knowledge_sync.document_store")

# Keeps bulk statements below SQLite's bound-parameter limit
_BULK_CHUNK = 200


def _insert_for(session: AsyncSession):
    """Dialect-specific INSERT construct supporting ON CONFLICT."""
    if session.bind.dialect.name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    else:
        from sqlalchemy.dialects.sqlite import insert
    return insert


def _first(fields: Dict[str, Any], *names: str) -> Any:
    for name in names:
        if fields.get(name) is not None:
            return fields[name]
    return None


def _timestamp(value: Any) -> Optional[str]:
    if value is None:
        return None
    return value if isinstance(value, str) else str(value)


def build_document_record(
    fields: Dict[str, Any],
    connection_id: str,
    user_id: Optional[str],
    is_subscribed: bool = False,
) -> Dict[str, Any]:
    """
    Map a remote record (camelCase or snake_case keys) to a Document row.

    The row is stamped with the connection and owner, unsubscribed unless
    told otherwise, and without content.
    """
    can_have_children = _first(fields, "canHaveChildren", "can_have_children")
    parent_id = _first(fields, "parentId", "parent_id")
    return {
        "id": str(fields["id"]),
        "connection_id": connection_id,
        "user_id": user_id,
        "title": _first(fields, "title", "name") or "",
        "parent_id": str(parent_id) if parent_id is not None else None,
        "can_have_children": bool(can_have_children),
        "can_download": _first(fields, "canDownload", "can_download"),
        "resource_uri": _first(fields, "resourceURI", "resourceUri", "resource_uri"),
        "created_at": _timestamp(_first(fields, "createdAt", "createdTime", "created_at")),
        "updated_at": _timestamp(_first(fields, "updatedAt", "updatedTime", "updated_at")),
        "is_subscribed": is_subscribed,
        "content": None,
    }


def _chunks(items: Sequence[Any], size: int = _BULK_CHUNK) -> Iterable[Sequence[Any]]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


class DocumentStore:
    """
    Repository for Document and SyncRecord rows.

    Methods commit their own work so each call is one atomic unit.
    """

    # =========================================================================
    # DOCUMENT READS
    # =========================================================================

    async def get_document(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
    ) -> Optional[Document]:
        result = await session.execute(
            select(Document)
            .where(Document.connection_id == connection_id, Document.id == document_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_documents(
        self,
        session: AsyncSession,
        connection_id: str,
        document_ids: Iterable[str],
    ) -> List[Document]:
        """Fetch the given documents of one connection (missing ids are skipped)."""
        ids = list(dict.fromkeys(document_ids))
        documents: List[Document] = []
        for chunk in _chunks(ids):
            result = await session.execute(
                select(Document)
                .where(Document.connection_id == connection_id, Document.id.in_(chunk))
                .execution_options(populate_existing=True)
            )
            documents.extend(result.scalars().all())
        return documents

    async def get_children(
        self,
        session: AsyncSession,
        connection_id: str,
        parent_ids: Iterable[str],
    ) -> List[Document]:
        """Direct children of any of ``parent_ids`` within one connection."""
        parents = list(dict.fromkeys(parent_ids))
        children: List[Document] = []
        for chunk in _chunks(parents):
            result = await session.execute(
                select(Document).where(
                    Document.connection_id == connection_id,
                    Document.parent_id.in_(chunk),
                )
            )
            children.extend(result.scalars().all())
        return children

    async def list_documents(
        self,
        session: AsyncSession,
        connection_id: str,
        title_query: Optional[str] = None,
    ) -> List[Document]:
        """
        List the documents of a connection.

        Args:
            session: Database session
            connection_id: Connection to list
            title_query: Optional case-insensitive substring of the title

        Returns:
            Documents ordered by title
        """
        query = select(Document).where(Document.connection_id == connection_id)
        if title_query:
            query = query.where(
                func.lower(Document.title).contains(title_query.lower(), autoescape=True)
            )
        result = await session.execute(query.order_by(Document.title, Document.id))
        return list(result.scalars().all())

    async def list_subscribed(
        self,
        session: AsyncSession,
        user_id: str,
    ) -> List[Document]:
        result = await session.execute(
            select(Document)
            .where(Document.user_id == user_id, Document.is_subscribed.is_(True))
            .order_by(Document.connection_id, Document.title)
        )
        return list(result.scalars().all())

    async def count_documents(self, session: AsyncSession, connection_id: str) -> int:
        result = await session.execute(
            select(func.count()).select_from(Document).where(
                Document.connection_id == connection_id
            )
        )
        return result.scalar() or 0

    # =========================================================================
    # DOCUMENT WRITES
    # =========================================================================

    async def bulk_upsert(
        self,
        session: AsyncSession,
        records: List[Dict[str, Any]],
    ) -> int:
        """
        Insert or refresh mirrored documents keyed by ``(id, connection_id)``.

        New rows get the full record (pipeline state from the record's
        defaults). Existing rows only get MIRRORED_FIELDS refreshed, so a
        set ``download_state``, ``storage_key`` or ``content`` survives.

        Returns:
            Number of records written
        """
        if not records:
            return 0

        insert = _insert_for(session)
        # Last occurrence of a duplicate key wins
        unique = list({(r["id"], r["connection_id"]): r for r in records}.values())

        for chunk in _chunks(unique):
            stmt = insert(Document).values(list(chunk))
            stmt = stmt.on_conflict_do_update(
                index_elements=[Document.id, Document.connection_id],
                set_={field: getattr(stmt.excluded, field) for field in MIRRORED_FIELDS},
            )
            await session.execute(stmt)

        await session.commit()
        return len(unique)

    async def create_document(
        self,
        session: AsyncSession,
        record: Dict[str, Any],
    ) -> Document:
        """
        Create one document, or refresh its mirrored fields if it exists.

        ``is_subscribed`` from the record is applied to new rows and may
        only turn an existing row's flag on, never off.
        """
        await self.bulk_upsert(session, [record])
        if record.get("is_subscribed"):
            await session.execute(
                update(Document)
                .where(
                    Document.connection_id == record["connection_id"],
                    Document.id == record["id"],
                )
                .values(is_subscribed=True)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        return await self.get_document(session, record["connection_id"], record["id"])

    async def update_mirrored_fields(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        values: Dict[str, Any],
    ) -> bool:
        """Refresh remote metadata only; pipeline state is never touched."""
        patch = {k: v for k, v in values.items() if k in MIRRORED_FIELDS}
        if not patch:
            return await self.get_document(session, connection_id, document_id) is not None
        return await self._update(session, connection_id, document_id, patch)

    async def set_subscription(
        self,
        session: AsyncSession,
        connection_id: str,
        document_ids: Iterable[str],
        subscribed: bool,
    ) -> int:
        """Persist ``is_subscribed`` on exactly the given ids."""
        ids = list(dict.fromkeys(document_ids))
        updated = 0
        for chunk in _chunks(ids):
            result = await session.execute(
                update(Document)
                .where(Document.connection_id == connection_id, Document.id.in_(chunk))
                .values(is_subscribed=subscribed)
                .execution_options(synchronize_session=False)
            )
            updated += result.rowcount or 0
        await session.commit()
        return updated

    async def claim_for_download(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        blocked_states: Iterable[DownloadState],
    ) -> bool:
        """
        Move a subscribed file to FLOW_TRIGGERED unless it is in ``blocked_states``.

        Returns:
            True if this call performed the transition
        """
        blocked = [state.value for state in blocked_states]
        condition = Document.can_have_children.is_(False) & Document.is_subscribed.is_(True)
        if blocked:
            condition = condition & or_(
                Document.download_state.is_(None),
                Document.download_state.notin_(blocked),
            )
        return await self._update(
            session,
            connection_id,
            document_id,
            {
                "download_state": DownloadState.FLOW_TRIGGERED.value,
                "download_error": None,
            },
            condition,
        )

    async def advance_download_state(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        state: DownloadState,
        **values: Any,
    ) -> bool:
        """
        Move ``download_state`` forward to ``state`` together with ``values``.

        The write only applies while the current state is unset or precedes
        ``state``; a FAILED document or one already further along is left
        alone and False is returned.
        """
        allowed = [s.value for s in DownloadState.at_or_before(state)]
        return await self._update(
            session,
            connection_id,
            document_id,
            {"download_state": state.value, **values},
            or_(Document.download_state.is_(None), Document.download_state.in_(allowed)),
        )

    async def persist_storage_key(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        storage_key: str,
        next_state: DownloadState,
    ) -> bool:
        """
        Store the new blob key and move toward ``next_state`` in one UPDATE.

        The key is always written; the state only advances (a FAILED or
        further-along document keeps its state). Content extracted from the
        previous file is cleared with it.

        Returns:
            False when the document no longer exists
        """
        allowed = [s.value for s in DownloadState.at_or_before(next_state)]
        state_expr = case(
            (
                or_(Document.download_state.is_(None), Document.download_state.in_(allowed)),
                next_state.value,
            ),
            else_=Document.download_state,
        )
        return await self._update(
            session,
            connection_id,
            document_id,
            {
                "storage_key": storage_key,
                "last_synced_at": utcnow(),
                "download_state": state_expr,
                "download_error": None,
                "content": None,
                "extraction_error": None,
            },
        )

    async def mark_failed(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        error: str,
    ) -> bool:
        """FAILED is reachable from any state."""
        return await self._update(
            session,
            connection_id,
            document_id,
            {"download_state": DownloadState.FAILED.value, "download_error": error},
        )

    async def update_document(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        values: Dict[str, Any],
    ) -> bool:
        """Unconditional single-row update; False when the row is gone."""
        return await self._update(session, connection_id, document_id, values)

    async def _update(
        self,
        session: AsyncSession,
        connection_id: str,
        document_id: str,
        values: Dict[str, Any],
        condition=None,
    ) -> bool:
        stmt = (
            update(Document)
            .where(Document.connection_id == connection_id, Document.id == document_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if condition is not None:
            stmt = stmt.where(condition)
        result = await session.execute(stmt)
        await session.commit()
        return (result.rowcount or 0) > 0

    async def delete_documents(
        self,
        session: AsyncSession,
        connection_id: str,
        document_ids: Iterable[str],
    ) -> int:
        ids = list(dict.fromkeys(document_ids))
        deleted = 0
        for chunk in _chunks(ids):
            result = await session.execute(
                delete(Document)
                .where(Document.connection_id == connection_id, Document.id.in_(chunk))
                .execution_options(synchronize_session=False)
            )
            deleted += result.rowcount or 0
        await session.commit()
        return deleted

    async def delete_connection_documents(
        self,
        session: AsyncSession,
        connection_id: str,
    ) -> int:
        result = await session.execute(
            delete(Document)
            .where(Document.connection_id == connection_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        deleted = result.rowcount or 0
        if deleted:
            logger.info(f"Deleted {deleted} documents of connection {connection_id}")
        return deleted

    # =========================================================================
    # SYNC RECORDS
    # =========================================================================

    async def get_sync_record(
        self,
        session: AsyncSession,
        connection_id: str,
    ) -> Optional[SyncRecord]:
        result = await session.execute(
            select(SyncRecord)
            .where(SyncRecord.connection_id == connection_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def list_sync_records(
        self,
        session: AsyncSession,
        connection_ids: Iterable[str],
    ) -> Dict[str, SyncRecord]:
        ids = list(dict.fromkeys(connection_ids))
        if not ids:
            return {}
        result = await session.execute(
            select(SyncRecord).where(SyncRecord.connection_id.in_(ids))
        )
        return {record.connection_id: record for record in result.scalars().all()}

    async def upsert_sync_record(
        self,
        session: AsyncSession,
        connection_id: str,
        user_id: str,
        **values: Any,
    ) -> SyncRecord:
        """Create the record for ``connection_id`` or overwrite ``values`` on it."""
        insert = _insert_for(session)
        now = utcnow()
        changes = {"user_id": user_id, "updated_at": now, **values}
        stmt = insert(SyncRecord).values(
            id=uuid.uuid4(),
            connection_id=connection_id,
            created_at=now,
            **changes,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[SyncRecord.connection_id],
            set_=changes,
        )
        await session.execute(stmt)
        await session.commit()
        return await self.get_sync_record(session, connection_id)

    async def update_sync_record(
        self,
        session: AsyncSession,
        connection_id: str,
        values: Dict[str, Any],
        run_id: Optional[str] = None,
    ) -> bool:
        """
        Update the record of a connection.

        When ``run_id`` is given, the write only lands while that run still
        owns the record, so a superseded sync cannot overwrite a newer one.

        Returns:
            False when the record is gone or owned by another run
        """
        stmt = (
            update(SyncRecord)
            .where(SyncRecord.connection_id == connection_id)
            .values(updated_at=utcnow(), **values)
            .execution_options(synchronize_session=False)
        )
        if run_id is not None:
            stmt = stmt.where(SyncRecord.sync_run_id == run_id)
        result = await session.execute(stmt)
        await session.commit()
        return (result.rowcount or 0) > 0

    async def is_current_run(
        self,
        session: AsyncSession,
        connection_id: str,
        run_id: str,
    ) -> bool:
        result = await session.execute(
            select(SyncRecord.sync_run_id).where(SyncRecord.connection_id == connection_id)
        )
        return result.scalar_one_or_none() == run_id

    async def delete_sync_record(self, session: AsyncSession, connection_id: str) -> bool:
        result = await session.execute(
            delete(SyncRecord)
            .where(SyncRecord.connection_id == connection_id)
            .execution_options(synchronize_session=False)
        )
        await session.commit()
        return (result.rowcount or 0) > 0

    async def fail_sync(
        self,
        session: AsyncSession,
        connection_id: str,
        run_id: Optional[str],
        error: str,
    ) -> bool:
        return await self.update_sync_record(
            session,
            connection_id,
            {
                "sync_status": SyncStatus.FAILED.value,
                "sync_error": error,
                "sync_completed_at": utcnow(),
            },
            run_id=run_id,
        )


# Global service instance
document_store = DocumentStore()
