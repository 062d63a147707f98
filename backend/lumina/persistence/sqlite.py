"""SQLite-backed persistence gateway."""

from collections import defaultdict
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from uuid import uuid4

from lumina.db.connection import Database
from lumina.models import TITLE_SENTINEL, ChatNode, ConversationSummary, Message
from lumina.persistence.base import (
    ConversationNotFoundError,
    MessageCreate,
    NodeCreate,
    PersistenceGateway,
)


class SQLiteGateway(PersistenceGateway):
    """Persistence gateway over the local SQLite database."""

    def __init__(self, db: Database) -> None:
        self._db = db

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[None]:
        async with self._db.transaction():
            yield

    async def list_conversations(self) -> list[ConversationSummary]:
        rows = await self._db.fetchall(
            "SELECT * FROM conversations ORDER BY updated_at DESC, rowid DESC"
        )
        return [self._summary_from_row(r) for r in rows]

    async def get_conversation(self, conversation_id: str) -> ConversationSummary | None:
        row = await self._db.fetchone(
            "SELECT * FROM conversations WHERE conversation_id = ?",
            (conversation_id,),
        )
        return self._summary_from_row(row) if row is not None else None

    async def fetch_conversation_detail(self, conversation_id: str) -> dict[str, ChatNode]:
        if await self.get_conversation(conversation_id) is None:
            raise ConversationNotFoundError(conversation_id)

        node_rows = await self._db.fetchall(
            "SELECT * FROM nodes WHERE conversation_id = ? ORDER BY created_at, rowid",
            (conversation_id,),
        )
        msg_rows = await self._db.fetchall(
            "SELECT m.* FROM messages m JOIN nodes n ON n.node_id = m.node_id "
            "WHERE n.conversation_id = ? ORDER BY m.ordinal",
            (conversation_id,),
        )

        messages: dict[str, list[Message]] = defaultdict(list)
        for m in msg_rows:
            messages[m["node_id"]].append(
                Message(
                    role=m["role"],
                    content=m["content"],
                    timestamp=datetime.fromisoformat(m["created_at"]),
                    ordinal=m["ordinal"],
                )
            )

        # Children in creation order; rows are already sorted that way.
        children: dict[str, list[str]] = defaultdict(list)
        for n in node_rows:
            if n["parent_id"] is not None:
                children[n["parent_id"]].append(n["node_id"])

        return {
            n["node_id"]: ChatNode(
                id=n["node_id"],
                hierarchical_id=n["hierarchical_id"],
                parent_id=n["parent_id"],
                children_ids=children.get(n["node_id"], []),
                messages=messages.get(n["node_id"], []),
                title=n["title"] or TITLE_SENTINEL,
                timestamp=datetime.fromisoformat(n["created_at"]),
                is_branch=bool(n["is_branch"]),
            )
            for n in node_rows
        }

    async def create_conversation(self, title: str) -> str:
        conversation_id = str(uuid4())
        now = _now()
        await self._db.execute(
            "INSERT INTO conversations (conversation_id, title, created_at, updated_at) "
            "VALUES (?, ?, ?, ?)",
            (conversation_id, title, now, now),
        )
        return conversation_id

    async def create_node(self, node: NodeCreate) -> str:
        node_id = node.id or str(uuid4())
        await self._db.execute(
            """
            INSERT INTO nodes
                (node_id, conversation_id, parent_id, hierarchical_id, is_branch, title, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT (node_id) DO NOTHING
            """,
            (
                node_id,
                node.conversation_id,
                node.parent_id,
                node.hierarchical_id,
                int(node.is_branch),
                node.title or TITLE_SENTINEL,
                _now(),
            ),
        )
        return node_id

    async def create_message(self, message: MessageCreate) -> None:
        await self._db.execute(
            """
            INSERT INTO messages (message_id, node_id, role, content, ordinal, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            ON CONFLICT (node_id, ordinal) DO NOTHING
            """,
            (
                str(uuid4()),
                message.node_id,
                message.role,
                message.content,
                message.ordinal,
                _now(),
            ),
        )

    async def update_conversation_pointers(
        self,
        conversation_id: str,
        *,
        root_node_id: str | None = None,
        current_node_id: str | None = None,
        title: str | None = None,
    ) -> None:
        updates: dict[str, str] = {}
        if root_node_id is not None:
            updates["root_node_id"] = root_node_id
        if current_node_id is not None:
            updates["current_node_id"] = current_node_id
        if title is not None:
            updates["title"] = title
        updates["updated_at"] = _now()

        assignments = ", ".join(f"{column} = ?" for column in updates)
        changed = await self._db.execute(
            f"UPDATE conversations SET {assignments} WHERE conversation_id = ?",
            (*updates.values(), conversation_id),
        )
        if changed == 0:
            raise ConversationNotFoundError(conversation_id)

    async def update_node_title(self, node_id: str, title: str) -> None:
        await self._db.execute(
            "UPDATE nodes SET title = ? WHERE node_id = ?",
            (title, node_id),
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        async with self._db.transaction():
            await self._db.execute(
                "DELETE FROM messages WHERE node_id IN "
                "(SELECT node_id FROM nodes WHERE conversation_id = ?)",
                (conversation_id,),
            )
            await self._db.execute(
                "DELETE FROM nodes WHERE conversation_id = ?", (conversation_id,)
            )
            await self._db.execute(
                "DELETE FROM conversations WHERE conversation_id = ?", (conversation_id,)
            )

    @staticmethod
    def _summary_from_row(row) -> ConversationSummary:
        return ConversationSummary(
            id=row["conversation_id"],
            title=row["title"],
            root_node_id=row["root_node_id"],
            current_node_id=row["current_node_id"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )


def _now() -> str:
    return datetime.now(UTC).isoformat()
