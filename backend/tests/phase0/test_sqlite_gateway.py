"""Integration tests for SQLiteGateway against an in-memory database."""

import pytest

from lumina.models import TITLE_SENTINEL
from lumina.persistence.base import ConversationNotFoundError, MessageCreate, NodeCreate
from lumina.persistence.sqlite import SQLiteGateway
from tests.fixtures import make_small_tree, persist_tree


@pytest.fixture
def sqlite_gateway(db):
    return SQLiteGateway(db)


class TestConversations:
    async def test_create_and_get(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("New Discussion")
        header = await sqlite_gateway.get_conversation(conversation_id)
        assert header is not None
        assert header.title == "New Discussion"
        assert header.root_node_id is None
        assert header.current_node_id is None

    async def test_get_unknown_returns_none(self, sqlite_gateway):
        assert await sqlite_gateway.get_conversation("nope") is None

    async def test_list_orders_most_recent_first(self, sqlite_gateway):
        first = await sqlite_gateway.create_conversation("First")
        second = await sqlite_gateway.create_conversation("Second")
        listed = [c.id for c in await sqlite_gateway.list_conversations()]
        assert listed == [second, first]

        await sqlite_gateway.update_conversation_pointers(first, title="Touched")
        listed = [c.id for c in await sqlite_gateway.list_conversations()]
        assert listed[0] == first

    async def test_update_pointers(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("T")
        await sqlite_gateway.update_conversation_pointers(
            conversation_id, root_node_id="r", current_node_id="c"
        )
        header = await sqlite_gateway.get_conversation(conversation_id)
        assert (header.root_node_id, header.current_node_id, header.title) == ("r", "c", "T")

    async def test_update_unknown_conversation_raises(self, sqlite_gateway):
        with pytest.raises(ConversationNotFoundError):
            await sqlite_gateway.update_conversation_pointers("nope", title="x")

    async def test_delete_removes_nodes_and_messages(self, sqlite_gateway, db):
        conversation_id = await persist_tree(sqlite_gateway, make_small_tree())
        await sqlite_gateway.delete_conversation(conversation_id)
        assert await sqlite_gateway.get_conversation(conversation_id) is None
        assert await db.fetchall("SELECT * FROM nodes") == []
        assert await db.fetchall("SELECT * FROM messages") == []


class TestConversationDetail:
    async def test_roundtrip_small_tree(self, sqlite_gateway):
        tree = make_small_tree()
        conversation_id = await persist_tree(sqlite_gateway, tree)
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)

        assert set(detail) == set(tree)
        assert detail["root"].children_ids == ["a", "b"]
        assert detail["a"].children_ids == ["c"]
        assert detail["c"].parent_id == "a"
        assert detail["c"].hierarchical_id == "1.a.1"
        assert detail["a"].is_branch
        assert not detail["root"].is_branch
        assert [(m.role, m.content) for m in detail["b"].messages] == [
            ("user", "Q3"),
            ("model", "A3"),
        ]

    async def test_messages_sorted_by_ordinal(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("T")
        await sqlite_gateway.create_node(
            NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
        )
        for ordinal in (3, 0, 2, 1):
            await sqlite_gateway.create_message(
                MessageCreate(
                    node_id="r",
                    role="user" if ordinal % 2 == 0 else "model",
                    content=f"m{ordinal}",
                    ordinal=ordinal,
                )
            )
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)
        assert [m.content for m in detail["r"].messages] == ["m0", "m1", "m2", "m3"]

    async def test_unknown_conversation_raises(self, sqlite_gateway):
        with pytest.raises(ConversationNotFoundError) as exc_info:
            await sqlite_gateway.fetch_conversation_detail("nope")
        assert exc_info.value.conversation_id == "nope"

    async def test_new_node_has_sentinel_title(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("T")
        await sqlite_gateway.create_node(
            NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
        )
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)
        assert detail["r"].title == TITLE_SENTINEL

    async def test_update_node_title(self, sqlite_gateway):
        conversation_id = await persist_tree(sqlite_gateway, make_small_tree())
        await sqlite_gateway.update_node_title("b", "Cats and dogs")
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)
        assert detail["b"].title == "Cats and dogs"


class TestIdempotentWrites:
    async def test_create_node_twice_keeps_one(self, sqlite_gateway, db):
        conversation_id = await sqlite_gateway.create_conversation("T")
        node = NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
        assert await sqlite_gateway.create_node(node) == "r"
        assert await sqlite_gateway.create_node(node) == "r"
        assert len(await db.fetchall("SELECT * FROM nodes")) == 1

    async def test_create_message_twice_keeps_first(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("T")
        await sqlite_gateway.create_node(
            NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
        )
        await sqlite_gateway.create_message(
            MessageCreate(node_id="r", role="user", content="first", ordinal=0)
        )
        await sqlite_gateway.create_message(
            MessageCreate(node_id="r", role="user", content="retry", ordinal=0)
        )
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)
        assert [m.content for m in detail["r"].messages] == ["first"]

    async def test_create_node_generates_id_when_missing(self, sqlite_gateway):
        conversation_id = await sqlite_gateway.create_conversation("T")
        node_id = await sqlite_gateway.create_node(
            NodeCreate(conversation_id=conversation_id, hierarchical_id="1")
        )
        detail = await sqlite_gateway.fetch_conversation_detail(conversation_id)
        assert list(detail) == [node_id]


class TestUnitOfWork:
    async def test_failed_unit_writes_nothing(self, sqlite_gateway, db):
        conversation_id = await sqlite_gateway.create_conversation("T")
        with pytest.raises(RuntimeError):
            async with sqlite_gateway.transaction():
                await sqlite_gateway.create_node(
                    NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
                )
                await sqlite_gateway.create_message(
                    MessageCreate(node_id="r", role="user", content="hi", ordinal=0)
                )
                raise RuntimeError("model message failed")

        assert await db.fetchall("SELECT * FROM nodes") == []
        assert await db.fetchall("SELECT * FROM messages") == []
        assert await sqlite_gateway.get_conversation(conversation_id) is not None

    async def test_unit_commits_together(self, sqlite_gateway):
        async with sqlite_gateway.transaction():
            conversation_id = await sqlite_gateway.create_conversation("T")
            await sqlite_gateway.create_node(
                NodeCreate(id="r", conversation_id=conversation_id, hierarchical_id="1")
            )
            await sqlite_gateway.update_conversation_pointers(conversation_id, root_node_id="r")

        header = await sqlite_gateway.get_conversation(conversation_id)
        assert header.root_node_id == "r"
        assert list(await sqlite_gateway.fetch_conversation_detail(conversation_id)) == ["r"]
