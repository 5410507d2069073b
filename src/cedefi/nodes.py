"""
Registry of voting nodes. Only ACTIVE nodes count towards consensus.
"""
from typing import List

from cedefi.database import DocumentStore
from cedefi.errors import ConflictError, NotFoundError, ValidationError
from cedefi.logger import get_logger
from cedefi.models import Node, NodeHistoryEntry, NodeStatus

logger = get_logger(__name__)

COLLECTION = "nodes"

REPUTATION_BONUS = 10


class NodeRegistry:
    def __init__(self, store: DocumentStore):
        self.store = store

    async def register(self, url: str, name: str, public_key: str) -> Node:
        """Register a node in PENDING state; an admin must verify it."""
        if await self.store.count(COLLECTION, {"url": url}):
            raise ConflictError("Node already registered")

        node = Node(public_key=public_key, name=name, url=url)
        try:
            await self.store.insert(COLLECTION, public_key, node.model_dump(mode="json"))
        except ConflictError:
            raise ConflictError("Node already registered")
        logger.info("Node %s registered (%s)", name, public_key)
        return node

    async def list(self) -> List[Node]:
        documents = await self.store.find(COLLECTION, sort_by="registered_at", descending=False)
        return [Node.model_validate(doc) for doc in documents]

    async def get(self, public_key: str) -> Node:
        document = await self.store.get(COLLECTION, public_key)
        if document is None:
            raise NotFoundError("Node not found")
        return Node.model_validate(document)

    async def verify(self, public_key: str, action: str) -> Node:
        """Admin verification: APPROVE activates the node, REJECT marks it fraudulent."""
        action = (action or "").upper()
        if action not in ("APPROVE", "REJECT"):
            raise ValidationError("action must be 'APPROVE' or 'REJECT'")

        node = await self.get(public_key)
        if action == "APPROVE":
            node.status = NodeStatus.ACTIVE
            node.is_active = True
            node.reputation += REPUTATION_BONUS
            node.history.append(NodeHistoryEntry(action="Verified by Admin"))
        else:
            node.status = NodeStatus.FRAUDULENT
            node.is_active = False
            node.reputation = 0
            node.history.append(NodeHistoryEntry(action="Rejected by Admin"))

        await self.store.upsert(COLLECTION, public_key, node.model_dump(mode="json"))
        logger.info("Node %s verified: %s -> %s", public_key, action, node.status.value)
        return node

    async def count_active(self) -> int:
        return await self.store.count(COLLECTION, {"status": NodeStatus.ACTIVE.value})
