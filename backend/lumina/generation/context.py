"""Context assembly for generation.

The history sent with a prompt is every message on the path from the root
to the target node, node by node in path order and by ordinal inside each
node, stopping before the message that is being answered.
"""

from lumina.models import ChatNode
from lumina.providers.base import TranscriptEntry


class ContextBuilder:
    """Flattens a root-to-target node path into a role-tagged transcript."""

    def build(
        self,
        path: list[ChatNode],
        *,
        before_ordinal: int | None = None,
    ) -> list[TranscriptEntry]:
        """Build the history for a send into ``path[-1]``.

        Messages of the target node with ``ordinal >= before_ordinal`` are
        left out (the new prompt and its pending reply). Empty messages,
        such as an unfinished reply, are skipped as well.

        Raises:
            ValueError: If ``path`` is not a parent chain.
        """
        self._check_chain(path)
        transcript: list[TranscriptEntry] = []
        for index, node in enumerate(path):
            is_target = index == len(path) - 1
            for message in node.sorted_messages():
                if is_target and before_ordinal is not None and message.ordinal >= before_ordinal:
                    break
                if not message.content:
                    continue
                transcript.append(TranscriptEntry(role=message.role, content=message.content))
        return transcript

    @staticmethod
    def _check_chain(path: list[ChatNode]) -> None:
        for parent, child in zip(path, path[1:]):
            if child.parent_id != parent.id:
                raise ValueError(f"Broken chain: {child.id} is not a child of {parent.id}")
