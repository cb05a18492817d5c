"""
A FIFO waitlist of pending job IDs that also supports removing any ID in O(1),
which is what makes cancelling a job before it starts cheap.
"""

from typing import Iterator, Optional


class _QueueNode:
    """A doubly-linked node owned exclusively by its JobQueue."""

    __slots__ = ("value", "prev", "next")

    def __init__(self, value: str, prev: Optional["_QueueNode"] = None):
        self.value = value
        self.prev = prev
        self.next: Optional["_QueueNode"] = None


class JobQueue:
    """
    Doubly-linked queue of job IDs with a hash index from ID to node.

    The index lets `delete` unlink a node wherever it sits without scanning,
    and doubles as the membership test. An ID can only be queued once.
    """

    def __init__(self):
        self._head: Optional[_QueueNode] = None
        self._tail: Optional[_QueueNode] = None
        self._index: dict[str, _QueueNode] = {}

    def push(self, job_id: str) -> None:
        """Appends a job ID to the tail of the queue."""
        if job_id in self._index:
            raise ValueError(f"Job '{job_id}' is already queued.")

        node = _QueueNode(job_id, prev=self._tail)
        if self._tail:
            self._tail.next = node
        else:
            self._head = node
        self._tail = node
        self._index[job_id] = node

    def pop(self) -> Optional[str]:
        """Removes and returns the ID at the head, or None if the queue is empty."""
        node = self._head
        if node is None:
            return None
        self._unlink(node)
        return node.value

    def delete(self, job_id: str) -> bool:
        """
        Removes a job ID wherever it sits in the queue.

        Returns:
            True if the ID was queued and has been removed, False otherwise.
        """
        node = self._index.get(job_id)
        if node is None:
            return False
        self._unlink(node)
        return True

    def _unlink(self, node: _QueueNode) -> None:
        if node.prev:
            node.prev.next = node.next
        else:
            self._head = node.next

        if node.next:
            node.next.prev = node.prev
        else:
            self._tail = node.prev

        node.prev = node.next = None
        del self._index[node.value]

    def size(self) -> int:
        return len(self._index)

    def is_empty(self) -> bool:
        return not self._index

    def clear(self) -> None:
        node = self._head
        while node:
            following = node.next
            node.prev = node.next = None
            node = following
        self._head = self._tail = None
        self._index.clear()

    def to_list(self) -> list[str]:
        """Returns the queued IDs in dequeue order."""
        return list(self)

    def __len__(self) -> int:
        return len(self._index)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._index

    def __iter__(self) -> Iterator[str]:
        node = self._head
        while node:
            yield node.value
            node = node.next

    def __repr__(self) -> str:
        return f"JobQueue({self.to_list()!r})"
