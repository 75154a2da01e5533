"""Explicit parent/child index for the outline forest."""

from __future__ import annotations

from typing import Iterable, Iterator

__all__ = ["OutlineForest", "OutlineCycleError"]


class OutlineCycleError(ValueError):
    """Raised when a reparent would make a node its own ancestor."""

    def __init__(self, node_id: str, parent_id: str) -> None:
        super().__init__(f"Cannot move outline node {node_id!r} under its descendant {parent_id!r}")
        self.node_id = node_id
        self.parent_id = parent_id


class OutlineForest:
    """Maintains ``parent -> ordered children`` incrementally.

    Roots are tracked under the ``None`` key. Child lists keep sibling order;
    callers own the ``sort_order`` field and keep it in step with the index.
    """

    __slots__ = ("_parents", "_children")

    def __init__(self) -> None:
        self._parents: dict[str, str | None] = {}
        self._children: dict[str | None, list[str]] = {None: []}

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._parents

    def __len__(self) -> int:
        return len(self._parents)

    def add(self, node_id: str, parent_id: str | None, index: int | None = None) -> None:
        if node_id in self._parents:
            raise ValueError(f"Outline node {node_id!r} already indexed")
        if parent_id is not None and parent_id not in self._parents:
            raise KeyError(parent_id)
        self._parents[node_id] = parent_id
        self._children.setdefault(node_id, [])
        siblings = self._children.setdefault(parent_id, [])
        if index is None or index >= len(siblings):
            siblings.append(node_id)
        else:
            siblings.insert(max(0, index), node_id)

    def parent_of(self, node_id: str) -> str | None:
        return self._parents[node_id]

    def children(self, node_id: str | None) -> list[str]:
        return list(self._children.get(node_id, ()))

    def roots(self) -> list[str]:
        return list(self._children[None])

    def siblings(self, node_id: str) -> list[str]:
        return self.children(self._parents[node_id])

    def ancestors(self, node_id: str) -> list[str]:
        """Return ancestors nearest-first."""

        chain: list[str] = []
        current = self._parents.get(node_id)
        while current is not None:
            chain.append(current)
            current = self._parents.get(current)
        return chain

    def descendants(self, node_id: str) -> list[str]:
        """Return all descendants in depth-first pre-order."""

        result: list[str] = []
        stack = list(reversed(self._children.get(node_id, ())))
        while stack:
            current = stack.pop()
            result.append(current)
            stack.extend(reversed(self._children.get(current, ())))
        return result

    def move(self, node_id: str, new_parent_id: str | None, index: int | None = None) -> None:
        if node_id not in self._parents:
            raise KeyError(node_id)
        if new_parent_id is not None:
            if new_parent_id not in self._parents:
                raise KeyError(new_parent_id)
            if new_parent_id == node_id or node_id in self.ancestors(new_parent_id):
                raise OutlineCycleError(node_id, new_parent_id)
        old_parent = self._parents[node_id]
        self._children[old_parent].remove(node_id)
        self._parents[node_id] = new_parent_id
        siblings = self._children.setdefault(new_parent_id, [])
        if index is None or index >= len(siblings):
            siblings.append(node_id)
        else:
            siblings.insert(max(0, index), node_id)

    def remove_subtree(self, node_id: str) -> list[str]:
        """Remove ``node_id`` and its descendants; return removed ids, root first."""

        if node_id not in self._parents:
            raise KeyError(node_id)
        removed = [node_id, *self.descendants(node_id)]
        parent = self._parents[node_id]
        self._children[parent].remove(node_id)
        for current in removed:
            self._parents.pop(current, None)
            self._children.pop(current, None)
        return removed

    def walk(self) -> Iterator[tuple[str, int]]:
        """Yield ``(node_id, depth)`` in pre-order across all roots."""

        stack: list[tuple[str, int]] = [(root, 0) for root in reversed(self._children[None])]
        while stack:
            current, depth = stack.pop()
            yield current, depth
            stack.extend((child, depth + 1) for child in reversed(self._children.get(current, ())))

    @classmethod
    def build(cls, pairs: Iterable[tuple[str, str | None, int]]) -> "OutlineForest":
        """Build an index from ``(node_id, parent_id, sort_order)`` triples.

        Nodes whose parent is missing are indexed as roots.
        """

        items = sorted(pairs, key=lambda item: item[2])
        known = {node_id for node_id, _, _ in items}
        forest = cls()
        pending = list(items)
        while pending:
            progressed = False
            remaining = []
            for node_id, parent_id, _ in pending:
                effective = parent_id if parent_id in known else None
                if effective is None or effective in forest:
                    forest.add(node_id, effective)
                    progressed = True
                else:
                    remaining.append((node_id, parent_id, 0))
            if not progressed:
                # A persisted cycle; break it by promoting the first node to a root.
                node_id, _, _ = remaining.pop(0)
                forest.add(node_id, None)
            pending = remaining
        return forest
