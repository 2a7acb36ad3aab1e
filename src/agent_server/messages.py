"""Append-only, role-tagged message log owned by a single run."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Iterator, List, Union


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    role: Role
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role.value, "content": self.content}


class MessageLog:
    """Ordered conversation history.

    Entries are never removed or reordered; conversation order is log order.
    """

    def __init__(self) -> None:
        self._items: List[Message] = []

    def append(self, role: Union[Role, str], content: str) -> Message:
        if role is None:
            raise ValueError("role must not be None")
        if content is None:
            raise ValueError("content must not be None")
        msg = Message(role=Role(role), content=str(content))
        self._items.append(msg)
        return msg

    def contents(self) -> List[str]:
        return [m.content for m in self._items]

    def roles(self) -> List[Role]:
        return [m.role for m in self._items]

    def snapshot(self) -> List[Dict[str, str]]:
        """Conversation as plain dicts, the shape sent to the inference service."""
        return [m.to_dict() for m in self._items]

    def __len__(self) -> int:
        return len(self._items)

    def __iter__(self) -> Iterator[Message]:
        return iter(list(self._items))

    def __getitem__(self, index: int) -> Message:
        return self._items[index]

    # --------- persistence ----------
    def to_list(self) -> List[Dict[str, str]]:
        return self.snapshot()

    @classmethod
    def from_list(cls, rows: List[Dict[str, Any]]) -> "MessageLog":
        log = cls()
        for row in rows:
            log.append(row["role"], row["content"])
        return log
