"""
Nexus - Relay room state.

The relay keeps everything in memory and loses it on restart. ``RelayStore``
is the seam the server is written against so another backing store can be
injected.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .constants import ROOM_HISTORY_CAPACITY
from .message import Message, MessageHistory


@dataclass
class User:
    """Relay account, created on the first login of an unseen username."""

    username: str
    password: str
    friend_code: str
    online: bool = False
    connection: Optional[Any] = None

    def to_dict(self) -> Dict[str, Any]:
        """Public view of the user (never includes the password)."""
        return {"username": self.username, "friendCode": self.friend_code, "online": self.online}


class RelayStore(ABC):
    """Users, friend-code index and bounded room history."""

    @abstractmethod
    def get_user(self, username: str) -> Optional[User]:
        pass

    @abstractmethod
    def add_user(self, user: User) -> None:
        """Add a user and index its friend code."""

    @abstractmethod
    def username_for_friend_code(self, friend_code: str) -> Optional[str]:
        pass

    @abstractmethod
    def friend_code_exists(self, friend_code: str) -> bool:
        pass

    @abstractmethod
    def append_message(self, message: Message) -> bool:
        """Append to the room history. Returns False for a duplicate id."""

    @abstractmethod
    def has_message(self, message_id: str) -> bool:
        pass

    @abstractmethod
    def history(self) -> List[Message]:
        """Room history, oldest first."""

    @abstractmethod
    def users(self) -> List[User]:
        pass


class InMemoryRelayStore(RelayStore):
    """Dictionary-backed store with a ring-buffer room history."""

    def __init__(self, history_capacity: int = ROOM_HISTORY_CAPACITY):
        self._users: Dict[str, User] = {}
        self._friend_codes: Dict[str, str] = {}
        self._history = MessageHistory(capacity=history_capacity)

    def get_user(self, username: str) -> Optional[User]:
        return self._users.get(username)

    def add_user(self, user: User) -> None:
        if user.username in self._users:
            raise ValueError(f"User already exists: {user.username}")
        if user.friend_code in self._friend_codes:
            raise ValueError(f"Friend code already assigned: {user.friend_code}")
        self._users[user.username] = user
        self._friend_codes[user.friend_code] = user.username

    def username_for_friend_code(self, friend_code: str) -> Optional[str]:
        return self._friend_codes.get(friend_code)

    def friend_code_exists(self, friend_code: str) -> bool:
        return friend_code in self._friend_codes

    def append_message(self, message: Message) -> bool:
        return self._history.append(message)

    def has_message(self, message_id: str) -> bool:
        return self._history.contains(message_id)

    def history(self) -> List[Message]:
        return self._history.snapshot()

    def users(self) -> List[User]:
        return list(self._users.values())
