import random
import string
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    ERROR = "error"
    CLOSED = "closed"


def generate_connection_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"ws-{int(time.time() * 1000)}-{suffix}"


@dataclass
class RelayConnection:
    id: str
    socket: Any
    remote_address: str
    created_at: float
    last_activity: float
    messages: int = 0
    state: ConnectionState = ConnectionState.CONNECTING
    target_url: Optional[str] = None
    channel: Any = None
    closed_reason: Optional[str] = field(default=None, repr=False)

    def idle_for(self, now: float) -> float:
        return now - self.last_activity

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "remote_address": self.remote_address,
            "created_at": self.created_at,
            "last_activity": self.last_activity,
            "messages": self.messages,
            "state": self.state.value,
            "target_url": self.target_url,
        }
