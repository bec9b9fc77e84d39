"""
VEIL Session Context

The connected account, passed explicitly to every coordinator call.

Copyright (c) 2026 Momentum. All rights reserved.
"""

from __future__ import annotations

import re
import threading
import uuid
from dataclasses import dataclass, field
from typing import Callable, List, Optional

from veil.errors import NotConnected, ValidationError
from veil.observability import VeilLayer, get_logger

logger = get_logger("session", VeilLayer.SESSION)

_ADDRESS = re.compile(r"^0x[0-9a-fA-F]{40}$")

SessionListener = Callable[["SessionContext"], None]


def is_address(value: str) -> bool:
    return bool(_ADDRESS.match(value or ""))


@dataclass
class SessionContext:
    """
    One user's session.

    Wallet discovery happens elsewhere; this object only records which
    account is connected and notifies listeners when that changes.
    """

    account: Optional[str] = None
    session_id: str = field(default_factory=lambda: f"sess-{uuid.uuid4().hex[:12]}")
    _listeners: List[SessionListener] = field(default_factory=list, repr=False)
    _lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def __post_init__(self):
        if self.account is not None and not is_address(self.account):
            raise ValidationError("account", "must be a 0x-prefixed 20-byte address", self.account)

    @classmethod
    def connected_as(cls, account: str) -> "SessionContext":
        return cls(account=account)

    @property
    def connected(self) -> bool:
        return self.account is not None

    def connect(self, account: str) -> None:
        if not is_address(account):
            raise ValidationError("account", "must be a 0x-prefixed 20-byte address", account)
        with self._lock:
            self.account = account
            listeners = list(self._listeners)
        logger.info("Account connected", operation="connect", session_id=self.session_id, account=account)
        for listener in listeners:
            listener(self)

    def disconnect(self) -> None:
        with self._lock:
            self.account = None
            listeners = list(self._listeners)
        logger.info("Account disconnected", operation="disconnect", session_id=self.session_id)
        for listener in listeners:
            listener(self)

    def on_change(self, listener: SessionListener) -> None:
        with self._lock:
            self._listeners.append(listener)

    def require_connected(self) -> str:
        """Return the connected account or raise NotConnected."""
        account = self.account
        if account is None:
            raise NotConnected()
        return account
