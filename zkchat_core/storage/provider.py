# zkchat_core/storage/provider.py
from __future__ import annotations
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple


class StorageProvider(ABC):
    """
    Durable client-side storage.

    Holds only what must survive a restart: the PIN-protected secret, the
    login method and the bunker connection. Channel keys never land here;
    they live in the session KeyCache.
    """

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def get_item(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...

    # audit
    @abstractmethod
    def log_event(self, event_type: str, payload: Dict[str, Any]) -> None: ...

    @abstractmethod
    def list_events(self) -> List[Tuple[str, str, Dict[str, Any]]]: ...

    def close(self) -> None:
        return
