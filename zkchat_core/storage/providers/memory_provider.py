from typing import Optional, Dict, Any
from zkchat_core.storage.provider import StorageProvider
from zkchat_core.utils import now_ts


class InMemoryStorage(StorageProvider):
    def __init__(self):
        self.items = {}
        self.audit = []

    def set_item(self, key: str, value: str):
        self.items[key] = value

    def get_item(self, key: str) -> Optional[str]:
        return self.items.get(key)

    def remove_item(self, key: str):
        self.items.pop(key, None)

    # audit
    def log_event(self, event_type: str, payload: Dict[str, Any]):
        self.audit.append((now_ts(), event_type, payload))

    def list_events(self):
        return list(self.audit)
