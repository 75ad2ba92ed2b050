import threading
from datetime import datetime, timezone


class InMemoryStore:
    def __init__(self) -> None:
        self.users: dict[int, dict] = {}
        self.bank_accounts: dict[int, dict] = {}
        self.categories: dict[int, dict] = {}
        self.subcategories: dict[int, dict] = {}
        self.transactions: dict[int, dict] = {}
        self.lock = threading.RLock()
        self._sequences: dict[str, int] = {}

    def next_id(self, table: str) -> int:
        with self.lock:
            value = self._sequences.get(table, 0) + 1
            self._sequences[table] = value
            return value

    @staticmethod
    def now() -> datetime:
        return datetime.now(timezone.utc)
