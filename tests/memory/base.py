import shutil
import unittest
from pathlib import Path
from uuid import uuid4

from cli_relay.memory import AlertCounterStore, MemoryStore, WorkflowStore


PROJECT_ROOT = Path(__file__).resolve().parents[2]


class MemoryStoreTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self._tmp_dir = PROJECT_ROOT / ".test-artifacts" / f"{self.__class__.__name__.lower()}-{uuid4().hex}"
        self._tmp_dir.mkdir(parents=True, exist_ok=True)
        self._db_path = str(self._tmp_dir / "relay.db")
        self._store = MemoryStore(self._db_path)
        self._workflows = WorkflowStore(self._store)
        self._counters = AlertCounterStore(self._store)

    def tearDown(self) -> None:
        self._store.close()
        shutil.rmtree(self._tmp_dir, ignore_errors=True)

    def reopen(self) -> None:
        self._store.close()
        self._store = MemoryStore(self._db_path)
        self._workflows = WorkflowStore(self._store)
        self._counters = AlertCounterStore(self._store)
