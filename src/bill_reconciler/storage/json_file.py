import asyncio
import json
import os
from typing import Any

from bill_reconciler.domain.records import override_to_row, parse_override_row
from bill_reconciler.errors import InvalidRecordError, StorageError
from bill_reconciler.logger import get_logger
from bill_reconciler.storage.memory import MemoryOverrideStore

logger = get_logger(__name__)


class JsonOverrideStore(MemoryOverrideStore):
    """Overrides kept in a single JSON file under the data directory."""

    def __init__(self, data_path: str = "overrides.json") -> None:
        super().__init__()
        self.data_path = data_path
        self.load()

    def load(self) -> None:
        if not os.path.exists(self.data_path):
            return
        try:
            with open(self.data_path, encoding="utf-8") as handle:
                rows: list[dict[str, Any]] = json.load(handle)
        except (OSError, json.JSONDecodeError) as exc:
            raise StorageError(f"Cannot read {self.data_path}: {exc}", retryable=False) from exc

        self.records.clear()
        for row in rows:
            try:
                override = parse_override_row(row)
            except InvalidRecordError as exc:
                logger.warning("[STORE] Ignoring stored override: %s", exc)
                continue
            self.records[override.key] = override
        logger.info("[STORE] Loaded %d overrides from %s.", len(self.records), self.data_path)

    def _write(self, rows: list[dict[str, Any]]) -> None:
        tmp_path = f"{self.data_path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as handle:
            json.dump(rows, handle, indent=2)
        os.replace(tmp_path, self.data_path)

    async def _persist(self) -> None:
        rows = [override_to_row(record) for _, record in sorted(self.records.items())]
        try:
            await asyncio.to_thread(self._write, rows)
        except OSError as exc:
            raise StorageError(f"Cannot write {self.data_path}: {exc}") from exc
