"""Infrastructure adapter that implements the application RetryFailureSink
as an append-only JSON-lines file.
"""
from __future__ import annotations

import asyncio
import json
from dataclasses import asdict
from pathlib import Path

import aiofiles
import aiofiles.os

from application.ports.retry_sink import RetryFailureRecord, RetryFailureSink


class JsonlRetryFailureSink(RetryFailureSink):
    def __init__(self, path: str | Path):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    async def append(self, record: RetryFailureRecord) -> None:
        line = json.dumps(asdict(record), default=str, ensure_ascii=False)
        async with self._lock:
            await aiofiles.os.makedirs(self.path.parent, exist_ok=True)
            async with aiofiles.open(self.path, "a", encoding="utf-8") as f:
                await f.write(line + "\n")
                await f.flush()

    async def read_all(self) -> list[RetryFailureRecord]:
        """Load every stored record, oldest first (used for reprocessing)."""
        if not await aiofiles.os.path.exists(self.path):
            return []
        records = []
        async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
            async for line in f:
                line = line.strip()
                if line:
                    records.append(RetryFailureRecord(**json.loads(line)))
        return records
