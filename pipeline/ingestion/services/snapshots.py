from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import asdict
from pathlib import Path

from ingestion.core.config import Settings
from ingestion.services.repository import StoredCandidate

logger = logging.getLogger(__name__)


class SnapshotWriter:
    """Writes one JSONL file of stored candidates per run."""

    def __init__(self, *, mode: str, local_dir: str) -> None:
        self.mode = mode
        self.local_dir = Path(local_dir)

    @classmethod
    def from_settings(cls, settings: Settings) -> SnapshotWriter:
        return cls(mode=settings.snapshot_mode, local_dir=settings.snapshot_local_dir)

    async def write_run_snapshot(
        self,
        *,
        run_id: str,
        source_key: str,
        candidates: list[StoredCandidate],
    ) -> str | None:
        if self.mode == "disabled":
            return None

        target = self.local_dir / source_key / f"{run_id}.jsonl"
        body = "".join(json.dumps(asdict(candidate), sort_keys=True) + "\n" for candidate in candidates)
        await asyncio.to_thread(_write_text, target, body)
        logger.info("Wrote run snapshot file=%s candidates=%s", target, len(candidates))
        return str(target)


def _write_text(target: Path, body: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(body, encoding="utf-8")
