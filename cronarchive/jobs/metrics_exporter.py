"""Appends run summaries to a JSONL file."""
import time
from pathlib import Path
from typing import Optional

import aiofiles
import orjson

from cronarchive.config import DATA_DIR
from cronarchive.jobs.metrics import RunSummary

SUMMARY_FILE = DATA_DIR / "summaries.jsonl"


class MetricsExporter:
    """Exports run summaries to a JSONL file for observability."""

    def __init__(self, run_id: str, summary_file: Optional[Path] = None):
        self.run_id = run_id
        self.summary_file = summary_file or SUMMARY_FILE

    async def export_summary(self, summary: RunSummary) -> None:
        """Append one summary line."""
        line = {"ts": time.time(), "run_id": self.run_id, **summary.model_dump(mode="json")}
        async with aiofiles.open(self.summary_file, "ab") as f:
            await f.write(orjson.dumps(line) + b"\n")
