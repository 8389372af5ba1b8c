"""File-based run reports for batch generation."""

from __future__ import annotations

import json
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any

from ..config import settings


class FileStorage:
    """Writes per-run JSON and CSV reports under ``<data_root>/outputs``."""

    def __init__(self, root: Path | None = None) -> None:
        self.root = (root or settings.data_root).resolve()
        self.output_root = self.root / "outputs"
        self.output_root.mkdir(parents=True, exist_ok=True)

    def make_run_directory(self, delivery_date: date) -> Path:
        timestamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%S%fZ")
        path = self.output_root / f"batches_{delivery_date.isoformat()}_{timestamp}"
        path.mkdir(parents=True, exist_ok=False)
        return path

    def write_json(self, path: Path, data: Any, *, indent: int = 2) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8") as handle:
            json.dump(data, handle, ensure_ascii=False, indent=indent, default=str)

    def write_csv(self, path: Path, content: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        with path.open("w", encoding="utf-8", newline="") as handle:
            handle.write(content)

    def write_run_report(self, delivery_date: date, summary: dict, stops_csv: str) -> Path:
        run_dir = self.make_run_directory(delivery_date)
        self.write_json(run_dir / "summary.json", summary)
        self.write_csv(run_dir / "stops.csv", stops_csv)
        return run_dir
