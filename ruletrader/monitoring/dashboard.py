from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any


class DashboardWriter:
    """Writes the runtime snapshot as JSON, replacing the file atomically."""

    def __init__(self, path: str | Path, *, mode: str = "dry"):
        self.path = Path(path)
        self.mode = mode

    def write(self, payload: dict[str, Any]) -> None:
        snapshot = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            "mode": self.mode,
            **payload,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, indent=2, ensure_ascii=True, default=str), encoding="utf-8")
        tmp_path.replace(self.path)
