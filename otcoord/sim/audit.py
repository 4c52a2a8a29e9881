import json
import time
from pathlib import Path
from typing import Any, Dict, Optional


class CommunicationLog:
    """JSON-lines record of every command sent to and event received from the simulator."""

    def __init__(self, path: Path | str):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._file: Optional[Any] = self.path.open("a", encoding="utf-8")

    def write(self, entry: Dict[str, Any]) -> None:
        # append a JSONL entry
        if self._file is None:
            return
        self._file.write(json.dumps(entry, ensure_ascii=False, default=str) + "\n")
        self._file.flush()

    def request(self, command: str, params: Dict[str, Any]) -> None:
        self.write({"ts": time.time(), "direction": "out", "name": command, "params": params})

    def event(self, name: str, payload: Dict[str, Any]) -> None:
        self.write({"ts": time.time(), "direction": "in", "name": name, "params": payload})

    def close(self) -> None:
        if self._file is not None:
            self._file.close()
            self._file = None
