from pathlib import Path
from time import strftime
import json

class SessionStorage:
    """One directory per tracking session: config.json, summary.json, logs/."""
    def __init__(self, root: str, name: str = "session"):
        self.root = Path(root)
        self.name = name
        self.session_dir = None
        self.logs_dir = None

    def begin(self) -> str:
        sid = f"{self.name}_{strftime('%Y%m%d_%H%M%S')}"
        candidate = self.root / sid
        n = 1
        while candidate.exists():   # two sessions started within the same second
            candidate = self.root / f"{sid}_{n}"
            n += 1
        self.session_dir = candidate
        self.logs_dir = self.session_dir / "logs"
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return str(self.session_dir)

    def _dump(self, filename: str, data: dict):
        with open(self.session_dir / filename, "w") as fp:
            json.dump(data, fp, indent=2, default=str)

    def write_manifest(self, meta: dict):
        self._dump("config.json", meta)

    def write_summary(self, summary: dict):
        self._dump("summary.json", summary)
