import json
from pathlib import Path

FACINGS = ("front", "rear")


class FacingPreference:
    """Camera facing hint that outlives a session; optionally persisted to a JSON file.

    Several preferences can share one file, each under its own key.
    """

    def __init__(self, status_store, default: str = "rear", path: str | Path | None = None, key: str = "facing"):
        self.status = status_store
        self.path = Path(path) if path else None
        self.key = key
        self._value = default if default in FACINGS else "rear"
        self._load()

    @property
    def value(self) -> str:
        return self._value

    def set(self, facing: str):
        if facing not in FACINGS:
            raise ValueError(f"unknown facing {facing!r}")
        if facing == self._value:
            return
        self._value = facing
        self.status.log(f"preferences: {self.key}={facing}")
        self._save()

    def _read(self) -> dict:
        if self.path is None or not self.path.is_file():
            return {}
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            self.status.log(f"preferences: could not read {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _load(self):
        facing = self._read().get(self.key)
        if facing in FACINGS:
            self._value = facing

    def _save(self):
        if self.path is None:
            return
        data = self._read()
        data[self.key] = self._value
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(data), encoding="utf-8")
        except OSError as e:
            self.status.log(f"preferences: could not write {self.path}: {e}")
