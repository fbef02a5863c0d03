import json
from pathlib import Path
from typing import Callable, Dict, Optional

from hydration_state import ConsumptionState

STATE_KEY = "hydration_state_v3"


class PersistentStorage:
    """Key-value blob store backed by a single JSON file.

    Values are strings. Reads and writes never raise: a failing disk leaves the
    in-memory copy authoritative and the error is only printed.
    """

    def __init__(self, data_dir: str = "data"):
        self.data_dir = Path(data_dir)
        self.store_file = self.data_dir / "store.json"
        self._data: Dict[str, str] = {}
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"Error creating data directory {self.data_dir}: {e}")

        # Ensure the store file exists
        if not self.store_file.exists():
            self._write_json(self.store_file, {})
        self._data = self._read_json(self.store_file, {})

    def _read_json(self, file_path: Path, default=None):
        """Safely read JSON file"""
        try:
            with open(file_path, 'r') as f:
                data = json.load(f)
            return data if isinstance(data, dict) else (default or {})
        except (OSError, json.JSONDecodeError) as e:
            print(f"Error reading {file_path}: {e}")
            return default or {}

    def _write_json(self, file_path: Path, data) -> bool:
        """Safely write JSON file"""
        try:
            # Write to temp file first, then rename for atomic operation
            temp_file = file_path.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(data, f, indent=2, default=str)
            temp_file.replace(file_path)
            return True
        except (OSError, TypeError, ValueError) as e:
            print(f"Error writing {file_path}: {e}")
            return False

    def get(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set(self, key: str, value: str) -> bool:
        self._data[key] = value
        return self._write_json(self.store_file, self._data)

    def remove(self, key: str) -> bool:
        if key not in self._data:
            return True
        del self._data[key]
        return self._write_json(self.store_file, self._data)

    def update(self, values: Dict[str, Optional[str]]) -> bool:
        """Set several keys with one file write; a None value removes its key"""
        for key, value in values.items():
            if value is None:
                self._data.pop(key, None)
            else:
                self._data[key] = value
        return self._write_json(self.store_file, self._data)

    def keys(self):
        return list(self._data)

    def load_state(self, default_factory: Callable[[], ConsumptionState]) -> ConsumptionState:
        """Load the saved state merged over fresh defaults; defaults on any problem"""
        defaults = default_factory()
        raw = self.get(STATE_KEY)
        if not raw:
            return defaults
        try:
            parsed = json.loads(raw)
            if not isinstance(parsed, dict):
                raise ValueError("state blob is not an object")
            return ConsumptionState.from_dict(parsed, defaults)
        except (ValueError, TypeError) as e:
            print(f"⚠️ Ignoring unreadable saved state: {e}")
            return defaults

    def save_state(self, state: ConsumptionState) -> bool:
        try:
            blob = json.dumps(state.to_dict())
        except (TypeError, ValueError) as e:
            print(f"Error serializing state: {e}")
            return False
        return self.set(STATE_KEY, blob)

    def clear(self, keep_keys=()) -> bool:
        """Drop every key except `keep_keys`"""
        self._data = {k: v for k, v in self._data.items() if k in keep_keys}
        return self._write_json(self.store_file, self._data)
