"""Manager state file: settings and per-mod enabled flags."""

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from .errors import ModIOError, ParseError

STATE_DIRNAME = ".modman"
STATE_FILENAME = "state.json"
DEFAULT_TIMEOUT = 30.0
DEFAULT_MAX_WORKERS = 3


def default_state_path() -> Path:
    env = os.environ.get("MODMAN_STATE_FILE")
    if env:
        return Path(env)
    return Path.home() / STATE_DIRNAME / STATE_FILENAME


class StateError(ParseError):
    """Raised when the state file cannot be parsed."""

    pass


class ModState:
    """Persisted flags for one installed mod."""

    def __init__(
        self,
        identity: str,
        enabled: bool = True,
        installed_at: str | None = None,
        version: str = "",
    ):
        self.identity = identity
        self.enabled = enabled
        self.installed_at = installed_at or datetime.now(timezone.utc).isoformat()
        self.version = version

    def to_dict(self) -> dict[str, Any]:
        return {
            "enabled": self.enabled,
            "installedAt": self.installed_at,
            "version": self.version,
        }

    @classmethod
    def from_dict(cls, identity: str, data: dict[str, Any]) -> "ModState":
        return cls(
            identity=identity,
            enabled=bool(data.get("enabled", True)),
            installed_at=data.get("installedAt"),
            version=data.get("version", ""),
        )


class ManagerState:
    """Manages the manager-level state file."""

    def __init__(self, state_file: Path | None = None):
        self.state_file = Path(state_file) if state_file else default_state_path()
        self.install_root: str = ""
        self.registry_url: str = ""
        self.registry_etag: str = ""
        self.registry_version: str = ""
        self.loader_version: str = ""
        self.timeout: float = DEFAULT_TIMEOUT
        self.max_workers: int = DEFAULT_MAX_WORKERS
        self.mods: dict[str, ModState] = {}
        self._lock = threading.Lock()

    @classmethod
    def open(cls, state_file: Path | None = None) -> "ManagerState":
        """Load the state file if it exists, otherwise start from defaults."""
        state = cls(state_file)
        if state.exists():
            state.load()
        return state

    def exists(self) -> bool:
        """Check if state file exists."""
        return self.state_file.exists()

    def load(self) -> None:
        """Load state from file."""
        if not self.state_file.exists():
            raise StateError(f"No state file found at {self.state_file}")

        try:
            with open(self.state_file, encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise StateError(f"Invalid state file: {e}")
        except OSError as e:
            raise ModIOError(f"Could not read state file: {e}", self.state_file)

        if not isinstance(data, dict):
            raise StateError("Invalid state file: expected a JSON object")

        self.install_root = data.get("installRoot", "")
        self.registry_url = data.get("registryUrl", "")
        self.registry_etag = data.get("registryEtag", "")
        self.registry_version = data.get("registryVersion", "")
        self.loader_version = data.get("loaderVersion", "")
        self.timeout = float(data.get("timeout", DEFAULT_TIMEOUT))
        self.max_workers = int(data.get("maxWorkers", DEFAULT_MAX_WORKERS))

        self.mods = {}
        for identity, mod_data in data.get("mods", {}).items():
            self.mods[identity] = ModState.from_dict(identity, mod_data)

    def save(self) -> None:
        """Save state to file, replacing it atomically."""
        with self._lock:
            data = {
                "installRoot": self.install_root,
                "registryUrl": self.registry_url,
                "registryEtag": self.registry_etag,
                "registryVersion": self.registry_version,
                "loaderVersion": self.loader_version,
                "timeout": self.timeout,
                "maxWorkers": self.max_workers,
                "mods": {identity: mod.to_dict() for identity, mod in sorted(self.mods.items())},
            }

            tmp_file = self.state_file.with_name(self.state_file.name + ".tmp")
            try:
                self.state_file.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_file, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                os.replace(tmp_file, self.state_file)
            except OSError as e:
                raise ModIOError(f"Could not write state file: {e}", self.state_file)

    def is_enabled(self, identity: str) -> bool:
        """Enabled flag for a mod; mods without a record count as enabled."""
        mod = self.mods.get(identity)
        return mod.enabled if mod else True

    def set_enabled(self, identity: str, enabled: bool) -> None:
        mod = self.mods.get(identity)
        if mod is None:
            self.mods[identity] = ModState(identity, enabled=enabled)
        else:
            mod.enabled = enabled

    def record_install(self, identity: str, version: str, enabled: bool) -> None:
        """Add or update a mod after a successful install."""
        self.mods[identity] = ModState(identity, enabled=enabled, version=version)

    def remove_mod(self, identity: str) -> None:
        """Remove a mod from the state."""
        self.mods.pop(identity, None)

    def get_mod(self, identity: str) -> ModState | None:
        """Get mod state by identity."""
        return self.mods.get(identity)
