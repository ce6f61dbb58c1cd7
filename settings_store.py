"""
Persistent UI settings for ZEPB Merger (settings.json in the user config folder)
"""

import json
import os
from pathlib import Path
from typing import Dict, Any, Optional

APP_DIR_NAME = "ZEPBMerger"


def default_settings_path() -> Path:
    # AppData\Roaming\ZEPBMerger on Windows, ~/.zepb_merger elsewhere
    if os.name == 'nt' and 'APPDATA' in os.environ:
        config_dir = Path(os.environ['APPDATA']) / APP_DIR_NAME
    else:
        config_dir = Path.home() / ".zepb_merger"
    return config_dir / "settings.json"


class SettingsStore:
    """Opaque key/value settings; values are stored as JSON and never interpreted here."""

    def __init__(self, path: Optional[Path] = None):
        self.path = Path(path) if path else default_settings_path()

    def load(self) -> Dict[str, Any]:
        """Return saved settings, or an empty dict when nothing usable is stored."""
        try:
            if not self.path.exists():
                return {}
            with open(self.path, 'r', encoding='utf-8') as f:
                settings = json.load(f)
        except (OSError, ValueError) as exc:
            print(f"Error loading settings: {exc}")
            return {}
        return settings if isinstance(settings, dict) else {}

    def save(self, settings: Dict[str, Any]) -> bool:
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w', encoding='utf-8') as f:
                json.dump(settings, f, indent=2, ensure_ascii=False)
            return True
        except (OSError, TypeError, ValueError) as exc:
            print(f"Error saving settings: {exc}")
            return False
