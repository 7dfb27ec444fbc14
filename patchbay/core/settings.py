"""User-facing settings - persisted to ~/.config/patchbay/settings.json.

Covers the graph editor's tunable constants: history depth, paste offset,
where the graph is stored and how much it may occupy, and the view geometry
used when auto-fitting a level.
"""

import json
import logging
from pathlib import Path

log = logging.getLogger(__name__)

CONFIG_PATH = Path.home() / '.config' / 'patchbay' / 'settings.json'

DEFAULTS = {
    'history_size': 50,
    'paste_offset': 50.0,            # canvas units, applied on both axes
    'storage_dir': str(Path.home() / '.local' / 'share' / 'patchbay'),
    'storage_quota': 5 * 1024 * 1024,  # bytes per stored key
    'view_width': 1280.0,
    'view_height': 800.0,
    'fit_padding': 0.9,              # fraction of the view the fitted box may fill
    'min_zoom': 0.25,
    'max_zoom': 2.0,
}


class Settings:
    def __init__(self, path=None):
        self.path = Path(path) if path else CONFIG_PATH
        self.history_size: int = DEFAULTS['history_size']
        self.paste_offset: float = DEFAULTS['paste_offset']
        self.storage_dir: str = DEFAULTS['storage_dir']
        self.storage_quota: int = DEFAULTS['storage_quota']
        self.view_width: float = DEFAULTS['view_width']
        self.view_height: float = DEFAULTS['view_height']
        self.fit_padding: float = DEFAULTS['fit_padding']
        self.min_zoom: float = DEFAULTS['min_zoom']
        self.max_zoom: float = DEFAULTS['max_zoom']
        self._load()

    def _load(self):
        if not self.path.exists():
            return
        try:
            with open(self.path) as f:
                d = json.load(f)
            self.history_size = max(1, int(d.get('history_size', self.history_size)))
            self.paste_offset = float(d.get('paste_offset', self.paste_offset))
            self.storage_dir = str(d.get('storage_dir', self.storage_dir))
            self.storage_quota = int(d.get('storage_quota', self.storage_quota))
            self.view_width = float(d.get('view_width', self.view_width))
            self.view_height = float(d.get('view_height', self.view_height))
            self.fit_padding = float(d.get('fit_padding', self.fit_padding))
            self.min_zoom = float(d.get('min_zoom', self.min_zoom))
            self.max_zoom = float(d.get('max_zoom', self.max_zoom))
        except (OSError, ValueError, TypeError, AttributeError) as e:
            log.warning("[Settings] ignoring %s: %s", self.path, e)

    def save(self):
        """Persist current settings to the user config file."""
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with open(self.path, 'w') as f:
                json.dump({
                    'history_size': self.history_size,
                    'paste_offset': self.paste_offset,
                    'storage_dir': self.storage_dir,
                    'storage_quota': self.storage_quota,
                    'view_width': self.view_width,
                    'view_height': self.view_height,
                    'fit_padding': self.fit_padding,
                    'min_zoom': self.min_zoom,
                    'max_zoom': self.max_zoom,
                }, f, indent=2)
        except OSError as e:
            log.warning("[Settings] could not write %s: %s", self.path, e)
