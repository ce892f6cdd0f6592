import os
from pathlib import Path

RUN_DIR = Path(os.getenv("PHONEPILOT_RUN_DIR", "/tmp/phonepilot"))
LATEST_PNG = RUN_DIR / "latest.png"
LAST_SENT = RUN_DIR / "last_sent.jpg"

CONFIG_DIR = Path.home() / ".config" / "phonepilot"
CONFIG_FILE = CONFIG_DIR / "config.json"

DATA_DIR = Path.home() / ".local" / "share" / "phonepilot"
HISTORY_DIR = DATA_DIR / "history"
