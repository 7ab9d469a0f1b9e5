import json
import sys
from datetime import datetime, timezone

from .config import settings

_LEVELS = {"debug": 10, "info": 20, "warning": 30, "error": 40}


def json_log(level: str, event: str, **fields):
    # One JSON object per line on stderr so Docker/systemd collectors can parse it.
    if _LEVELS.get(level, 20) < _LEVELS.get(settings.log_level, 20):
        return
    rec = {"ts": datetime.now(timezone.utc).isoformat(), "level": level, "event": event, **fields}
    print(json.dumps(rec, default=str), file=sys.stderr)
