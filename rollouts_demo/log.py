import json
import sys
import time

from .config import env


def log_line(d):
    """Write a single JSON line to stdout (and optional LOG_PATH file)."""
    d["ts"] = d.get("ts") or int(time.time())
    s = json.dumps(d, separators=(",", ":"))
    sys.stdout.write(s + "\n")
    sys.stdout.flush()
    path = env("LOG_PATH", "")
    if path:
        try:
            with open(path, "a") as f:
                f.write(s + "\n")
        except OSError:
            pass


def fatal(msg, **kw):
    """Log at fatal level and exit non-zero."""
    d = {"level": "fatal", "msg": msg}
    d.update(kw)
    log_line(d)
    sys.exit(1)
