import datetime as dt
import os
import sys
import threading
from typing import Optional


class RunLog:
    """Timestamped run log shared by the discovery step, workers and the sink."""

    def __init__(self, path: Optional[str] = None, echo: bool = True, verbose: bool = False):
        self.path = path
        self.echo = echo
        self.verbose = verbose
        self._lock = threading.Lock()
        if path:
            parent = os.path.dirname(os.path.abspath(path))
            os.makedirs(parent, exist_ok=True)

    def write(self, message: str, echo: Optional[bool] = None) -> None:
        timestamp = dt.datetime.now(dt.timezone.utc).isoformat()
        line = f"[{timestamp}] {message}"
        with self._lock:
            if self.path:
                with open(self.path, "a", encoding="utf-8") as f:
                    f.write(line + "\n")
            if self.echo if echo is None else echo:
                print(line, file=sys.stderr)

    def debug(self, message: str) -> None:
        if self.verbose:
            self.write(message, echo=False)
