"""consultsync client application layer: settings, schemas, services and wiring."""

from pathlib import Path
import sys

SRC_PATH = Path(__file__).resolve().parent.parent / "src"
if SRC_PATH.exists() and str(SRC_PATH) not in sys.path:  # pragma: no branch - source checkout only
    sys.path.append(str(SRC_PATH))

__all__ = ["SRC_PATH"]
