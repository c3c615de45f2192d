"""Cross-check radio contest logs against each other."""

from importlib.metadata import PackageNotFoundError, version

from .context import MatchContext
from .crossmatch import CrossMatch, CrossMatchReport, run_crossmatch

__all__ = ["CrossMatch", "CrossMatchReport", "MatchContext", "run_crossmatch", "__version__"]

try:
    __version__ = version("contest-crossmatch")
except PackageNotFoundError:  # pragma: no cover
    __version__ = "0.0.0"
