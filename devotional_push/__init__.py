"""Daily devotional push service package initialization."""

from typing import TYPE_CHECKING

__version__ = "2.0.0"

if TYPE_CHECKING:  # pragma: no cover - import-time convenience for type checkers
    from .main import app as app

__all__ = ["app", "__version__"]


def __getattr__(name: str):
    if name == "app":
        from .main import app as _app
        return _app
    raise AttributeError(f"module 'devotional_push' has no attribute {name!r}")
