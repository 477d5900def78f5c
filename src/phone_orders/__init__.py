"""
Phone ordering package.

Keep imports lightweight so pure modules like `src.phone_orders.turn_taking` or
`src.phone_orders.guard` can be used without loading the config (and dotenv)
at import time.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from src.phone_orders.config import Config

__all__ = ["Config", "get_config"]


def __getattr__(name: str) -> Any:
    if name in __all__:
        from src.phone_orders.config import Config, get_config

        return {"Config": Config, "get_config": get_config}[name]
    raise AttributeError(name)
