from __future__ import annotations

from .mappings import PARAMETER_ALIASES, aliases_for, get_parameter_mappings

__all__ = [
    "PARAMETER_ALIASES",
    "aliases_for",
    "get_parameter_mappings",
]
