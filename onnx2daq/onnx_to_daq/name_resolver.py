"""
Operand aliasing for pass-through operators.
"""

import logging
from typing import Dict

logger = logging.getLogger(__name__)


class NameResolver:
    """
    Maps operand names produced by pass-through nodes (e.g. Dropout) to the
    operand they forward.

    Stored targets are always resolved at insertion time, so resolving a name
    is a single lookup.
    """

    def __init__(self):
        self.name_map: Dict[str, str] = {}

    def resolve(self, name: str) -> str:
        """Return the stored alias of `name`, or `name` unchanged."""
        return self.name_map.get(name, name)

    def alias(self, name: str, target: str) -> str:
        """
        Make `name` an alias of `target`.

        Returns:
            The resolved target `name` now maps to
        """
        resolved = self.resolve(target)
        self.name_map[name] = resolved
        logger.debug(f"Aliased operand {name} -> {resolved}")
        return resolved

    def __contains__(self, name: str) -> bool:
        return name in self.name_map

    def __len__(self) -> int:
        return len(self.name_map)
