"""
Typed access to node attributes.
"""

from typing import Any, Dict, List

from ..errors import UnsupportedConfiguration


class NodeAttributes:
    """Read attributes of a node dict with caller-supplied defaults."""

    def __init__(self, node: Dict[str, Any]):
        self.node = node
        self.attributes: Dict[str, Any] = node.get("attributes", {})

    def has(self, name: str) -> bool:
        return name in self.attributes

    def get(self, name: str, default: Any = None) -> Any:
        """
        Get attribute `name`, converted to the type of `default`.

        Lists keep their element type from the default's first element.
        """
        if name not in self.attributes:
            return default

        value = self.attributes[name]
        if isinstance(default, bool):
            return bool(value)
        if isinstance(default, int):
            return int(value)
        if isinstance(default, float):
            return float(value)
        if isinstance(default, list) and default:
            return [type(default[0])(v) for v in value]
        return value

    def get_ints(self, name: str, default: List[int], length: int) -> List[int]:
        """Get an integer list attribute and check its length."""
        value = self.get(name, default)
        if len(value) != length:
            raise UnsupportedConfiguration(
                f"'{name}' must have {length} values, got {value}"
            )
        return value
