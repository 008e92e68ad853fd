"""
Conversion failures. Any of these aborts the whole conversion.
"""

from typing import Dict, Any


class ConversionError(ValueError):
    """Base class for all conversion failures"""

    @classmethod
    def for_node(cls, node: Dict[str, Any], reason: str) -> "ConversionError":
        """Build an error naming the offending node and its op type."""
        return cls(f"Node '{node['name']}' ({node['op_type']}): {reason}")


class UnsupportedOperator(ConversionError):
    """Op type outside the supported set"""


class UnsupportedConfiguration(ConversionError):
    """Supported op with an unsupported attribute combination"""


class MissingOperand(ConversionError):
    """Referenced initializer, input or intermediate is absent"""


class MalformedInput(ConversionError):
    """Graph input with an unknown or symbolic dimension"""
