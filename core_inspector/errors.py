"""Error taxonomy for in-memory introspection.

Every error raised while reading the target image derives from
InspectorError. None of them is fatal to a report run: callers catch them
at the narrowest scope (field, node, extractor, stage) and degrade to a
fallback value or an empty section.
"""


class InspectorError(Exception):
    """Base class for all recoverable introspection failures."""


class SymbolNotFound(InspectorError):
    """A global symbol could not be resolved in the target image."""

    def __init__(self, symbol: str):
        super().__init__(f"symbol not found: {symbol}")
        self.symbol = symbol


class ReadError(InspectorError):
    """Memory at an address is unmapped, truncated or otherwise unreadable."""

    def __init__(self, address: int, size: int = 0, reason: str = ""):
        message = f"cannot read {size} bytes at 0x{address:x}" if size else f"cannot read memory at 0x{address:x}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)
        self.address = address
        self.size = size


class TypeMismatch(InspectorError):
    """The declared layout does not match what the handle actually is."""


class FieldMissing(TypeMismatch):
    """A field path segment does not exist on the record's type."""

    def __init__(self, type_name: str, segment):
        super().__init__(f"{type_name} has no field {segment!r}")
        self.type_name = type_name
        self.segment = segment


class TraversalCycleDetected(InspectorError):
    """A container walk reached an address it already visited."""

    def __init__(self, address: int, where: str = ""):
        suffix = f" in {where}" if where else ""
        super().__init__(f"cycle detected at node 0x{address:x}{suffix}")
        self.address = address


class FeatureUnavailable(InspectorError):
    """The target was built without an optional feature (e.g. lock tracking)."""
