"""Traversal of intrusive containers in the target image.

The containers are intrusive: link pointers live inside the node, and the
node's ``common.obj`` points at the stored object. Walkers work purely by
address through the Memory Access Port; no object graph is rebuilt.

Both walkers
- yield payload handles lazily (so a consumer can stop early),
- keep a visited-address set for the whole pass and stop on a revisit,
- have a hard cap (chain length / tree depth) for corrupted images,
- record every problem in the caller's ``errors`` list instead of raising.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Iterator, List, Optional, Set, Tuple, TypeVar

from . import constants as C
from .errors import InspectorError, ReadError, TraversalCycleDetected, TypeMismatch
from .port import FieldPath, MemoryHandle, MemoryPort

T = TypeVar("T")

# visit(payload) -> (value to keep or None, stop traversal?)
Visitor = Callable[[MemoryHandle], Tuple[Optional[T], bool]]


class TraversalKind(Enum):
    HASH = "bucketed-hash"
    TREE = "tree"


@dataclass(frozen=True)
class HashLayout:
    """Where the hash container keeps its buckets and nodes keep their links."""
    container_type: str = C.HASH_CONTAINER_TYPE
    bucket_count: FieldPath = field(default_factory=lambda: FieldPath.of(C.HASH_BUCKET_COUNT_PATH))
    buckets: FieldPath = field(default_factory=lambda: FieldPath.of(C.HASH_BUCKETS_PATH))
    head: FieldPath = field(default_factory=lambda: FieldPath.of(C.HASH_BUCKET_HEAD_PATH))
    link: FieldPath = field(default_factory=lambda: FieldPath.of(C.HASH_NODE_LINK_PATH))
    payload: FieldPath = field(default_factory=lambda: FieldPath.of(C.NODE_PAYLOAD_PATH))


@dataclass(frozen=True)
class TreeLayout:
    """Where the tree container keeps its root and nodes keep their children."""
    container_type: str = C.TREE_CONTAINER_TYPE
    root: FieldPath = field(default_factory=lambda: FieldPath.of(C.TREE_ROOT_PATH))
    left: FieldPath = field(default_factory=lambda: FieldPath.of(C.TREE_LEFT_PATH))
    right: FieldPath = field(default_factory=lambda: FieldPath.of(C.TREE_RIGHT_PATH))
    payload: FieldPath = field(default_factory=lambda: FieldPath.of(C.NODE_PAYLOAD_PATH))


@dataclass(frozen=True)
class ContainerRoot:
    """A named global container and how to walk it."""
    symbol: str
    kind: TraversalKind
    element_type: str
    hash_layout: HashLayout = field(default_factory=HashLayout)
    tree_layout: TreeLayout = field(default_factory=TreeLayout)

    @property
    def container_type(self) -> str:
        if self.kind is TraversalKind.HASH:
            return self.hash_layout.container_type
        return self.tree_layout.container_type


# ============================================================================
# HELPERS
# ============================================================================

def _note(errors: Optional[List[str]], message: str) -> None:
    if errors is not None:
        errors.append(message)


def open_container(port: MemoryPort, root: ContainerRoot) -> MemoryHandle:
    """Resolve the container global and view it as its concrete container type.

    The global is normally a pointer (``struct ao2_container *``); a null
    pointer means the container was never created, reported as ReadError.
    """
    handle = port.resolve(root.symbol)
    try:
        address = port.read_address(handle)
    except TypeMismatch:
        # embedded container rather than a pointer to one
        return port.cast(handle, root.container_type)
    if address == 0:
        raise ReadError(0, reason=f"{root.symbol} is null")
    return port.deref(port.cast(handle, f"{root.container_type} *"))


def container_count(port: MemoryPort, container: MemoryHandle) -> int:
    """Element count the container itself maintains."""
    return port.read_integer(port.field(container, C.CONTAINER_ELEMENTS_PATH))


def node_payload(port: MemoryPort, node: MemoryHandle, payload_path: FieldPath,
                 element_type: str) -> Optional[MemoryHandle]:
    """Object stored in an intrusive node, or None if the node holds nothing."""
    obj = port.field(node, payload_path)
    if port.read_address(obj) == 0:
        return None
    return port.deref(port.cast(obj, f"{element_type} *"))


# ============================================================================
# BUCKETED HASH
# ============================================================================

def iter_hash_nodes(port: MemoryPort, container: MemoryHandle, element_type: str,
                    layout: HashLayout = HashLayout(), max_chain_length: int = 1_000_000,
                    errors: Optional[List[str]] = None) -> Iterator[MemoryHandle]:
    """Yield every payload in a bucketed hash container.

    Each bucket's chain starts at its ``last`` node and follows ``prev``
    links until null. Order across buckets carries no meaning.
    """
    try:
        bucket_count = port.read_integer(port.field(container, layout.bucket_count))
        buckets = port.field(container, layout.buckets)
    except InspectorError as e:
        _note(errors, f"hash container unreadable: {e}")
        return
    if bucket_count < 0 or bucket_count > C.MAX_HASH_BUCKETS:
        _note(errors, f"implausible bucket count {bucket_count}")
        return

    visited: Set[int] = set()
    for index in range(bucket_count):
        try:
            node = port.field(port.child(buckets, index), layout.head)
            address = port.read_address(node)
        except InspectorError as e:
            _note(errors, f"bucket {index}: {e}")
            continue

        chain_length = 0
        while address:
            if address in visited:
                _note(errors, str(TraversalCycleDetected(address, f"bucket {index}")))
                break
            if chain_length >= max_chain_length:
                _note(errors, f"bucket {index}: chain longer than {max_chain_length} nodes, stopped")
                break
            visited.add(address)
            chain_length += 1

            try:
                payload = node_payload(port, node, layout.payload, element_type)
            except InspectorError as e:
                _note(errors, f"bucket {index} node 0x{address:x}: {e}")
                payload = None
            if payload is not None:
                yield payload

            try:
                node = port.field(node, layout.link)
                address = port.read_address(node)
            except InspectorError as e:
                _note(errors, f"bucket {index} node 0x{address:x} link: {e}")
                break


# ============================================================================
# TREE
# ============================================================================

def iter_tree_nodes(port: MemoryPort, container: MemoryHandle, element_type: str,
                    layout: TreeLayout = TreeLayout(), max_depth: int = 64,
                    errors: Optional[List[str]] = None) -> Iterator[MemoryHandle]:
    """Yield payloads of a binary tree container in pre-order (node, left, right).

    Uses an explicit stack, so a deep or cyclic tree cannot exhaust the
    interpreter's recursion limit. Subtrees below ``max_depth`` are skipped.
    """
    try:
        root = port.field(container, layout.root)
    except InspectorError as e:
        _note(errors, f"tree container unreadable: {e}")
        return

    visited: Set[int] = set()
    stack: List[Tuple[MemoryHandle, int]] = [(root, 0)]
    while stack:
        link, depth = stack.pop()
        try:
            address = port.read_address(link)
        except InspectorError as e:
            _note(errors, f"tree link at depth {depth}: {e}")
            continue
        if not address:
            continue
        if address in visited:
            _note(errors, str(TraversalCycleDetected(address, "tree")))
            continue
        if depth >= max_depth:
            _note(errors, f"tree deeper than {max_depth} levels at node 0x{address:x}, subtree skipped")
            continue
        visited.add(address)

        try:
            payload = node_payload(port, link, layout.payload, element_type)
        except InspectorError as e:
            _note(errors, f"tree node 0x{address:x}: {e}")
            payload = None
        if payload is not None:
            yield payload

        children = []
        for path in (layout.left, layout.right):
            try:
                children.append(port.field(link, path))
            except InspectorError as e:
                _note(errors, f"tree node 0x{address:x} {path}: {e}")
        # right pushed first so left is visited first
        for child in reversed(children):
            stack.append((child, depth + 1))


# ============================================================================
# CALLBACK WALKS
# ============================================================================

def collect(nodes: Iterable[MemoryHandle], visit: Visitor) -> List[T]:
    """Run ``visit`` over nodes, keeping non-None values, stopping when asked."""
    out: List[T] = []
    for node in nodes:
        value, stop = visit(node)
        if value is not None:
            out.append(value)
        if stop:
            break
    return out


def iter_container(port: MemoryPort, root: ContainerRoot, container: Optional[MemoryHandle] = None,
                   max_chain_length: int = 1_000_000, max_depth: int = 64,
                   errors: Optional[List[str]] = None) -> Iterator[MemoryHandle]:
    """Payload handles of any supported container kind."""
    if container is None:
        container = open_container(port, root)
    if root.kind is TraversalKind.HASH:
        return iter_hash_nodes(port, container, root.element_type, root.hash_layout,
                               max_chain_length, errors)
    return iter_tree_nodes(port, container, root.element_type, root.tree_layout,
                           max_depth, errors)


def walk_container(port: MemoryPort, root: ContainerRoot, visit: Visitor,
                   max_chain_length: int = 1_000_000, max_depth: int = 64,
                   errors: Optional[List[str]] = None) -> List[T]:
    """Open ``root`` and collect ``visit`` results over its payloads."""
    nodes = iter_container(port, root, None, max_chain_length, max_depth, errors)
    return collect(nodes, visit)
