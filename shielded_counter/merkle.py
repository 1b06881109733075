"""Fixed-depth commitment tree utilities.

This module implements the append-only commitment tree kept by the ledger and
the root recomputation used by the proving layer.

Design goals:
- Deterministic across implementations
- Simple reference implementation (sparse, not optimized)
- Fixed depth so every authentication path has the same shape

Hashing:
- SHA-256
- Domain separation:
  - leaf = SHA256(0x00 || commitment_bytes)
  - node = SHA256(0x01 || left || right)
- Empty subtrees hash to a precomputed chain starting at leaf(32 zero bytes).

Paths returned by ``CommitmentTree.ledger_path`` use the ledger contract's bit
convention (bit 0 => sibling is the left child). ``compute_root`` consumes the
proving layer's convention (True => the proven node is the right child). Use
``shielded_counter.path.translate`` to move between them.
"""

from __future__ import annotations

import hashlib
from typing import Dict, Iterable, List, Optional, Tuple


DEFAULT_DEPTH = 32
MAX_DEPTH = 64
EMPTY_LEAF = "00" * 32


def _sha256(b: bytes) -> bytes:
    return hashlib.sha256(b).digest()


def is_hex_32(s: str) -> bool:
    if not isinstance(s, str):
        return False
    ss = s.strip().lower()
    if len(ss) != 64:
        return False
    try:
        bytes.fromhex(ss)
        return True
    except ValueError:
        return False


def leaf_hash(commitment_hex: str) -> str:
    """Compute the tree leaf hash for a 32-byte commitment encoded as hex."""
    if not is_hex_32(commitment_hex):
        raise ValueError("commitment_hex must be 64 hex chars")
    return _sha256(b"\x00" + bytes.fromhex(commitment_hex.strip().lower())).hex()


def node_hash(left_hex: str, right_hex: str) -> str:
    """Compute a parent hash from two child hashes (each 32 bytes hex)."""
    if not is_hex_32(left_hex) or not is_hex_32(right_hex):
        raise ValueError("left_hex and right_hex must be 64 hex chars")
    left = bytes.fromhex(left_hex.strip().lower())
    right = bytes.fromhex(right_hex.strip().lower())
    return _sha256(b"\x01" + left + right).hex()


def zero_hashes(depth: int) -> List[str]:
    """Hashes of empty subtrees for heights 0..depth."""
    zeros = [leaf_hash(EMPTY_LEAF)]
    for _ in range(depth):
        zeros.append(node_hash(zeros[-1], zeros[-1]))
    return zeros


def empty_root(depth: int) -> str:
    """Root of a tree of ``depth`` levels with no leaves filled."""
    return zero_hashes(depth)[depth]


def compute_root(commitment_hex: str, levels: Iterable[Tuple[str, bool]]) -> str:
    """
    Recompute a root from a commitment and an internal-convention path.

    Each level is ``(sibling_hex, leaf_is_right)``; when ``leaf_is_right`` is
    True the running node is the right child and the sibling sits on the left.
    """
    current = leaf_hash(commitment_hex)
    for sibling, leaf_is_right in levels:
        if leaf_is_right:
            current = node_hash(sibling, current)
        else:
            current = node_hash(current, sibling)
    return current


class CommitmentTree:
    """
    Append-only sparse Merkle tree of resource commitments.

    Leaves are filled left to right. Unfilled positions hash as empty leaves,
    so the root is defined for any fill level and every path has ``depth``
    levels.
    """

    def __init__(self, depth: int = DEFAULT_DEPTH):
        if depth < 1 or depth > MAX_DEPTH:
            raise ValueError(f"depth must be in 1..{MAX_DEPTH}")
        self.depth = depth
        self._zeros = zero_hashes(depth)
        self._leaves: List[str] = []
        self._index: Dict[str, int] = {}
        self._levels: Optional[List[Dict[int, str]]] = None

    def __len__(self) -> int:
        return len(self._leaves)

    def __contains__(self, commitment: object) -> bool:
        return commitment in self._index

    @property
    def capacity(self) -> int:
        return 1 << self.depth

    def append(self, commitment_hex: str) -> int:
        """Append a commitment and return its leaf index."""
        if len(self._leaves) >= self.capacity:
            raise ValueError("commitment tree is full")
        commitment = commitment_hex.strip().lower()
        idx = len(self._leaves)
        self._leaves.append(leaf_hash(commitment))
        self._index.setdefault(commitment, idx)
        self._levels = None
        return idx

    def index_of(self, commitment_hex: str) -> Optional[int]:
        return self._index.get(commitment_hex.strip().lower())

    def _build_levels(self) -> List[Dict[int, str]]:
        if self._levels is not None:
            return self._levels
        levels: List[Dict[int, str]] = [dict(enumerate(self._leaves))]
        for height in range(self.depth):
            below = levels[-1]
            zero = self._zeros[height]
            above: Dict[int, str] = {}
            for parent in sorted({i // 2 for i in below}):
                left = below.get(2 * parent, zero)
                right = below.get(2 * parent + 1, zero)
                above[parent] = node_hash(left, right)
            levels.append(above)
        self._levels = levels
        return levels

    def root(self) -> str:
        levels = self._build_levels()
        return levels[self.depth].get(0, self._zeros[self.depth])

    def ledger_path(self, index: int) -> List[Tuple[str, int]]:
        """
        Authentication path for a leaf in the ledger contract convention.

        Returns ``depth`` pairs of ``(sibling_hex, bit)`` ordered leaf to root,
        where bit 0 means the sibling is the left child.
        """
        if index < 0 or index >= len(self._leaves):
            raise IndexError(f"leaf index {index} out of range")
        levels = self._build_levels()
        path: List[Tuple[str, int]] = []
        node = index
        for height in range(self.depth):
            sibling_index = node ^ 1
            sibling = levels[height].get(sibling_index, self._zeros[height])
            path.append((sibling, 0 if node & 1 else 1))
            node //= 2
        return path
