"""Authentication path translation between ledger and proving conventions.

The ledger contract and the proving layer describe the same Merkle path with
complementary direction bits:

    ledger bit 0      sibling is the LEFT child   => proven node is on the right
    ledger bit 1      sibling is the RIGHT child  => proven node is on the left
    internal True     proven node is the RIGHT child

so ``internal = NOT(ledger_bit)`` at every level. Copying the bits verbatim
yields a path that has the right shape but hashes to a different root.

Everything here is pure: no I/O, no logging, no state.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, NamedTuple, Sequence, Tuple

from shielded_counter.errors import MalformedPathError
from shielded_counter.merkle import compute_root, is_hex_32


class PathLevel(NamedTuple):
    """One level of an internal path: sibling hash and proven-node side."""
    sibling: str
    leaf_is_right: bool


@dataclass(frozen=True)
class RawAuthenticationPath:
    """
    Authentication path as reported by the ledger contract.

    ``siblings`` is ordered leaf to root; each entry is
    ``(sibling_hex, ledger_bit)``.
    """
    root: str
    leaf_index: int
    siblings: Tuple[Tuple[str, int], ...]

    @classmethod
    def from_pairs(
        cls,
        root: str,
        leaf_index: int,
        pairs: Sequence[Tuple[str, int]],
    ) -> "RawAuthenticationPath":
        return cls(root=root, leaf_index=leaf_index, siblings=tuple((s, b) for s, b in pairs))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "root": self.root,
            "leaf_index": self.leaf_index,
            "siblings": [s for s, _ in self.siblings],
            "direction_bits": [b for _, b in self.siblings],
        }


@dataclass(frozen=True)
class InternalPath:
    """Authentication path in the proving layer's convention."""
    root: str
    levels: Tuple[PathLevel, ...]

    @property
    def depth(self) -> int:
        return len(self.levels)

    def root_for(self, commitment_hex: str) -> str:
        """Root obtained by hashing ``commitment_hex`` up this path."""
        return compute_root(commitment_hex, self.levels)

    def authenticates(self, commitment_hex: str) -> bool:
        return self.root_for(commitment_hex) == self.root


def _check_sibling(level: int, sibling: Any) -> str:
    if not is_hex_32(sibling):
        raise MalformedPathError(f"level {level}: sibling is not a 32-byte hex digest")
    return sibling.strip().lower()


def translate(raw_path: RawAuthenticationPath, depth: int) -> InternalPath:
    """
    Convert a ledger-convention path into the internal convention.

    Raises:
        MalformedPathError: wrong number of levels, bad sibling encoding or a
            direction bit that is not 0/1.
    """
    siblings = raw_path.siblings
    if len(siblings) != depth:
        raise MalformedPathError(
            f"expected {depth} path levels, ledger returned {len(siblings)}"
        )
    if not is_hex_32(raw_path.root):
        raise MalformedPathError("path root is not a 32-byte hex digest")

    levels: List[PathLevel] = []
    for i, (sibling, bit) in enumerate(siblings):
        if isinstance(bit, bool) or bit not in (0, 1):
            raise MalformedPathError(f"level {i}: direction bit must be 0 or 1, got {bit!r}")
        levels.append(PathLevel(_check_sibling(i, sibling), not bit))

    return InternalPath(root=raw_path.root.strip().lower(), levels=tuple(levels))


def translate_inverse(
    internal: InternalPath,
    depth: int,
    leaf_index: int = 0,
) -> RawAuthenticationPath:
    """Convert an internal path back to the ledger convention."""
    if internal.depth != depth:
        raise MalformedPathError(
            f"expected {depth} path levels, internal path has {internal.depth}"
        )
    pairs = [
        (_check_sibling(i, level.sibling), 0 if level.leaf_is_right else 1)
        for i, level in enumerate(internal.levels)
    ]
    return RawAuthenticationPath.from_pairs(internal.root, leaf_index, pairs)
