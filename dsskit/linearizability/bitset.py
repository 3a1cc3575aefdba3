"""A fixed-size set of bit positions, stored as 64-bit words."""

from __future__ import annotations

__all__ = ["Bitset"]

_WORD_BITS = 64
_WORD_MASK = (1 << _WORD_BITS) - 1


class Bitset:
    """Fixed-capacity set of small non-negative integers.

    Two bitsets are equal when their words are equal. The hash mixes the
    population count with every word, so equal bitsets hash alike.
    """

    __slots__ = ("bits", "_words")

    def __init__(self, bits: int):
        if bits < 0:
            raise ValueError(f"bit count must not be negative: {bits}")
        self.bits = bits
        self._words = [0] * -(-bits // _WORD_BITS)

    def _locate(self, pos: int) -> tuple[int, int]:
        if not 0 <= pos < len(self._words) * _WORD_BITS:
            raise IndexError(f"bit position {pos} out of range")
        return divmod(pos, _WORD_BITS)

    def set(self, pos: int) -> None:
        """Add ``pos`` to the set."""
        major, minor = self._locate(pos)
        self._words[major] |= 1 << minor

    def clear(self, pos: int) -> None:
        """Remove ``pos`` from the set."""
        major, minor = self._locate(pos)
        self._words[major] &= ~(1 << minor) & _WORD_MASK

    def __contains__(self, pos: object) -> bool:
        if not isinstance(pos, int):
            return False
        try:
            major, minor = self._locate(pos)
        except IndexError:
            return False
        return bool(self._words[major] >> minor & 1)

    def popcount(self) -> int:
        """Number of positions in the set."""
        return sum(word.bit_count() for word in self._words)

    def copy(self) -> Bitset:
        """An independent copy of this bitset."""
        other = Bitset.__new__(Bitset)
        other.bits = self.bits
        other._words = list(self._words)
        return other

    def __hash__(self) -> int:
        digest = self.popcount()
        for word in self._words:
            digest ^= word
        return digest

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Bitset):
            return NotImplemented
        return self._words == other._words

    def __repr__(self) -> str:
        members = [pos for pos in range(len(self._words) * _WORD_BITS) if pos in self]
        return f"Bitset(bits={self.bits}, members={members})"