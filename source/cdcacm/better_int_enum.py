"""This module implements BetterIntEnum: an IntEnum type with improved printing and checked decoding of wire values."""

from enum import IntEnum


class BetterIntEnum(IntEnum):
    """BetterIntEnum is an IntEnum type with improved printing of enumeration values."""
    def __repr__(self):
        return f"{self.__class__.__name__}.{self.name}"

    def __str__(self):
        return f"{self.__class__.__name__}.{self.name}"

    @classmethod
    def from_octet(cls, octet: int):
        """Convert an octet received from a device to an enumeration value.

        Raises ValueError if the octet does not correspond to a defined value.
        """
        try:
            return cls(octet)
        except ValueError:
            raise ValueError(f"Undefined {cls.__name__} value: 0x{octet:02x}") from None
