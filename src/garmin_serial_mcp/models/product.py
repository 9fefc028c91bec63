"""Product identification data reported by the device.

Product Data (packet 255) layout::

    +------------+------------------+--------------------------------------+
    | Product ID | Software Version | Description strings                  |
    | uint16 LE  | int16 LE (x100)  | one or more null-terminated strings  |
    +------------+------------------+--------------------------------------+

Only the first string is the product description; later strings are
manufacturing details that are kept but not meant for display.

The Protocol Array (packet 253) is a list of 3-byte records: an ASCII tag
(P, T, L, A or D) followed by a uint16 LE protocol number, e.g. ``L001``.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass, field

PRODUCT_HEADER = struct.Struct("<Hh")
PROTOCOL_RECORD = struct.Struct("<BH")

TAG_NAMES = {
    "P": "physical",
    "T": "transmission",
    "L": "link",
    "A": "application",
    "D": "data_type",
}


def split_strings(data: bytes) -> list[str]:
    """Split a run of null-terminated ASCII strings.

    A missing final terminator is tolerated.
    """
    if not data:
        return []
    parts = data.split(b"\x00")
    if data.endswith(b"\x00"):
        parts = parts[:-1]
    return [p.decode("ascii", errors="replace") for p in parts]


@dataclass
class ProductData:
    """Parsed Product Data packet."""

    product_id: int = 0
    software_version: float = 0.0
    description: str = ""
    extra: list[str] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> ProductData:
        if len(data) < PRODUCT_HEADER.size:
            raise ValueError(
                f"Product data needs at least {PRODUCT_HEADER.size} bytes, got {len(data)}"
            )
        product_id, version = PRODUCT_HEADER.unpack_from(data)
        strings = split_strings(data[PRODUCT_HEADER.size :])
        return cls(
            product_id=product_id,
            software_version=version / 100,
            description=strings[0] if strings else "",
            extra=strings[1:],
        )

    def to_dict(self) -> dict:
        return {
            "product_id": self.product_id,
            "software_version": f"{self.software_version:.2f}",
            "description": self.description,
            "extra": list(self.extra),
        }


@dataclass(frozen=True)
class ProtocolCapability:
    """A single protocol or data type the device supports."""

    tag: str
    number: int

    @property
    def kind(self) -> str:
        return TAG_NAMES.get(self.tag, "unknown")

    def __str__(self) -> str:
        return f"{self.tag}{self.number:03}"


@dataclass
class ProtocolArray:
    """Parsed Protocol Array packet."""

    capabilities: list[ProtocolCapability] = field(default_factory=list)

    @classmethod
    def from_bytes(cls, data: bytes) -> ProtocolArray:
        # A trailing partial record is ignored
        usable = len(data) - len(data) % PROTOCOL_RECORD.size
        capabilities = [
            ProtocolCapability(tag=chr(tag), number=number)
            for tag, number in PROTOCOL_RECORD.iter_unpack(data[:usable])
        ]
        return cls(capabilities=capabilities)

    def to_list(self) -> list[str]:
        return [str(c) for c in self.capabilities]


@dataclass
class ProductInfo:
    """Everything the device reported in answer to a Product Request."""

    product: ProductData
    ext_data: list[str] = field(default_factory=list)
    protocols: ProtocolArray | None = None

    def to_dict(self) -> dict:
        result = self.product.to_dict()
        result["ext_product_data"] = list(self.ext_data)
        if self.protocols is not None:
            result["protocols"] = self.protocols.to_list()
        return result
