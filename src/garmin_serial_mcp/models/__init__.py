"""Data models for device identification."""

from .product import (
    ProductData,
    ProductInfo,
    ProtocolArray,
    ProtocolCapability,
)
