"""
Catalog matching for vendor shipment lines.

Vendor-returned identifiers are inconsistently cased across API versions,
so a line is matched by seller SKU, then FNSKU, then a case-insensitive
retry of both.
"""

from dataclasses import dataclass, field
from typing import Dict, Iterable, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from sellerops.database.models import Product


@dataclass
class CatalogIndex:
    by_sku: Dict[str, str] = field(default_factory=dict)
    by_fnsku: Dict[str, str] = field(default_factory=dict)
    by_sku_folded: Dict[str, str] = field(default_factory=dict)
    by_fnsku_folded: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_rows(cls, rows: Iterable[Tuple[str, Optional[str]]]) -> "CatalogIndex":
        """Build from ``(sku, fnsku)`` pairs."""
        index = cls()
        for sku, fnsku in rows:
            index.by_sku[sku] = sku
            index.by_sku_folded.setdefault(sku.lower(), sku)
            if fnsku:
                index.by_fnsku.setdefault(fnsku, sku)
                index.by_fnsku_folded.setdefault(fnsku.lower(), sku)
        return index

    def match(self, seller_sku: Optional[str], fnsku: Optional[str] = None) -> Optional[str]:
        """Catalog SKU for a vendor line, or None."""
        if seller_sku and seller_sku in self.by_sku:
            return self.by_sku[seller_sku]
        if fnsku and fnsku in self.by_fnsku:
            return self.by_fnsku[fnsku]
        if seller_sku and seller_sku.lower() in self.by_sku_folded:
            return self.by_sku_folded[seller_sku.lower()]
        if fnsku and fnsku.lower() in self.by_fnsku_folded:
            return self.by_fnsku_folded[fnsku.lower()]
        return None


async def load_catalog_index(session: AsyncSession) -> CatalogIndex:
    result = await session.execute(select(Product.sku, Product.fnsku))
    return CatalogIndex.from_rows(result.all())
