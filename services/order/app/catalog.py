"""
Order Service — 商品カタログクライアント

商品データは外部の Catalog Service が持っている。
このクライアントは指定コードの商品を取得するだけで、
存在しないコードは結果に含まれない(エラーにはならない)。
"""

import logging

import httpx
from pydantic import ValidationError

from services.shared.errors import DependencyUnavailable

from .aggregate import Product

logger = logging.getLogger(__name__)


class ProductCatalog:
    def __init__(
        self,
        base_url: str,
        timeout: float = 4.5,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.transport = transport

    async def get_products_by_codes(self, codes: list[str]) -> list[Product]:
        """重複を除いたコードで問い合わせ、コードごとに最大 1 件を返す。"""
        unique_codes = sorted(set(codes))
        if not unique_codes:
            return []

        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            try:
                resp = await client.get(
                    f"{self.base_url}/products",
                    params={"codes": ",".join(unique_codes)},
                )
                resp.raise_for_status()
                items = resp.json()
            except (httpx.HTTPError, ValueError) as e:
                logger.error("Catalog lookup failed for %s: %s", unique_codes, e)
                raise DependencyUnavailable("product catalog")

        try:
            products = [Product.model_validate(item) for item in items]
        except (ValidationError, TypeError) as e:
            logger.error("Catalog returned malformed products: %s", e)
            raise DependencyUnavailable("product catalog", "product catalog returned malformed data")

        seen: dict[str, Product] = {}
        for product in products:
            if product.code in unique_codes and product.code not in seen:
                seen[product.code] = product
        return list(seen.values())
