"""Tests for the HTTP product catalog client."""

import httpx
import pytest

from services.order.app.catalog import ProductCatalog
from services.shared.errors import DependencyUnavailable

CATALOG = {"P1": 10.0, "P2": 15.0}


def _catalog_handler(requests):
    def handler(request: httpx.Request) -> httpx.Response:
        requests.append(request)
        codes = request.url.params["codes"].split(",")
        return httpx.Response(
            200,
            json=[{"code": c, "price": CATALOG[c], "name": f"Product {c}"} for c in codes if c in CATALOG],
        )

    return handler


class TestProductCatalog:
    async def test_unknown_codes_are_absent(self):
        requests = []
        catalog = ProductCatalog("http://catalog.test/", transport=httpx.MockTransport(_catalog_handler(requests)))

        products = await catalog.get_products_by_codes(["P1", "P9"])

        assert [(p.code, p.price) for p in products] == [("P1", 10.0)]
        assert requests[0].url.path == "/products"

    async def test_duplicate_codes_are_queried_once(self):
        requests = []
        catalog = ProductCatalog("http://catalog.test", transport=httpx.MockTransport(_catalog_handler(requests)))

        products = await catalog.get_products_by_codes(["P2", "P1", "P2"])

        assert requests[0].url.params["codes"] == "P1,P2"
        assert sorted(p.code for p in products) == ["P1", "P2"]

    async def test_server_error_is_dependency_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="boom"))
        catalog = ProductCatalog("http://catalog.test", transport=transport)

        with pytest.raises(DependencyUnavailable):
            await catalog.get_products_by_codes(["P1"])

    async def test_transport_error_is_dependency_unavailable(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        catalog = ProductCatalog("http://catalog.test", transport=httpx.MockTransport(handler))

        with pytest.raises(DependencyUnavailable):
            await catalog.get_products_by_codes(["P1"])

    async def test_malformed_payload_is_dependency_unavailable(self):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json=[{"code": "P1"}]))
        catalog = ProductCatalog("http://catalog.test", transport=transport)

        with pytest.raises(DependencyUnavailable):
            await catalog.get_products_by_codes(["P1"])
