import pytest

from tillcore import create_app
from tillcore.errors import StorageError
from tillcore.extensions import db
from tillcore.services import products_service
from tillcore.services.product_cache import (
    ProductCache,
    ProductSearchParams,
    canonical_key,
    get_product_cache,
)
from tillcore.services.init_service import get_sequencer
from tillcore.services.products_service import ProductUpdate


class FakeClock:
    def __init__(self, now=0.0):
        self.now = now

    def __call__(self):
        return self.now


def page_of(*ids):
    return {"products": [{"id": pid} for pid in ids], "total_count": len(ids)}


@pytest.mark.parametrize("params, key", [
    (ProductSearchParams(), "default"),
    (ProductSearchParams(page=1, limit=50, sort_by="name", sort_order="ASC"), "default"),
    (ProductSearchParams(query="  "), "default"),
    (ProductSearchParams(query=" tea ", category="drinks", page=2), "q:tea|cat:drinks|p:2"),
    (ProductSearchParams(in_stock_only=True), "inStock:true"),
    (ProductSearchParams(sort_by="price", sort_order="DESC"), "sort:price|order:desc"),
    (ProductSearchParams(min_price=5, max_price=10.5, limit=20), "minP:5.0|maxP:10.5|l:20"),
    (ProductSearchParams(category="a|cat:b"), "cat:a\\|cat:b"),
    (ProductSearchParams(brand="back\\slash"), "brand:back\\\\slash"),
])
def test_canonical_key(params, key):
    assert canonical_key(params) == key


def test_separator_inside_a_value_cannot_collide_with_another_search():
    forged = ProductSearchParams(query="tea|cat:food")
    real = ProductSearchParams(query="tea", category="food")
    assert canonical_key(forged) != canonical_key(real)

    cache = ProductCache(clock=FakeClock())
    cache.put(real, page_of("real"))
    assert cache.get(forged) is None


def test_configured_page_size_maps_to_default_key():
    cache = ProductCache(page_size=25, clock=FakeClock())
    assert cache.key(cache.default_params()) == "default"
    assert cache.key(ProductSearchParams()) == "l:50"
    assert canonical_key(ProductSearchParams(limit=25), page_size=25) == "default"


def test_write_during_load_is_not_cached():
    cache = ProductCache(clock=FakeClock())

    def loader(params):
        page = page_of("X")
        # a product write lands after the read but before the result is stored
        cache.invalidate(product_id="X")
        return page

    assert cache.get_or_load(ProductSearchParams(), loader) == page_of("X")
    assert cache.get(ProductSearchParams()) is None
    assert len(cache) == 0

    cache.get_or_load(ProductSearchParams(), lambda params: page_of("Y"))
    assert cache.get(ProductSearchParams()) == page_of("Y")


def test_clear_during_load_is_not_cached():
    cache = ProductCache(clock=FakeClock())

    def loader(params):
        cache.clear()
        return page_of("X")

    cache.get_or_load(ProductSearchParams(category="food"), loader)
    assert len(cache) == 0


def test_entries_expire_after_ttl():
    clock = FakeClock()
    cache = ProductCache(ttl_seconds=300, max_entries=10, clock=clock)
    cache.put(ProductSearchParams(), page_of("a"))

    clock.now = 300
    assert cache.get(ProductSearchParams()) == page_of("a")

    clock.now = 301
    assert cache.get(ProductSearchParams()) is None
    assert len(cache) == 0


def test_equivalent_params_share_an_entry():
    cache = ProductCache(clock=FakeClock())
    cache.put(ProductSearchParams(sort_order="ASC"), page_of("a"))
    assert cache.get(ProductSearchParams()) == page_of("a")
    assert len(cache) == 1


def test_full_cache_drops_oldest_half():
    clock = FakeClock()
    cache = ProductCache(ttl_seconds=300, max_entries=4, clock=clock)
    for page in range(1, 5):
        clock.now = page - 1
        cache.put(ProductSearchParams(page=page), page_of(f"p{page}"))

    clock.now = 4
    cache.put(ProductSearchParams(page=5), page_of("p5"))

    assert len(cache) == 3
    assert cache.get(ProductSearchParams(page=1)) is None
    assert cache.get(ProductSearchParams(page=2)) is None
    for page in (3, 4, 5):
        assert cache.get(ProductSearchParams(page=page)) is not None


def test_full_cache_purges_expired_entries_first():
    clock = FakeClock()
    cache = ProductCache(ttl_seconds=10, max_entries=4, clock=clock)
    for page, created in ((1, 0), (2, 1), (3, 20), (4, 21)):
        clock.now = created
        cache.put(ProductSearchParams(page=page), page_of(f"p{page}"))

    clock.now = 22
    cache.put(ProductSearchParams(page=5), page_of("p5"))

    assert len(cache) == 3
    for page in (3, 4, 5):
        assert cache.get(ProductSearchParams(page=page)) is not None


def test_overwriting_a_key_does_not_evict():
    cache = ProductCache(max_entries=2, clock=FakeClock())
    cache.put(ProductSearchParams(page=2), page_of("a"))
    cache.put(ProductSearchParams(page=3), page_of("b"))
    cache.put(ProductSearchParams(page=3), page_of("c"))
    assert len(cache) == 2
    assert cache.get(ProductSearchParams(page=3)) == page_of("c")


def test_invalidate_drops_only_affected_entries():
    cache = ProductCache(clock=FakeClock())
    cache.put(ProductSearchParams(), page_of("x", "y"))
    cache.put(ProductSearchParams(category="food"), page_of("f1"))
    cache.put(ProductSearchParams(category="drinks"), page_of("d1", "target"))
    cache.put(ProductSearchParams(brand="Acme"), page_of("a1"))
    cache.put(ProductSearchParams(category="electronics"), page_of("e1"))

    dropped = cache.invalidate(product_id="target", categories=["electronics"], brands=[None])

    assert dropped == 3
    assert cache.get(ProductSearchParams(category="food")) == page_of("f1")
    assert cache.get(ProductSearchParams(brand="Acme")) == page_of("a1")
    assert cache.get(ProductSearchParams()) is None
    assert cache.get(ProductSearchParams(category="drinks")) is None


def test_stats_counts_hits_misses_and_expired_entries():
    clock = FakeClock()
    cache = ProductCache(ttl_seconds=5, max_entries=10, clock=clock)
    cache.put(ProductSearchParams(), page_of("a"))
    cache.get(ProductSearchParams())
    cache.get(ProductSearchParams(page=9))
    clock.now = 6

    stats = cache.stats()
    assert stats["size"] == 1
    assert stats["expired_entries"] == 1
    assert stats["valid_entries"] == 0
    assert stats["hits"] == 1
    assert stats["misses"] == 1


def test_preload_counts_failures_without_raising():
    cache = ProductCache(clock=FakeClock())

    def loader(params):
        if params.category == "food":
            raise StorageError("Failed to search products")
        return page_of("a")

    result = cache.preload(loader, categories=["electronics", "food"])
    assert result.attempted == 5
    assert result.succeeded == 4
    assert result.failed == 1
    assert not result.ok
    assert cache.get(ProductSearchParams(category="electronics")) is not None
    assert cache.get(ProductSearchParams(category="food")) is None


def test_cached_search_matches_uncached_query(make_product):
    make_product(id="A1", name="Apple Juice", category="drinks")
    make_product(id="B1", name="Bagel", category="food")
    params = ProductSearchParams(category="drinks")

    first = products_service.search_products(params)
    second = products_service.search_products(params)
    assert first == products_service.query_products(params)
    assert second == first
    assert get_product_cache().stats()["hits"] >= 1


def test_category_change_invalidates_old_category_page(make_product):
    make_product(id="MOVE", name="Granola", category="food")
    food = ProductSearchParams(category="food")
    assert [p["id"] for p in products_service.search_products(food)["products"]] == ["MOVE"]

    products_service.update_product("MOVE", ProductUpdate(category="breakfast"))

    assert products_service.search_products(food)["products"] == []
    breakfast = products_service.search_products(ProductSearchParams(category="breakfast"))
    assert [p["id"] for p in breakfast["products"]] == ["MOVE"]


def test_price_change_is_visible_in_cached_page(make_product):
    make_product(id="PX", name="Espresso", category="drinks", price=18)
    params = ProductSearchParams(query="espresso")
    assert products_service.search_products(params)["products"][0]["price"] == 18

    products_service.update_product("PX", ProductUpdate(price=20))

    assert products_service.search_products(params)["products"][0]["price"] == 20


def test_startup_preload_warms_default_listing(app):
    stats = get_product_cache().stats()
    assert stats["size"] >= 1
    assert get_product_cache().get(ProductSearchParams()) is not None


def test_search_route_default_page_uses_configured_size():
    app = create_app({
        "TESTING": True,
        "SQLALCHEMY_DATABASE_URI": "sqlite:///:memory:",
        "PRODUCT_PAGE_SIZE": 25,
    })
    with app.app_context():
        get_sequencer().initialize()
        cache = get_product_cache()
        assert cache.page_size == 25
        cache.clear()

        body = app.test_client().get("/api/products/search").get_json()

        assert body["total_count"] == 0
        assert cache.get(ProductSearchParams(limit=25)) == body
        assert cache.stats()["size"] == 1
        db.session.remove()
        db.engine.dispose()
