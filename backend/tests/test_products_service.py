import pytest

from tillcore.errors import NotFoundError, StorageError, ValidationError
from tillcore.services import products_service
from tillcore.services.product_cache import ProductSearchParams, get_product_cache
from tillcore.services.products_service import ProductFilters, ProductUpdate


def test_create_applies_defaults_and_stock_projection(make_product):
    product = make_product(stock_quantity=0)
    assert product["id"].startswith("PROD-")
    assert product["in_stock"] is False
    assert product["reorder_qty"] == 10
    assert product["max_buy_qty"] == 100
    assert product["min_buy_qty"] == 1
    assert product["created_at"] is not None

    stocked = make_product(stock_quantity=3)
    assert stocked["in_stock"] is True


def test_in_stock_input_is_ignored_in_favour_of_quantity(make_product):
    product = make_product(stock_quantity=0, in_stock=True)
    assert product["in_stock"] is False


@pytest.mark.parametrize("overrides, field", [
    ({"name": "   "}, "name"),
    ({"category": None}, "category"),
    ({"price": -1}, "price"),
    ({"price": "abc"}, "price"),
    ({"stock_quantity": -2}, "stock_quantity"),
    ({"stock_quantity": 1.5}, "stock_quantity"),
    ({"variants": {"sizes": [{"price": 1}]}}, "variants.sizes[0].name"),
])
def test_create_rejects_invalid_fields(make_product, overrides, field):
    with pytest.raises(ValidationError) as exc_info:
        make_product(**overrides)
    assert exc_info.value.field == field


def test_create_duplicate_id_is_storage_error(make_product):
    make_product(id="DUP")
    with pytest.raises(StorageError):
        make_product(id="DUP")
    assert products_service.count_products() == 1


def test_get_missing_product_raises_not_found(app):
    with pytest.raises(NotFoundError):
        products_service.get_product("nope")


def test_list_products_filters_and_orders_by_name(make_product):
    make_product(id="b", name="Brownie", category="food", stock_quantity=0)
    make_product(id="a", name="Americano", category="drinks", description="Double shot")
    make_product(id="c", name="Chai Latte", category="drinks")

    names = [p["name"] for p in products_service.list_products()]
    assert names == ["Americano", "Brownie", "Chai Latte"]

    drinks = products_service.list_products(ProductFilters(category="drinks"))
    assert [p["id"] for p in drinks] == ["a", "c"]

    out_of_stock = products_service.list_products(ProductFilters(in_stock=False))
    assert [p["id"] for p in out_of_stock] == ["b"]

    by_description = products_service.list_products(ProductFilters(search_query="double"))
    assert [p["id"] for p in by_description] == ["a"]

    by_category_text = products_service.list_products(ProductFilters(search_query="FOO"))
    assert [p["id"] for p in by_category_text] == ["b"]

    paged = products_service.list_products(ProductFilters(limit=1, offset=1))
    assert [p["id"] for p in paged] == ["b"]


def test_update_recomputes_stock_projection(make_product):
    product = make_product(stock_quantity=4)
    emptied = products_service.update_product(product["id"], ProductUpdate(stock_quantity=0))
    assert emptied["in_stock"] is False
    restocked = products_service.update_product(product["id"], ProductUpdate(stock_quantity=7))
    assert restocked["in_stock"] is True
    assert restocked["stock_quantity"] == 7


def test_update_changes_only_given_fields(make_product):
    product = make_product(brand="Bean Co", description="House blend")
    updated = products_service.update_product(product["id"], ProductUpdate(price=12.5))
    assert updated["price"] == 12.5
    assert updated["brand"] == "Bean Co"
    assert updated["description"] == "House blend"


def test_update_with_empty_variants_removes_them(make_product):
    product = make_product(variants={"sizes": [{"name": "Large", "price": 1}]})
    updated = products_service.update_product(product["id"], ProductUpdate(variants={}))
    assert updated["variants"] is None


def test_empty_update_is_rejected(make_product):
    product = make_product()
    with pytest.raises(ValidationError, match="No fields to update"):
        products_service.update_product(product["id"], ProductUpdate())


def test_update_missing_product_raises_not_found(app):
    with pytest.raises(NotFoundError):
        products_service.update_product("ghost", ProductUpdate(price=1))


def test_update_payload_rejects_unknown_fields():
    with pytest.raises(ValidationError, match="in_stock"):
        ProductUpdate.from_payload({"in_stock": True, "price": 3})


def test_delete_product(make_product):
    product = make_product()
    assert products_service.delete_product(product["id"]) is True
    assert products_service.delete_product(product["id"]) is False
    with pytest.raises(NotFoundError):
        products_service.get_product(product["id"])


def test_product_stats(make_product):
    make_product(id="A", category="food", price=10, stock_quantity=5)
    make_product(id="B", category="drinks", price=20, stock_quantity=0)
    make_product(id="C", category="food", price=30, stock_quantity=2)

    stats = products_service.product_stats()
    assert stats == {
        "total_products": 3,
        "total_value": 110.0,
        "average_price": 20.0,
        "in_stock_count": 2,
        "out_of_stock_count": 1,
        "category_count": 2,
        "low_stock_count": 3,
    }


def test_product_stats_on_empty_catalog(app):
    stats = products_service.product_stats()
    assert stats["total_products"] == 0
    assert stats["total_value"] == 0.0
    assert stats["average_price"] == 0.0


def test_product_categories(make_product):
    make_product(category="food")
    make_product(category="food")
    make_product(category="drinks")
    assert products_service.product_categories() == [
        {"category": "drinks", "count": 1},
        {"category": "food", "count": 2},
    ]


def test_bulk_import_is_idempotent_and_skips_invalid_records(app):
    records = [
        {"id": "X1", "name": "Toastie", "category": "food", "price": 35, "stock_quantity": 4},
        {"id": "X2", "name": "Juice", "category": "drinks", "price": 18},
        {"id": "BAD", "name": "", "category": "food", "price": 1},
    ]
    assert products_service.bulk_import_products(records) == 2
    assert products_service.bulk_import_products(records) == 2
    assert products_service.count_products() == 2

    records[0]["price"] = 40
    products_service.bulk_import_products(records[:1])
    assert products_service.get_product("X1")["price"] == 40


def test_bulk_import_clears_cache(make_product):
    make_product()
    products_service.search_products(ProductSearchParams(category="drinks"))
    assert len(get_product_cache()) > 0
    products_service.bulk_import_products([{"id": "N1", "name": "Scone", "category": "food", "price": 9}])
    assert len(get_product_cache()) == 0


def test_lookup_by_barcode_and_qr_code(make_product):
    product = make_product(barcode="6009876543210", qr_code="till://product/qr-1")
    assert products_service.get_product_by_barcode("6009876543210")["id"] == product["id"]
    assert products_service.get_product_by_qr_code("till://product/qr-1")["id"] == product["id"]
    with pytest.raises(NotFoundError):
        products_service.get_product_by_barcode("0000")


def test_reorder_alerts(make_product):
    make_product(id="LOW", name="Beans", stock_quantity=2, reorder_qty=5)
    make_product(id="OK", name="Cups", stock_quantity=50, reorder_qty=5)
    make_product(id="BIG", name="Milk", stock_quantity=0, reorder_qty=40)

    alerts = products_service.reorder_alerts()
    assert [a["id"] for a in alerts] == ["BIG", "LOW"]
    assert alerts[0]["suggested_order_qty"] == 80
    assert alerts[1]["suggested_order_qty"] == 50


def test_query_products_paginates_and_sorts(make_product):
    for index in range(5):
        make_product(id=f"S{index}", name=f"Item {index}", price=float(index + 1))

    page = products_service.query_products(
        ProductSearchParams(limit=2, page=2, sort_by="price", sort_order="desc")
    )
    assert [p["id"] for p in page["products"]] == ["S2", "S1"]
    assert page["total_count"] == 5
    assert page["total_pages"] == 3
    assert page["has_next_page"] is True
    assert page["has_previous_page"] is True


def test_query_products_filters(make_product):
    make_product(id="E1", name="Earbuds", category="electronics", price=300, brand="Sonic", stock_quantity=0)
    make_product(id="E2", name="Charger", category="electronics", price=150, brand="Volt", barcode="600111")
    make_product(id="F1", name="Wrap", category="food", price=60)

    by_brand = products_service.query_products(ProductSearchParams(brand="Volt"))
    assert [p["id"] for p in by_brand["products"]] == ["E2"]

    by_barcode_text = products_service.query_products(ProductSearchParams(query="600111"))
    assert [p["id"] for p in by_barcode_text["products"]] == ["E2"]

    price_band = products_service.query_products(ProductSearchParams(min_price=100, max_price=200))
    assert [p["id"] for p in price_band["products"]] == ["E2"]

    stocked = products_service.query_products(ProductSearchParams(category="electronics", in_stock_only=True))
    assert [p["id"] for p in stocked["products"]] == ["E2"]


@pytest.mark.parametrize("params", [
    ProductSearchParams(sort_by="colour"),
    ProductSearchParams(sort_order="sideways"),
    ProductSearchParams(page=0),
    ProductSearchParams(limit=0),
    ProductSearchParams(min_price=10, max_price=5),
])
def test_query_products_rejects_bad_parameters(app, params):
    with pytest.raises(ValidationError):
        products_service.query_products(params)
