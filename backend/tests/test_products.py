import io
import json
from datetime import timedelta

from app import utcnow
from conftest import make_image_bytes


def _product_form(**overrides):
    form = {
        "name": "Linen Shirt",
        "brand": "Lime",
        "category": "Shirts",
        "subCategory": "Casual",
        "description": "Breathable summer shirt",
        "price": "49.99",
        "stock": "12",
        "sizes": json.dumps(["S", "M", "L"]),
        "colors": json.dumps(
            [{"name": "Sand", "hex": "#C2B280"}, {"name": "Navy", "hexCode": "#000080"}]
        ),
        "features": json.dumps({"fabric": "Linen", "fit": "Relaxed", "unknown": "x"}),
        "freeShipping": "true",
        "estimatedDelivery": "3-5 days",
    }
    form.update(overrides)
    return form


def _image_part(filename="color.png", size=(64, 48)):
    return (io.BytesIO(make_image_bytes(size)), filename)


def _create_product(client, headers, **overrides):
    response = client.post(
        "/api/products",
        data=_product_form(**overrides),
        headers=headers,
        content_type="multipart/form-data",
    )
    assert response.status_code == 201, response.get_json()
    return response.get_json()["product"]


def _processed_files(upload_root):
    directory = upload_root / "products" / "processed"
    return sorted(directory.iterdir()) if directory.exists() else []


def test_create_product_from_json(client, admin_headers):
    response = client.post(
        "/api/products",
        json={
            "name": "Wool Coat",
            "brand": "North",
            "category": "Coats",
            "price": 120,
            "colors": [{"name": "Grey", "hex": "#808080"}],
            "sizes": ["m", "XL"],
        },
        headers=admin_headers,
    )

    assert response.status_code == 201
    product = response.get_json()["product"]
    assert product["product_code"].startswith("PROD_")
    assert product["status"] == "Draft"
    assert product["stock"] == 0
    assert product["price"] == {"currency": "USD", "amount": 120.0}
    assert product["sizes"] == [
        {"size": "M", "available": True},
        {"size": "XL", "available": True},
    ]
    assert product["colors"] == [{"name": "Grey", "hex_code": "#808080", "image": ""}]


def test_create_product_from_form_fields(client, admin_headers):
    product = _create_product(client, admin_headers)

    assert product["sub_category"] == "Casual"
    assert product["features"] == {"fabric": "Linen", "fit": "Relaxed"}
    assert product["shipping"] == {
        "free_shipping": True,
        "return_available": False,
        "estimated_delivery": "3-5 days",
    }
    assert product["colors"][1]["hex_code"] == "#000080"


def test_create_product_requires_admin(client, user_headers):
    assert client.post("/api/products", json={}).status_code == 401
    assert client.post("/api/products", json={}, headers=user_headers).status_code == 403


def test_create_product_validation(client, admin_headers):
    cases = [
        {"name": ""},
        {"price": "0"},
        {"price": "free"},
        {"stock": "-1"},
        {"stock": "lots"},
        {"stock": "2.5"},
        {"sizes": json.dumps(["XXL"])},
        {"colors": json.dumps([{"hex": "#fff"}])},
        {"colors": "not json"},
    ]
    for overrides in cases:
        response = client.post(
            "/api/products",
            data=_product_form(**overrides),
            headers=admin_headers,
            content_type="multipart/form-data",
        )
        assert response.status_code == 400, overrides
        assert response.get_json()["message"]


def test_create_product_attaches_color_images(client, admin_headers, upload_root):
    product = _create_product(
        client, admin_headers, colorImage_1=_image_part("navy.png", size=(1600, 1200))
    )

    sand, navy = product["colors"]
    assert sand["image"] == ""
    assert navy["image"].startswith("/uploads/products/processed/processed-navy-")
    assert len(_processed_files(upload_root)) == 1

    served = client.get(navy["image"])
    assert served.status_code == 200
    assert served.mimetype == "image/jpeg"
    served.close()


def test_create_product_accepts_bracketed_field_names(client, admin_headers):
    product = _create_product(
        client,
        admin_headers,
        **{
            "colors[0][image]": _image_part("sand.png"),
            "colors[1][image]": _image_part("navy.png"),
        },
    )

    assert all(color["image"] for color in product["colors"])


def test_non_image_upload_rejects_whole_request(client, admin_headers, db, upload_root):
    response = client.post(
        "/api/products",
        data=_product_form(
            colorImage_0=_image_part("sand.png"),
            colorImage_1=(io.BytesIO(b"hello"), "notes.txt"),
        ),
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Only image files are allowed!"
    assert db.products.count_documents({}) == 0
    assert _processed_files(upload_root) == []


def test_validation_runs_before_images_are_processed(client, admin_headers, upload_root):
    response = client.post(
        "/api/products",
        data=_product_form(price="0", colorImage_0=_image_part()),
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert _processed_files(upload_root) == []


def test_corrupt_image_leaves_color_without_image(client, admin_headers):
    product = _create_product(
        client,
        admin_headers,
        colorImage_0=(io.BytesIO(b"not really a png"), "broken.png", "image/png"),
        colorImage_1=_image_part("navy.png"),
    )

    assert product["colors"][0]["image"] == ""
    assert product["colors"][1]["image"]


def test_list_products_newest_first_and_by_category(client, db, admin_headers):
    now = utcnow()
    db.products.insert_many(
        [
            {"name": "Old Tee", "category": "Shirts", "price": {"amount": 10}, "created_at": now - timedelta(days=1)},
            {"name": "New Tee", "category": "Shirts", "price": {"amount": 12}, "created_at": now},
            {"name": "Cap", "category": "Hats", "price": {"amount": 5}, "created_at": now - timedelta(days=2)},
        ]
    )

    listed = client.get("/api/products").get_json()
    assert [product["name"] for product in listed["products"]] == ["New Tee", "Old Tee", "Cap"]
    assert listed["count"] == 3

    shirts = client.get("/api/products/category/Shirts").get_json()["products"]
    assert [product["name"] for product in shirts] == ["New Tee", "Old Tee"]

    rows = client.get("/api/products/admin", headers=admin_headers).get_json()["products"]
    assert rows[0] == {
        "id": rows[0]["id"],
        "name": "New Tee",
        "category": "Shirts",
        "price": 12,
        "image": None,
    }


def test_get_product_by_id(client, admin_headers):
    product = _create_product(client, admin_headers)

    found = client.get(f"/api/products/{product['id']}")
    assert found.status_code == 200
    assert found.get_json()["product"]["name"] == "Linen Shirt"

    assert client.get("/api/products/not-an-id").status_code == 400
    assert client.get("/api/products/64b7f0c2a1b2c3d4e5f60718").status_code == 404


def test_update_product_replaces_color_image(client, admin_headers, upload_root):
    product = _create_product(client, admin_headers, colorImage_0=_image_part("sand.png"))
    old_url = product["colors"][0]["image"]

    response = client.put(
        f"/api/products/{product['id']}",
        data={"price": "39.50", "colorImage_0": _image_part("sand-new.png")},
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 200
    updated = response.get_json()["product"]
    assert updated["price"]["amount"] == 39.5
    assert updated["name"] == "Linen Shirt"
    assert updated["colors"][0]["image"] != old_url
    assert "processed-sand-new-" in updated["colors"][0]["image"]
    assert [path.name for path in _processed_files(upload_root)] == [
        updated["colors"][0]["image"].rsplit("/", 1)[-1]
    ]


def test_update_product_keeps_images_of_unchanged_colors(client, admin_headers, upload_root):
    product = _create_product(client, admin_headers, colorImage_0=_image_part("sand.png"))

    response = client.put(
        f"/api/products/{product['id']}",
        json={"colors": [{"name": "Sand", "hex": "#C2B280"}]},
        headers=admin_headers,
    )

    assert response.status_code == 200
    colors = response.get_json()["product"]["colors"]
    assert colors == [
        {"name": "Sand", "hex_code": "#C2B280", "image": product["colors"][0]["image"]}
    ]
    assert len(_processed_files(upload_root)) == 1


def test_update_product_validation(client, admin_headers):
    product = _create_product(client, admin_headers)

    assert (
        client.put(f"/api/products/{product['id']}", json={}, headers=admin_headers).status_code
        == 400
    )
    assert (
        client.put(
            f"/api/products/{product['id']}", json={"stock": -3}, headers=admin_headers
        ).status_code
        == 400
    )
    assert (
        client.put(
            "/api/products/64b7f0c2a1b2c3d4e5f60718", json={"stock": 3}, headers=admin_headers
        ).status_code
        == 404
    )


def test_delete_product_removes_images(client, admin_headers, db, upload_root):
    product = _create_product(
        client,
        admin_headers,
        colorImage_0=_image_part("sand.png"),
        colorImage_1=_image_part("navy.png"),
    )
    assert len(_processed_files(upload_root)) == 2

    response = client.delete(f"/api/products/{product['id']}", headers=admin_headers)

    assert response.status_code == 200
    assert db.products.count_documents({}) == 0
    assert _processed_files(upload_root) == []


def test_json_stock_must_be_whole(client, admin_headers, db):
    response = client.post(
        "/api/products",
        json={"name": "Tee", "brand": "Lime", "category": "Shirts", "price": 10, "stock": 2.5},
        headers=admin_headers,
    )

    assert response.status_code == 400
    assert db.products.count_documents({}) == 0


def test_part_over_five_megabytes_rejects_request(client, admin_headers, db, upload_root):
    oversized = b"\x89PNG\r\n\x1a\n" + b"\0" * (5 * 1024 * 1024 - 7)

    response = client.post(
        "/api/products",
        data=_product_form(
            colorImage_0=_image_part("sand.png"),
            colorImage_1=(io.BytesIO(oversized), "navy.png"),
        ),
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Each image must be 5 MB or smaller."
    assert db.products.count_documents({}) == 0
    assert _processed_files(upload_root) == []


def test_request_over_content_limit_returns_json_413(app, client, admin_headers, db):
    app.config["MAX_CONTENT_LENGTH"] = 1024 * 1024

    response = client.post(
        "/api/products",
        data=_product_form(colorImage_0=(io.BytesIO(b"\0" * (2 * 1024 * 1024)), "big.png")),
        headers=admin_headers,
        content_type="multipart/form-data",
    )

    assert response.status_code == 413
    assert response.get_json() == {"message": "Uploads are limited to 1 MB per request."}
    assert db.products.count_documents({}) == 0
