from datetime import datetime

from bson import ObjectId

from format_response import format_document, format_documents, to_snake_case


def test_none_passes_through():
    assert format_document(None) is None


def test_identifier_exposed_as_id_and_string():
    object_id = ObjectId()
    formatted = format_document({"_id": object_id, "name": "Chair"})
    assert formatted["_id"] == str(object_id)
    assert formatted["id"] == str(object_id)


def test_existing_id_is_not_overwritten():
    formatted = format_document({"_id": "raw", "id": "public"})
    assert formatted["id"] == "public"


def test_camel_case_keys_become_snake_case():
    formatted = format_document({"stockQuantity": 4, "isAmazingOffer": True, "salesCount": 2})
    assert formatted == {"stock_quantity": 4, "is_amazing_offer": True, "sales_count": 2}


def test_first_image_becomes_image_url():
    formatted = format_document({"images": ["/uploads/a.jpg", "/uploads/b.jpg"]})
    assert formatted["image_url"] == "/uploads/a.jpg"
    assert formatted["images"] == ["/uploads/a.jpg", "/uploads/b.jpg"]


def test_explicit_image_url_wins():
    formatted = format_document({"image_url": "main.jpg", "images": ["a.jpg"]})
    assert formatted["image_url"] == "main.jpg"


def test_nested_values_are_formatted():
    product_id = ObjectId()
    created_at = datetime(2024, 5, 1, 12, 30)
    formatted = format_document(
        {"items": [{"product": product_id, "unitPrice": 3}], "createdAt": created_at}
    )
    assert formatted["items"] == [{"product": str(product_id), "unit_price": 3}]
    assert formatted["created_at"] == "2024-05-01T12:30:00"


def test_password_is_dropped():
    formatted = format_document({"email": "a@example.com", "password": b"hash"})
    assert "password" not in formatted


def test_format_documents_maps_each_entry():
    assert format_documents([{"_id": "a"}, {"_id": "b"}]) == [
        {"_id": "a", "id": "a"},
        {"_id": "b", "id": "b"},
    ]
    assert format_documents(None) == []


def test_to_snake_case_leaves_private_keys():
    assert to_snake_case("_id") == "_id"
    assert to_snake_case("stock_quantity") == "stock_quantity"
    assert to_snake_case("imageURL") == "image_url"
