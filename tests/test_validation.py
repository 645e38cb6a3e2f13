from decimal import Decimal
from uuid import uuid4

import pytest

from invoice_service.errors import InvalidInput
from invoice_service.validation import (
    MAX_QUANTITY,
    LineRequest,
    canonical_id,
    normalize_currency,
    normalize_discount,
    normalize_tax_rate,
    payment_info,
    pick_user_fields,
    shipping_info,
    validate_buyer,
    validate_items,
)

PID = str(uuid4())


@pytest.mark.parametrize("raw", [None, [], {}, "products"])
def test_missing_or_empty_products(raw):
    with pytest.raises(InvalidInput, match="products array is required"):
        validate_items(raw)


def test_product_reference_aliases_and_order():
    other = str(uuid4())
    lines = validate_items([
        {"productId": PID, "quantity": 2},
        {"codigo": f"  {other} ", "cantidad": "3"},
        {"_id": PID, "quantity": 1},
    ])
    assert lines == [
        LineRequest(PID, 2),
        LineRequest(other, 3),
        LineRequest(PID, 1),
    ]


def test_duplicates_are_kept_as_separate_lines():
    lines = validate_items([{"id": PID, "quantity": 1}, {"id": PID, "quantity": 1}])
    assert len(lines) == 2


def test_fractional_quantity_is_floored():
    assert validate_items([{"productId": PID, "quantity": 2.9}])[0].quantity == 2


def test_missing_product_reference():
    with pytest.raises(InvalidInput, match="Each item must include productId"):
        validate_items([{"quantity": 1}])


def test_malformed_product_reference():
    with pytest.raises(InvalidInput, match="Invalid productId format: 12345"):
        validate_items([{"productId": "12345", "quantity": 1}])


@pytest.mark.parametrize("quantity", [0, -1, 0.5, "x", None, True, 2**31, 1e30])
def test_bad_quantity(quantity):
    with pytest.raises(InvalidInput, match=f"Invalid quantity for product {PID}"):
        validate_items([{"productId": PID, "quantity": quantity}])


def test_fails_on_first_bad_entry():
    with pytest.raises(InvalidInput, match="Invalid productId format: bad"):
        validate_items([
            {"productId": PID, "quantity": 1},
            {"productId": "bad", "quantity": 0},
            {"productId": PID, "quantity": 0},
        ])


def test_buyer_reference():
    user_id = str(uuid4())
    assert validate_buyer(user_id, None) == (user_id, None)


def test_buyer_reference_must_be_an_identifier():
    with pytest.raises(InvalidInput):
        validate_buyer("nope", None)


def test_inline_buyer_needs_name_and_email():
    with pytest.raises(InvalidInput, match="Provide userId or user object"):
        validate_buyer(None, {"email": "a@b.ec"})
    with pytest.raises(InvalidInput):
        validate_buyer(None, None)

    _, snapshot = validate_buyer(None, {"firstName": "Luis", "email": "l@b.ec", "phone": "099"})
    assert snapshot["nombre"] == "Luis"
    assert snapshot["telefono"] == "099"
    assert snapshot["id"] is None


def test_pick_user_fields_aliases():
    fields = pick_user_fields({"id": "u1", "name": "Eva", "lastName": "Ruiz", "document": "17"})
    assert fields == {
        "id": "u1",
        "nombre": "Eva",
        "apellido": "Ruiz",
        "email": "",
        "telefono": "",
        "cedula": "17",
    }


def test_shipping_info_aliases():
    info = shipping_info({"address": "Av. 10", "contact": "Ana", "latLong": [1, 2]}, comments="timbre")
    assert info["direccion"] == "Av. 10"
    assert info["contacto"] == "Ana"
    assert info["instrucciones"] == "timbre"
    assert info["location"] == [1, 2]
    assert info["fechaEstimada"] is None


def test_payment_info_defaults():
    assert payment_info({}) == {
        "metodo": "no-especificado",
        "metodoPagoNombre": "no-especificado",
        "referencia": "",
        "estado": "pagado",
    }
    info = payment_info({"method": "card", "reference": "R1"}, fallback_method="cash")
    assert info["metodo"] == "card"
    assert info["metodoPagoNombre"] == "card"
    assert info["referencia"] == "R1"


def test_discount_normalization():
    assert normalize_discount("2.5") == Decimal("2.50")
    assert normalize_discount(None, {"discount": 1}) == Decimal("1.00")
    assert normalize_discount(-4) == Decimal("0.00")
    assert normalize_discount("abc") == Decimal("0.00")


def test_tax_rate_only_accepts_numbers():
    default = Decimal("0.15")
    assert normalize_tax_rate(0.12, default) == Decimal("0.12")
    assert normalize_tax_rate(0, default) == Decimal("0")
    assert normalize_tax_rate("0.12", default) is default
    assert normalize_tax_rate(float("inf"), default) is default


def test_currency_normalization():
    assert normalize_currency(" eur ", "USD") == "EUR"
    assert normalize_currency("", "USD") == "USD"
    assert normalize_currency(5, "USD") == "USD"


@pytest.mark.parametrize("spelling", [
    PID.upper(),
    "{" + PID + "}",
    "urn:uuid:" + PID,
    PID.replace("-", ""),
])
def test_identifier_spellings_map_to_the_stored_key(spelling):
    assert canonical_id(spelling) == PID
    assert validate_items([{"productId": spelling, "quantity": 1}]) == [LineRequest(PID, 1)]
    assert validate_buyer(spelling, None) == (PID, None)


def test_quantity_upper_bound_is_inclusive():
    assert validate_items([{"productId": PID, "quantity": MAX_QUANTITY}])[0].quantity == MAX_QUANTITY
