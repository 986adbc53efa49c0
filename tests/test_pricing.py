import pytest

from korpri_run.pricing import ticket_price, ticket_type_name, ticket_catalogue, TICKET_CATEGORIES


@pytest.mark.parametrize("user_type,category,expected", [
    ("ASN", "fun-run", 90000),
    ("Umum", "fun-run", 112500),
    ("ASN", "half-marathon", 150000),
    ("Umum", "half-marathon", 187500),
    ("ASN", "full-marathon", 210000),
    ("Umum", "full-marathon", 262500),
])
def test_price_table(user_type, category, expected):
    assert ticket_price(user_type, category) == expected


def test_unknown_keys_rejected():
    with pytest.raises(ValueError):
        ticket_price("VIP", "fun-run")
    with pytest.raises(ValueError):
        ticket_price("ASN", "ultra")


def test_ticket_names():
    assert ticket_type_name("fun-run") == "Fun Run (5K)"
    assert ticket_type_name("full-marathon") == "Full Marathon (42K)"
    assert ticket_type_name("relay") == "relay"


def test_catalogue_covers_every_category():
    catalogue = ticket_catalogue()
    assert [t["id"] for t in catalogue] == list(TICKET_CATEGORIES)
    half = next(t for t in catalogue if t["id"] == "half-marathon")
    assert half["price"] == {"ASN": 150000, "Umum": 187500}


def test_price_endpoint(client):
    r = client.get("/api/price", params={"user_type": "Umum", "jenis_tiket": "full-marathon"})
    assert r.status_code == 200
    assert r.json()["price"] == 262500

    r = client.get("/api/price", params={"user_type": "Umum", "jenis_tiket": "10k"})
    assert r.status_code == 400
