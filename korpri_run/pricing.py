"""Fixed ticket catalogue. Prices are in IDR and are not user-editable."""
from __future__ import annotations

PARTICIPANT_CLASSES = ("ASN", "Umum")

TICKET_CATEGORIES = ("fun-run", "half-marathon", "full-marathon")

_TICKETS = {
    "fun-run": {"name": "Fun Run", "distance": "5K", "price": {"ASN": 90000, "Umum": 112500}},
    "half-marathon": {"name": "Half Marathon", "distance": "21K", "price": {"ASN": 150000, "Umum": 187500}},
    "full-marathon": {"name": "Full Marathon", "distance": "42K", "price": {"ASN": 210000, "Umum": 262500}},
}


def ticket_price(participant_class: str, ticket_category: str) -> int:
    ticket = _TICKETS.get(ticket_category)
    if ticket is None:
        raise ValueError(f"Unknown ticket category: {ticket_category}")
    if participant_class not in PARTICIPANT_CLASSES:
        raise ValueError(f"Unknown participant class: {participant_class}")
    return ticket["price"][participant_class]


def ticket_type_name(ticket_category: str) -> str:
    ticket = _TICKETS.get(ticket_category)
    if ticket is None:
        return ticket_category
    return f"{ticket['name']} ({ticket['distance']})"


def ticket_catalogue() -> list[dict]:
    return [
        {"id": key, "name": t["name"], "distance": t["distance"], "price": dict(t["price"])}
        for key, t in _TICKETS.items()
    ]
