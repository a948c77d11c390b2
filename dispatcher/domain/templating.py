from typing import Any, Iterable

from dispatcher.domain.errors import ValidationError
from dispatcher.domain.models import Item

USERNAME_PLACEHOLDER = "<kc_username>"
FULLNAME_PLACEHOLDER = "<fullname>"

def render_body(body: str, username: str = "", fullname: str = "") -> str:
    return (
        body
        .replace(USERNAME_PLACEHOLDER, username or "")
        .replace(FULLNAME_PLACEHOLDER, fullname or "")
    )

def prepare_items(messages: Iterable[dict[str, Any]]) -> list[Item]:
    """
    Turns raw batch messages into immutable Items, rendering placeholders once.

    Each message needs a `kc_id` (recipient, also used as the item id) and a
    `body`; `username` and `fullname` feed the placeholders.
    """
    items = []
    for msg in messages:
        try:
            kc_id = str(msg["kc_id"])
            body = msg["body"]
        except (KeyError, TypeError) as e:
            raise ValidationError(f"Malformed message in batch: {e}") from e

        items.append(Item(
            item_id=kc_id,
            recipient=kc_id,
            body=render_body(body, msg.get("username", ""), msg.get("fullname", "")),
        ))
    return items
